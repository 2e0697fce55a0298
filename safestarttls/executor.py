"""
Executors interpret an effect sequence against real channels.

This is the only place where protocol scripts turn into I/O. The executor owns:

    - at most one live channel and the line reader bound to it,
    - the mode flag (plaintext or encrypted),
    - the switch between the two at an `Upgrade` effect.

The upgrade is where things can go wrong. A line reader may hold plaintext that it
read ahead of the STARTTLS response. If those bytes were served after the upgrade,
an attacker who can write to the plaintext connection could inject "encrypted"
protocol data. At `Upgrade`, the executor therefore detaches the plaintext reader,
drops its read-ahead, hands the bare channel to the TLS upgrade provider and starts
over with a fresh reader on the TLS channel.

Effects run strictly one after the other. The first error stops the sequence,
closes the live channel and propagates, stamped with the failing effect.

`Executor` is the blocking variant, `AsyncExecutor` the asyncio variant.
Both share validation, logging and event reporting through `_ExecutorBase`.
"""
import enum
import logging
from collections.abc import Callable
from collections.abc import Iterable

from safestarttls import effects
from safestarttls import events
from safestarttls import options as moptions
from safestarttls.exceptions import IoError
from safestarttls.exceptions import ProtocolStateError
from safestarttls.exceptions import StartTlsException
from safestarttls.net import connectors
from safestarttls.net.channel import AsyncChannel
from safestarttls.net.channel import Channel
from safestarttls.net.linereader import AsyncLineReader
from safestarttls.net.linereader import LineReader
from safestarttls.utils import human

logger = logging.getLogger(__name__)

Observer = Callable[[events.Event], None]


class Mode(enum.Enum):
    PLAINTEXT = "plaintext"
    ENCRYPTED = "encrypted"


class _ExecutorBase:
    options: moptions.Options
    observer: Observer | None
    mode: Mode | None
    address: tuple | None
    _running: bool

    def __init__(
        self, options: moptions.Options | None, observer: Observer | None
    ) -> None:
        self.options = options or moptions.Options()
        self.observer = observer
        self.mode = None
        self.address = None
        self._running = False

    @property
    def encrypted(self) -> bool:
        return self.mode is Mode.ENCRYPTED

    def log(self, message: str, level: int = logging.INFO) -> None:
        logger.log(level, message, extra={"peer": self.address})

    def emit(self, event: events.Event) -> None:
        if self.observer is not None:
            self.observer(event)

    def _begin(self) -> None:
        if self._running:
            raise ProtocolStateError("Executor is already running a sequence.")
        self._running = True

    @staticmethod
    def _annotate(e: StartTlsException, effect: effects.Effect, index: int) -> None:
        if e.effect is None:
            e.effect = effect
            e.index = index

    def _check_connect(self, live: bool) -> None:
        if live:
            raise ProtocolStateError(
                f"Cannot connect: already connected to {human.format_address(self.address)}."
            )

    def _check_live(self, live: bool, effect: effects.Effect) -> None:
        if not live:
            raise ProtocolStateError(f"Cannot execute {effect!r}: not connected.")

    def _check_upgrade(self, live: bool, effect: effects.Upgrade) -> None:
        self._check_live(live, effect)
        if self.mode is Mode.ENCRYPTED:
            raise ProtocolStateError("Cannot upgrade: connection is already encrypted.")

    def _connected(self, effect: effects.Connect) -> None:
        self.mode = Mode.PLAINTEXT
        self.address = (effect.host, effect.port)
        self.log(f"server connect {human.format_address(self.address)}")
        self.emit(events.Connected(effect.host, effect.port))

    def _dropped_read_ahead(self, discarded: bytes) -> None:
        if discarded:
            self.log(
                f"discarding {len(discarded)} bytes of plaintext read ahead of the TLS upgrade: {discarded!r}",
                logging.WARNING,
            )

    def _upgraded(self, effect: effects.Upgrade, channel, discarded: bytes) -> None:
        self.mode = Mode.ENCRYPTED
        tls_version = getattr(channel, "tls_version", None)
        cipher = getattr(channel, "cipher", None)
        self.log(f"upgraded to TLS ({effect.host}, {tls_version}, {cipher})")
        self.emit(
            events.TlsEstablished(
                server_name=effect.host,
                tls_version=tls_version,
                cipher=cipher,
                discarded=discarded,
            )
        )

    def _line_received(self, effect: effects.Effect, line: bytes) -> bytes | None:
        if not line:
            raise IoError("Connection closed by peer.")
        discarded = isinstance(effect, effects.DiscardLine)
        self.log(
            f"{'discard' if discarded else 'read'} line ({self.mode.value}): {line!r}",
            logging.DEBUG,
        )
        self.emit(events.LineReceived(line, encrypted=self.encrypted, discarded=discarded))
        if discarded:
            return None
        return line

    def _line_sent(self, effect: effects.WriteLine) -> None:
        self.log(f"write line ({self.mode.value}): {effect.data!r}", logging.DEBUG)
        self.emit(events.LineSent(effect.data, encrypted=self.encrypted))

    def _disconnected(self, was_connected: bool) -> None:
        if was_connected:
            self.log(f"server disconnect {human.format_address(self.address)}")
        else:
            self.log("nothing to disconnect", logging.DEBUG)
        self.mode = None
        self.emit(events.Disconnected(was_connected))


class Executor(_ExecutorBase):
    """
    Runs effect sequences over blocking channels, in the calling thread.

        with Executor() as executor:
            lines = executor.run(scripts.imap_starttls("imap.example.com"))
    """

    connector: connectors.Connector
    upgrader: connectors.TlsUpgrader
    channel: Channel | None
    reader: LineReader | None

    def __init__(
        self,
        connector: connectors.Connector | None = None,
        upgrader: connectors.TlsUpgrader | None = None,
        *,
        options: moptions.Options | None = None,
        observer: Observer | None = None,
    ) -> None:
        super().__init__(options, observer)
        self.connector = connector or connectors.TcpConnector(self.options)
        self.upgrader = upgrader or connectors.OpenSSLUpgrader(self.options)
        self.channel = None
        self.reader = None

    def run(self, sequence: Iterable[effects.Effect]) -> list[bytes]:
        """
        Execute all effects in order. Returns the lines read by `ReadLine` effects.
        """
        self._begin()
        received = []
        try:
            for index, effect in enumerate(sequence):
                try:
                    line = self.execute(effect)
                except StartTlsException as e:
                    self._annotate(e, effect, index)
                    raise
                if line is not None:
                    received.append(line)
        except BaseException:
            self._abort()
            raise
        finally:
            self._running = False
        return received

    def execute(self, effect: effects.Effect) -> bytes | None:
        if isinstance(effect, effects.Connect):
            self._check_connect(self.channel is not None)
            self._install(self.connector.open(effect.host, effect.port))
            self._connected(effect)
        elif isinstance(effect, (effects.ReadLine, effects.DiscardLine)):
            self._check_live(self.reader is not None, effect)
            assert self.reader
            return self._line_received(effect, self.reader.readline())
        elif isinstance(effect, effects.WriteLine):
            self._check_live(self.channel is not None, effect)
            assert self.channel
            self.channel.write_all(effect.data)
            self.channel.flush()
            self._line_sent(effect)
        elif isinstance(effect, effects.Upgrade):
            self._check_upgrade(self.channel is not None, effect)
            plain, discarded = self._release()
            self._dropped_read_ahead(discarded)
            try:
                upgraded = self.upgrader.upgrade(plain, effect.host)
            except BaseException:
                self._close_quietly(plain)
                raise
            self._install(upgraded)
            self._upgraded(effect, self.channel, discarded)
        elif isinstance(effect, effects.Disconnect):
            self.disconnect()
        else:
            raise ProtocolStateError(f"Unexpected effect: {effect!r}")
        return None

    def attach(self, channel: Channel) -> None:
        """
        Adopt an already open plaintext channel, as if a `Connect` had been executed.
        """
        self._check_connect(self.channel is not None)
        self._install(channel)
        self.mode = Mode.PLAINTEXT
        self.address = channel.address

    def detach(self) -> Channel:
        """
        Give up the live channel, dropping anything read ahead.
        """
        if self.channel is None:
            raise ProtocolStateError("Cannot detach: not connected.")
        channel, discarded = self._release()
        self._dropped_read_ahead(discarded)
        return channel

    def disconnect(self) -> None:
        if self.channel is None:
            self._disconnected(False)
            return
        channel, _ = self._release()
        try:
            channel.flush()
        finally:
            channel.close()
        self._disconnected(True)

    def close(self) -> None:
        """
        Close the live channel, if any, without flushing.
        """
        self._abort()

    def _install(self, channel: Channel) -> None:
        self.channel = channel
        self.reader = LineReader(
            channel,
            read_size=self.options.read_size,
            max_line_length=self.options.max_line_length,
        )

    def _release(self) -> tuple[Channel, bytes]:
        assert self.channel and self.reader
        channel, discarded = self.reader.detach()
        self.channel = self.reader = None
        self.mode = None
        return channel, discarded

    def _abort(self) -> None:
        if self.channel is None:
            return
        channel, _ = self._release()
        self._close_quietly(channel)

    def _close_quietly(self, channel: Channel) -> None:
        try:
            channel.close()
        except StartTlsException as e:
            self.log(f"error closing channel: {e}", logging.DEBUG)

    def __enter__(self) -> "Executor":
        return self

    def __exit__(self, *args) -> None:
        self.close()


class AsyncExecutor(_ExecutorBase):
    """
    Runs effect sequences over asyncio channels, in a single task.

        async with AsyncExecutor() as executor:
            lines = await executor.run(scripts.imap_starttls("imap.example.com"))

    Suspension only happens inside channel I/O, connecting and the TLS upgrade.
    If the task is cancelled mid-sequence, the live channel is closed before the
    cancellation propagates.
    """

    connector: connectors.AsyncConnector
    upgrader: connectors.AsyncTlsUpgrader
    channel: AsyncChannel | None
    reader: AsyncLineReader | None

    def __init__(
        self,
        connector: connectors.AsyncConnector | None = None,
        upgrader: connectors.AsyncTlsUpgrader | None = None,
        *,
        options: moptions.Options | None = None,
        observer: Observer | None = None,
    ) -> None:
        super().__init__(options, observer)
        self.connector = connector or connectors.AsyncTcpConnector(self.options)
        self.upgrader = upgrader or connectors.AsyncOpenSSLUpgrader(self.options)
        self.channel = None
        self.reader = None

    async def run(self, sequence: Iterable[effects.Effect]) -> list[bytes]:
        """
        Execute all effects in order. Returns the lines read by `ReadLine` effects.
        """
        self._begin()
        received = []
        try:
            for index, effect in enumerate(sequence):
                try:
                    line = await self.execute(effect)
                except StartTlsException as e:
                    self._annotate(e, effect, index)
                    raise
                if line is not None:
                    received.append(line)
        except BaseException:
            await self._abort()
            raise
        finally:
            self._running = False
        return received

    async def execute(self, effect: effects.Effect) -> bytes | None:
        if isinstance(effect, effects.Connect):
            self._check_connect(self.channel is not None)
            self._install(await self.connector.open(effect.host, effect.port))
            self._connected(effect)
        elif isinstance(effect, (effects.ReadLine, effects.DiscardLine)):
            self._check_live(self.reader is not None, effect)
            assert self.reader
            return self._line_received(effect, await self.reader.readline())
        elif isinstance(effect, effects.WriteLine):
            self._check_live(self.channel is not None, effect)
            assert self.channel
            await self.channel.write_all(effect.data)
            await self.channel.flush()
            self._line_sent(effect)
        elif isinstance(effect, effects.Upgrade):
            self._check_upgrade(self.channel is not None, effect)
            # readline() has returned, so no read on the plaintext channel is pending here.
            plain, discarded = self._release()
            self._dropped_read_ahead(discarded)
            try:
                upgraded = await self.upgrader.upgrade(plain, effect.host)
            except BaseException:
                await self._close_quietly(plain)
                raise
            self._install(upgraded)
            self._upgraded(effect, self.channel, discarded)
        elif isinstance(effect, effects.Disconnect):
            await self.disconnect()
        else:
            raise ProtocolStateError(f"Unexpected effect: {effect!r}")
        return None

    def attach(self, channel: AsyncChannel) -> None:
        """
        Adopt an already open plaintext channel, as if a `Connect` had been executed.
        """
        self._check_connect(self.channel is not None)
        self._install(channel)
        self.mode = Mode.PLAINTEXT
        self.address = channel.address

    def detach(self) -> AsyncChannel:
        """
        Give up the live channel, dropping anything read ahead.
        """
        if self.channel is None:
            raise ProtocolStateError("Cannot detach: not connected.")
        channel, discarded = self._release()
        self._dropped_read_ahead(discarded)
        return channel

    async def disconnect(self) -> None:
        if self.channel is None:
            self._disconnected(False)
            return
        channel, _ = self._release()
        try:
            await channel.flush()
        finally:
            await channel.close()
        self._disconnected(True)

    async def close(self) -> None:
        """
        Close the live channel, if any, without flushing.
        """
        await self._abort()

    def _install(self, channel: AsyncChannel) -> None:
        self.channel = channel
        self.reader = AsyncLineReader(
            channel,
            read_size=self.options.read_size,
            max_line_length=self.options.max_line_length,
        )

    def _release(self) -> tuple[AsyncChannel, bytes]:
        assert self.channel and self.reader
        channel, discarded = self.reader.detach()
        self.channel = self.reader = None
        self.mode = None
        return channel, discarded

    async def _abort(self) -> None:
        if self.channel is None:
            return
        channel, _ = self._release()
        await self._close_quietly(channel)

    async def _close_quietly(self, channel: AsyncChannel) -> None:
        try:
            await channel.close()
        except StartTlsException as e:
            self.log(f"error closing channel: {e}", logging.DEBUG)

    async def __aenter__(self) -> "AsyncExecutor":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()
