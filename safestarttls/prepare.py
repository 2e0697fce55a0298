"""
Negotiate STARTTLS on a connection someone else opened, and hand it back ready for TLS.

    channel = PrepareStartTls.imap(SocketChannel(sock)).prepare()
    # read greeting, sent "A1 STARTTLS", read the response.
    # channel now has nothing buffered and can be wrapped in TLS by the caller.

This runs the same executor as full scripts do, so the plaintext read-ahead
is dropped before the channel is returned. Each instance can prepare once.
"""
from safestarttls import options as moptions
from safestarttls.exceptions import AlreadyConsumedError
from safestarttls.executor import AsyncExecutor
from safestarttls.executor import Executor
from safestarttls.executor import Observer
from safestarttls.lifecycle import ConnectionLifecycle
from safestarttls.lifecycle import LifecycleState
from safestarttls.net.channel import AsyncChannel
from safestarttls.net.channel import Channel
from safestarttls.sequence import EffectSequence

IMAP_STARTTLS_COMMAND = "A1 STARTTLS"
SMTP_STARTTLS_COMMAND = "STARTTLS"


class _Preparation:
    command: str
    preamble: tuple[str, ...]

    def __init__(
        self,
        command: str,
        preamble: tuple[str, ...],
        options: moptions.Options | None,
        observer: Observer | None,
    ) -> None:
        self.command = command
        self.preamble = preamble
        self.options = options
        self.observer = observer

    def sequence(self) -> EffectSequence:
        """
        The negotiation up to (not including) the upgrade:
        skip the greeting, send each preamble line and the command, skip each response.
        """
        seq = EffectSequence(ConnectionLifecycle(LifecycleState.CONNECTED))
        seq.discard_line()
        for line in self.preamble:
            seq.write_line(line)
            seq.discard_line()
        seq.write_line(self.command)
        seq.discard_line()
        return seq


class PrepareStartTls(_Preparation):
    channel: Channel | None

    def __init__(
        self,
        channel: Channel,
        command: str,
        preamble: tuple[str, ...] = (),
        *,
        options: moptions.Options | None = None,
        observer: Observer | None = None,
    ) -> None:
        super().__init__(command, preamble, options, observer)
        self.channel = channel

    @classmethod
    def imap(cls, channel: Channel, **kwargs) -> "PrepareStartTls":
        return cls(channel, IMAP_STARTTLS_COMMAND, **kwargs)

    @classmethod
    def smtp(cls, channel: Channel, helo: str, **kwargs) -> "PrepareStartTls":
        return cls(channel, SMTP_STARTTLS_COMMAND, (f"HELO {helo}",), **kwargs)

    def prepare(self) -> Channel:
        if self.channel is None:
            raise AlreadyConsumedError("Channel has already been prepared.")
        channel, self.channel = self.channel, None
        executor = Executor(options=self.options, observer=self.observer)
        executor.attach(channel)
        executor.run(self.sequence())
        return executor.detach()


class AsyncPrepareStartTls(_Preparation):
    channel: AsyncChannel | None

    def __init__(
        self,
        channel: AsyncChannel,
        command: str,
        preamble: tuple[str, ...] = (),
        *,
        options: moptions.Options | None = None,
        observer: Observer | None = None,
    ) -> None:
        super().__init__(command, preamble, options, observer)
        self.channel = channel

    @classmethod
    def imap(cls, channel: AsyncChannel, **kwargs) -> "AsyncPrepareStartTls":
        return cls(channel, IMAP_STARTTLS_COMMAND, **kwargs)

    @classmethod
    def smtp(cls, channel: AsyncChannel, helo: str, **kwargs) -> "AsyncPrepareStartTls":
        return cls(channel, SMTP_STARTTLS_COMMAND, (f"HELO {helo}",), **kwargs)

    async def prepare(self) -> AsyncChannel:
        if self.channel is None:
            raise AlreadyConsumedError("Channel has already been prepared.")
        channel, self.channel = self.channel, None
        executor = AsyncExecutor(options=self.options, observer=self.observer)
        executor.attach(channel)
        # every readline() completes before run() returns, so no read is left pending on the channel.
        await executor.run(self.sequence())
        return executor.detach()
