import asyncio
import logging

import pytest

import tutils
from safestarttls import effects
from safestarttls import events
from safestarttls import scripts
from safestarttls.exceptions import ConnectError
from safestarttls.exceptions import IoError
from safestarttls.exceptions import ProtocolStateError
from safestarttls.exceptions import UpgradeError
from safestarttls.executor import AsyncExecutor
from safestarttls.executor import Mode
from safestarttls.net import connectors

GREETING = b"* OK IMAP4rev1 Service Ready\r\n"
STARTTLS_OK = b"A1 OK Begin TLS negotiation now\r\n"
CAPABILITY = b"* CAPABILITY IMAP4rev1 AUTH=PLAIN\r\n"
INJECTED = b"* CAPABILITY IMAP4rev1 AUTH=INJECTED\r\n"


class HangingChannel(tutils.FakeAsyncChannel):
    """Signals `reading` on the first read, then never returns."""

    def __init__(self, reading: asyncio.Event):
        super().__init__()
        self.reading = reading

    async def read(self, size: int) -> bytes:
        self.reading.set()
        await asyncio.Event().wait()
        return b""


def make_executor(plain_chunks, tls_chunks=(), *, wire=None, observer=None):
    wire = wire or tutils.Wire()
    plain = tutils.FakeAsyncChannel(plain_chunks, wire=wire)
    tls = tutils.FakeAsyncChannel(tls_chunks, layer="tls", wire=wire)
    upgrader = tutils.FakeAsyncUpgrader(tls)
    executor = AsyncExecutor(
        tutils.FakeAsyncConnector(plain), upgrader, observer=observer
    )
    return executor, plain, tls, upgrader


async def test_imap(wire, event_log):
    ex, plain, tls, upgrader = make_executor(
        [GREETING, STARTTLS_OK], [CAPABILITY], wire=wire, observer=event_log
    )
    lines = await ex.run(scripts.imap_starttls("imap.example.com"))

    assert lines == [CAPABILITY]
    assert upgrader.upgraded == [(plain, "imap.example.com")]
    assert upgrader.written_before_upgrade == b"A1 STARTTLS\r\n"
    assert wire.writes("plain") == [b"A1 STARTTLS\r\n"]
    assert wire.writes("tls") == [b"A2 CAPABILITY\r\n"]
    assert event_log.kinds() == [
        "Connected",
        "LineReceived",
        "LineSent",
        "LineReceived",
        "TlsEstablished",
        "LineSent",
        "LineReceived",
        "Disconnected",
    ]
    assert tls.closed == 1
    assert plain.closed == 0
    assert ex.channel is None


async def test_smtp(wire):
    ex, _, _, upgrader = make_executor(
        [b"220 mail.example.com ESMTP\r\n250 mail.example.com\r\n220 Go ahead\r\n"],
        [b"250 OK\r\n"],
        wire=wire,
    )
    assert await ex.run(scripts.smtp_starttls("mail.example.com", "client.example.org")) == []
    assert wire.writes("plain") == [b"HELO client.example.org\r\n", b"STARTTLS\r\n"]
    assert wire.writes("tls") == [b"NOOP\r\n"]


async def test_read_ahead_is_dropped_at_upgrade(event_log, caplog):
    caplog.set_level(logging.WARNING)
    ex, _, _, _ = make_executor(
        [GREETING + STARTTLS_OK + INJECTED], [CAPABILITY], observer=event_log
    )
    lines = await ex.run(scripts.imap_starttls("imap.example.com"))

    assert lines == [CAPABILITY]
    (established,) = event_log.of_type(events.TlsEstablished)
    assert established.discarded == INJECTED
    assert [e.data for e in event_log.of_type(events.LineReceived) if e.encrypted] == [
        CAPABILITY
    ]
    assert "discarding" in caplog.text


async def test_failure_halts_sequence(wire):
    plain = tutils.FakeAsyncChannel([GREETING], wire=wire, fail_write=True)
    upgrader = tutils.FakeAsyncUpgrader(tutils.FakeAsyncChannel(layer="tls", wire=wire))
    ex = AsyncExecutor(tutils.FakeAsyncConnector(plain), upgrader)

    with pytest.raises(IoError) as exc_info:
        await ex.run(scripts.imap_starttls("example.com"))

    assert exc_info.value.effect == effects.WriteLine(b"A1 STARTTLS\r\n")
    assert exc_info.value.index == 2
    assert upgrader.upgraded == []
    assert wire.ops() == [("plain", "read"), ("plain", "close")]


async def test_connect_failure():
    ex = AsyncExecutor(tutils.FakeAsyncConnector(fail=True), tutils.FakeAsyncUpgrader())
    with pytest.raises(ConnectError) as exc_info:
        await ex.run(scripts.imap_starttls("example.com"))
    assert exc_info.value.index == 0


async def test_upgrade_failure():
    plain = tutils.FakeAsyncChannel([GREETING, STARTTLS_OK])
    ex = AsyncExecutor(
        tutils.FakeAsyncConnector(plain), tutils.FakeAsyncUpgrader(fail=True)
    )
    with pytest.raises(UpgradeError) as exc_info:
        await ex.run(scripts.imap_starttls("example.com"))
    assert exc_info.value.effect == effects.Upgrade("example.com")
    assert plain.closed == 1
    assert ex.mode is None


async def test_peer_closes_before_line():
    ex, plain, _, _ = make_executor([GREETING])
    with pytest.raises(IoError, match="closed by peer") as exc_info:
        await ex.run(scripts.imap_starttls("example.com"))
    assert exc_info.value.index == 3
    assert plain.closed == 1


async def test_state_errors():
    ex, _, _, _ = make_executor([GREETING])
    with pytest.raises(ProtocolStateError, match="not connected"):
        await ex.run([effects.WriteLine(b"NOOP\r\n")])
    with pytest.raises(ProtocolStateError, match="already encrypted"):
        await ex.run(
            [
                effects.Connect("example.com", 143),
                effects.Upgrade("example.com"),
                effects.Upgrade("example.com"),
            ]
        )
    assert ex.channel is None


async def test_disconnect_is_idempotent(event_log):
    ex, plain, _, _ = make_executor([GREETING], observer=event_log)
    await ex.run(
        [effects.Connect("example.com", 143), effects.Disconnect(), effects.Disconnect()]
    )
    await ex.disconnect()
    assert [e.was_connected for e in event_log.of_type(events.Disconnected)] == [
        True,
        False,
        False,
    ]
    assert plain.closed == 1
    assert plain.flushes == 1


async def test_context_manager_closes_channel():
    ex, plain, _, _ = make_executor([GREETING])
    async with ex:
        await ex.run([effects.Connect("example.com", 143), effects.DiscardLine()])
        assert ex.mode is Mode.PLAINTEXT
    assert plain.closed == 1
    assert ex.channel is None


async def test_cancellation_closes_channel():
    reading = asyncio.Event()
    plain = HangingChannel(reading)
    ex = AsyncExecutor(tutils.FakeAsyncConnector(plain), tutils.FakeAsyncUpgrader())
    task = asyncio.create_task(ex.run(scripts.imap_starttls("example.com")))
    await reading.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert plain.closed == 1
    assert ex.channel is None
    # not stuck in "running"
    assert await ex.run([]) == []


class HangingUpgrader(tutils.FakeAsyncUpgrader):
    """Signals `upgrading` once handed the plaintext channel, then never returns."""

    def __init__(self, upgrading: asyncio.Event):
        super().__init__()
        self.upgrading = upgrading

    async def upgrade(self, channel, server_name):
        self.upgraded.append((channel, server_name))
        self.upgrading.set()
        await asyncio.Event().wait()


async def test_cancellation_during_upgrade():
    upgrading = asyncio.Event()
    plain = tutils.FakeAsyncChannel([GREETING, STARTTLS_OK])
    upgrader = HangingUpgrader(upgrading)
    ex = AsyncExecutor(tutils.FakeAsyncConnector(plain), upgrader)
    task = asyncio.create_task(ex.run(scripts.imap_starttls("example.com")))
    await upgrading.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert upgrader.upgraded == [(plain, "example.com")]
    assert plain.closed == 1
    assert ex.channel is None
    assert ex.mode is None


async def test_unknown_effect():
    ex, plain, _, _ = make_executor([GREETING])
    with pytest.raises(ProtocolStateError, match="Unexpected effect") as exc_info:
        await ex.run([effects.Connect("example.com", 143), effects.Effect()])
    assert exc_info.value.index == 1
    assert plain.closed == 1


async def test_concurrent_run():
    reading = asyncio.Event()
    plain = HangingChannel(reading)
    ex = AsyncExecutor(tutils.FakeAsyncConnector(plain), tutils.FakeAsyncUpgrader())
    task = asyncio.create_task(
        ex.run([effects.Connect("example.com", 143), effects.ReadLine()])
    )
    await reading.wait()
    with pytest.raises(ProtocolStateError, match="already running"):
        await ex.run([effects.Disconnect()])
    assert plain.closed == 0

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert plain.closed == 1


async def test_attach_detach():
    channel = tutils.FakeAsyncChannel([GREETING + b"* trailing\r\n"])
    ex = AsyncExecutor(tutils.FakeAsyncConnector(), tutils.FakeAsyncUpgrader())
    ex.attach(channel)
    assert await ex.run([effects.ReadLine()]) == [GREETING]
    assert ex.detach() is channel
    assert channel.closed == 0
    with pytest.raises(ProtocolStateError):
        ex.detach()


def test_default_collaborators(opts):
    ex = AsyncExecutor(options=opts)
    assert isinstance(ex.connector, connectors.AsyncTcpConnector)
    assert isinstance(ex.upgrader, connectors.AsyncOpenSSLUpgrader)
