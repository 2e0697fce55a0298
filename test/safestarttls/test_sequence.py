import pytest
from hypothesis import given
from hypothesis import strategies as st

from safestarttls import effects
from safestarttls.exceptions import ProtocolStateError
from safestarttls.lifecycle import ConnectionLifecycle
from safestarttls.lifecycle import LifecycleState
from safestarttls.sequence import EffectSequence


@pytest.fixture
def seq() -> EffectSequence:
    return EffectSequence().connect("example.com", 143)


def test_builder_order(seq):
    seq.discard_line().write_line("A1 STARTTLS").discard_line()
    seq.upgrade("example.com").write_line("A2 CAPABILITY").read_line().disconnect()
    assert list(seq) == [
        effects.Connect("example.com", 143),
        effects.DiscardLine(),
        effects.WriteLine(b"A1 STARTTLS\r\n"),
        effects.DiscardLine(),
        effects.Upgrade("example.com"),
        effects.WriteLine(b"A2 CAPABILITY\r\n"),
        effects.ReadLine(),
        effects.Disconnect(),
    ]


@given(st.lists(st.sampled_from(["read", "discard", "write"])))
def test_order_is_preserved(actions):
    seq = EffectSequence().connect("example.com", 25)
    expected = [effects.Connect("example.com", 25)]
    for i, action in enumerate(actions):
        if action == "read":
            seq.read_line()
            expected.append(effects.ReadLine())
        elif action == "discard":
            seq.discard_line()
            expected.append(effects.DiscardLine())
        else:
            seq.write_line(f"LINE {i}")
            expected.append(effects.WriteLine(f"LINE {i}\r\n".encode()))
    assert len(seq) == len(expected)
    assert list(seq) == expected


def test_write_line(seq):
    seq.write_line("HELO client.example.org")
    seq.write_line(b"NOOP")
    seq.write_line("")
    seq.write_line("HELO bücher.example")
    assert list(seq)[1:] == [
        effects.WriteLine(b"HELO client.example.org\r\n"),
        effects.WriteLine(b"NOOP\r\n"),
        effects.WriteLine(b"\r\n"),
        effects.WriteLine("HELO bücher.example\r\n".encode("utf8")),
    ]


@pytest.mark.parametrize("line", ["A1\r\nA2 LOGOUT", "A1\n", b"\rX"])
def test_write_line_rejects_terminators(seq, line):
    with pytest.raises(ValueError, match="CR or LF"):
        seq.write_line(line)
    assert seq.pending() == (effects.Connect("example.com", 143),)


def test_connect_is_gated():
    seq = EffectSequence()
    seq.connect("a.example.com", 143).connect("b.example.com", 143)
    assert seq.pending() == (effects.Connect("a.example.com", 143),)

    seq.disconnect().disconnect()
    assert seq.pending() == (
        effects.Connect("a.example.com", 143),
        effects.Disconnect(),
    )

    seq.connect("b.example.com", 143)
    assert seq.pending()[-1] == effects.Connect("b.example.com", 143)


def test_disconnect_without_connect():
    seq = EffectSequence().disconnect()
    assert len(seq) == 0


def test_shared_lifecycle():
    lc = ConnectionLifecycle()
    first = EffectSequence(lc).connect("example.com", 143)
    second = EffectSequence(lc).connect("example.com", 143)
    assert len(first) == 1
    assert len(second) == 0
    assert second.lifecycle is lc
    second.disconnect()
    assert lc.state is LifecycleState.DISCONNECTED
    assert second.pending() == (effects.Disconnect(),)


@pytest.mark.parametrize(
    "action",
    [
        lambda s: s.read_line(),
        lambda s: s.discard_line(),
        lambda s: s.write_line("NOOP"),
        lambda s: s.upgrade("example.com"),
    ],
)
def test_requires_connection(action):
    seq = EffectSequence()
    with pytest.raises(ProtocolStateError, match="not connected"):
        action(seq)
    seq.connect("example.com", 143).disconnect()
    with pytest.raises(ProtocolStateError, match="not connected"):
        action(seq)


def test_pre_connected_lifecycle():
    seq = EffectSequence(ConnectionLifecycle(LifecycleState.CONNECTED))
    seq.connect("example.com", 143).discard_line()
    assert list(seq) == [effects.DiscardLine()]


def test_upgrade_once_per_connection(seq):
    seq.upgrade("example.com")
    with pytest.raises(ProtocolStateError, match="already been upgraded"):
        seq.upgrade("example.com")
    seq.disconnect().connect("example.com", 143)
    seq.upgrade("example.com")
    assert [type(e) for e in seq].count(effects.Upgrade) == 2


def test_consumed_once(seq):
    seq.discard_line()
    assert seq.pending() == (effects.Connect("example.com", 143), effects.DiscardLine())
    assert len(seq) == 2

    assert next(seq) == effects.Connect("example.com", 143)
    assert len(seq) == 1
    assert list(seq) == [effects.DiscardLine()]

    assert len(seq) == 0
    assert list(seq) == []
    with pytest.raises(StopIteration):
        next(seq)
    with pytest.raises(StopIteration):
        next(seq)


def test_iter_returns_self(seq):
    assert iter(seq) is seq


def test_repr(seq):
    assert repr(seq) == "EffectSequence([Connect('example.com', 143)])"
