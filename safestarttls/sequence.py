"""
An `EffectSequence` is a protocol script expressed as data.

Builder methods append effects, iterating drains them front to back:

    seq = EffectSequence()
    seq.connect("imap.example.com", 143).discard_line()
    seq.write_line("A1 STARTTLS").discard_line()
    seq.upgrade("imap.example.com")
    for effect in seq:
        ...

Building a sequence never performs I/O. A sequence is consumed exactly once;
iterating it again after exhaustion yields nothing.
"""
import collections
import logging
from collections.abc import Iterator

from safestarttls import effects
from safestarttls.exceptions import ProtocolStateError
from safestarttls.lifecycle import ConnectionLifecycle

logger = logging.getLogger(__name__)

LINE_TERMINATOR = b"\r\n"


class EffectSequence:
    lifecycle: ConnectionLifecycle
    _effects: collections.deque[effects.Effect]
    _upgraded: bool

    def __init__(self, lifecycle: ConnectionLifecycle | None = None) -> None:
        self.lifecycle = lifecycle or ConnectionLifecycle()
        self._effects = collections.deque()
        self._upgraded = False

    def connect(self, host: str, port: int) -> "EffectSequence":
        if self.lifecycle.connect():
            self._upgraded = False
            self._push(effects.Connect(host, port))
        return self

    def disconnect(self) -> "EffectSequence":
        if self.lifecycle.disconnect():
            self._push(effects.Disconnect())
        return self

    def read_line(self) -> "EffectSequence":
        self._require_connection("read_line")
        self._push(effects.ReadLine())
        return self

    def discard_line(self) -> "EffectSequence":
        self._require_connection("discard_line")
        self._push(effects.DiscardLine())
        return self

    def write_line(self, line: str | bytes) -> "EffectSequence":
        """
        Append a line, terminated with CRLF. The line itself must not contain CR or LF.
        """
        self._require_connection("write_line")
        if isinstance(line, str):
            line = line.encode("utf8")
        if b"\r" in line or b"\n" in line:
            raise ValueError(f"Line must not contain CR or LF: {line!r}")
        self._push(effects.WriteLine(line + LINE_TERMINATOR))
        return self

    def upgrade(self, host: str) -> "EffectSequence":
        self._require_connection("upgrade")
        if self._upgraded:
            raise ProtocolStateError("Connection has already been upgraded to TLS.")
        self._upgraded = True
        self._push(effects.Upgrade(host))
        return self

    def pending(self) -> tuple[effects.Effect, ...]:
        """
        Snapshot of the effects not yet consumed, without consuming them.
        """
        return tuple(self._effects)

    def _require_connection(self, action: str) -> None:
        if not self.lifecycle.can_disconnect():
            raise ProtocolStateError(f"Cannot {action}: not connected.")

    def _push(self, effect: effects.Effect) -> None:
        logger.debug(f"sequence: append {effect!r}")
        self._effects.append(effect)

    def __iter__(self) -> Iterator[effects.Effect]:
        return self

    def __next__(self) -> effects.Effect:
        try:
            return self._effects.popleft()
        except IndexError:
            raise StopIteration from None

    def __len__(self) -> int:
        return len(self._effects)

    def __repr__(self):
        return f"EffectSequence({list(self._effects)!r})"
