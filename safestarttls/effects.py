"""
Effects describe what a protocol script wants to happen on the wire.
A script builder appends effects to an `EffectSequence`, an executor then
performs the actual I/O for each of them, in order.

Effects are inert data: creating one never touches a socket.
"""
from dataclasses import dataclass


class Effect:
    """
    Base class for all effects
    """

    def __repr__(self):
        return f"{type(self).__name__}({repr(self.__dict__)})"


@dataclass(frozen=True, repr=False)
class Connect(Effect):
    """
    Open a new plaintext connection.
    """

    host: str
    port: int

    def __repr__(self):
        return f"Connect({self.host!r}, {self.port})"


@dataclass(frozen=True, repr=False)
class Upgrade(Effect):
    """
    Switch the live connection to TLS, in place.
    `host` is used for SNI and certificate verification.
    """

    host: str

    def __repr__(self):
        return f"Upgrade({self.host!r})"


@dataclass(frozen=True, repr=False)
class ReadLine(Effect):
    """
    Read one line and hand it to the caller.
    """

    def __repr__(self):
        return "ReadLine()"


@dataclass(frozen=True, repr=False)
class DiscardLine(Effect):
    """
    Read one line and drop it.

    This is used for greetings and responses whose content does not matter to the script,
    but which must be consumed before the next action.
    """

    def __repr__(self):
        return "DiscardLine()"


@dataclass(frozen=True, repr=False)
class WriteLine(Effect):
    """
    Send a line to the peer. `data` already carries the line terminator.
    """

    data: bytes

    def __repr__(self):
        return f"WriteLine({self.data!r})"


@dataclass(frozen=True, repr=False)
class Disconnect(Effect):
    """
    Flush and close the live connection, if any.
    """

    def __repr__(self):
        return "Disconnect()"
