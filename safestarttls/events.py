"""
When the executor performs an effect, it reports what happened as an event.
Events are passed to the optional observer callable, one per executed effect,
so tests and tools can follow a session without scraping log output.
"""
from dataclasses import dataclass


class Event:
    """
    Base class for all events.
    """

    def __repr__(self):
        return f"{type(self).__name__}({repr(self.__dict__)})"


@dataclass(repr=False)
class Connected(Event):
    """
    A plaintext connection has been opened.
    """

    host: str
    port: int


@dataclass(repr=False)
class TlsEstablished(Event):
    """
    The live connection has been upgraded to TLS.
    """

    server_name: str
    tls_version: str | None = None
    cipher: str | None = None
    discarded: bytes = b""
    """Plaintext bytes that had been read ahead before the upgrade and were thrown away."""


@dataclass
class LineReceived(Event):
    """
    A line has been read. `discarded` is True if the script did not ask for its content.
    """

    data: bytes
    encrypted: bool
    discarded: bool = False

    def __repr__(self):
        mode = "tls" if self.encrypted else "plain"
        verb = "LineDiscarded" if self.discarded else "LineReceived"
        return f"{verb}({mode}, {self.data!r})"


@dataclass
class LineSent(Event):
    """
    A line has been written and flushed.
    """

    data: bytes
    encrypted: bool

    def __repr__(self):
        mode = "tls" if self.encrypted else "plain"
        return f"LineSent({mode}, {self.data!r})"


@dataclass(repr=False)
class Disconnected(Event):
    """
    The live connection has been closed. `was_connected` is False if there was nothing to close.
    """

    was_connected: bool = True
