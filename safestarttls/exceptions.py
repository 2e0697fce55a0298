"""
All errors raised by safestarttls derive from `StartTlsException`.

When the executor aborts a sequence, it stamps the error with the effect that
failed (`.effect`) and its position in the sequence (`.index`), so callers can
tell how far a script got without parsing messages.

Low-level faults (`OSError`, `OpenSSL.SSL.Error`) are never propagated raw;
they are chained as `__cause__` of one of the types below.
"""
from __future__ import annotations

import typing

if typing.TYPE_CHECKING:
    from safestarttls.effects import Effect


class StartTlsException(Exception):
    """
    Base class for all exceptions thrown by safestarttls.
    """

    effect: Effect | None = None
    """The effect that was being executed when the error occurred."""
    index: int | None = None
    """Zero-based position of `effect` in its sequence."""

    def __init__(self, message=None):
        super().__init__(message)

    def __str__(self):
        msg = super().__str__()
        if self.effect is not None:
            return f"{msg} (effect #{self.index}: {self.effect!r})"
        return msg


class ConnectError(StartTlsException):
    """
    The socket provider could not open a plaintext channel.
    """


class IoError(StartTlsException):
    """
    Read, write, flush or close failed on an established channel,
    or the peer closed the channel while a line was expected.
    """


class UpgradeError(StartTlsException):
    """
    The TLS handshake or certificate verification failed.
    """


class ProtocolStateError(StartTlsException):
    """
    An effect was issued that the connection state does not allow,
    e.g. writing to a disconnected session or upgrading twice.
    This signals a bug in the script, not a runtime condition.
    """


class AlreadyConsumedError(StartTlsException):
    """
    A one-shot step (such as STARTTLS preparation) was run a second time.
    """


class OptionsError(StartTlsException):
    pass
