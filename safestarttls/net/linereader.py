"""
Line-buffered readers on top of a channel.

To find a line terminator, a reader has to read in chunks and may end up holding
bytes that belong to the next line ("read-ahead"). Across a STARTTLS upgrade these
bytes are dangerous: they arrived in plaintext, so they must never be handed out as
if they had come over the encrypted channel. Readers therefore have no way to
give their buffer back to the channel: `detach()` returns the channel and drops
whatever was read ahead.
"""
from safestarttls.exceptions import IoError
from safestarttls.exceptions import ProtocolStateError
from safestarttls.net.channel import AsyncChannel
from safestarttls.net.channel import Channel

DEFAULT_READ_SIZE = 4096
DEFAULT_MAX_LINE_LENGTH = 64 * 1024


class _LineBuffer:
    read_size: int
    max_line_length: int
    _buf: bytearray
    _detached: bool

    def __init__(self, read_size: int, max_line_length: int) -> None:
        self.read_size = read_size
        self.max_line_length = max_line_length
        self._buf = bytearray()
        self._detached = False

    @property
    def buffered(self) -> int:
        """Number of bytes read from the channel but not yet returned as a line."""
        return len(self._buf)

    def _check_attached(self) -> None:
        if self._detached:
            raise ProtocolStateError("Reader has been detached from its channel.")

    def _take_line(self) -> bytes | None:
        """Pop the next complete line (with its terminator) from the buffer, if any."""
        i = self._buf.find(b"\n")
        if i == -1:
            if len(self._buf) >= self.max_line_length:
                raise IoError(
                    f"Line exceeds the maximum length of {self.max_line_length} bytes."
                )
            return None
        if i + 1 > self.max_line_length:
            raise IoError(
                f"Line exceeds the maximum length of {self.max_line_length} bytes."
            )
        line = bytes(self._buf[: i + 1])
        del self._buf[: i + 1]
        return line

    def _feed(self, data: bytes) -> bool:
        """Append freshly read data. Returns False at end of stream."""
        if not data:
            return False
        self._buf += data
        return True

    def _take_rest(self) -> bytes:
        """At end of stream: return the unterminated remainder, if any."""
        rest = bytes(self._buf)
        self._buf.clear()
        return rest

    def _discard(self) -> bytes:
        self._detached = True
        discarded = bytes(self._buf)
        self._buf.clear()
        return discarded


class LineReader(_LineBuffer):
    """
    Reads LF-terminated lines (CRLF included) from a blocking channel.
    """

    channel: Channel

    def __init__(
        self,
        channel: Channel,
        read_size: int = DEFAULT_READ_SIZE,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    ) -> None:
        super().__init__(read_size, max_line_length)
        self.channel = channel

    def readline(self) -> bytes:
        """
        Return the next line including its terminator.
        At end of stream, return the unterminated remainder, or b"" if there is none.
        """
        self._check_attached()
        while True:
            line = self._take_line()
            if line is not None:
                return line
            if not self._feed(self.channel.read(self.read_size)):
                return self._take_rest()

    def detach(self) -> tuple[Channel, bytes]:
        """
        Release the channel. Returns the channel and the read-ahead bytes that were dropped.
        """
        self._check_attached()
        return self.channel, self._discard()


class AsyncLineReader(_LineBuffer):
    """
    Reads LF-terminated lines (CRLF included) from an asyncio channel.

    `readline` only suspends inside `channel.read`. Once it returns, no read is pending,
    so `detach` can hand the channel over without a read racing the new owner.
    """

    channel: AsyncChannel

    def __init__(
        self,
        channel: AsyncChannel,
        read_size: int = DEFAULT_READ_SIZE,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    ) -> None:
        super().__init__(read_size, max_line_length)
        self.channel = channel

    async def readline(self) -> bytes:
        """
        Return the next line including its terminator.
        At end of stream, return the unterminated remainder, or b"" if there is none.
        """
        self._check_attached()
        while True:
            line = self._take_line()
            if line is not None:
                return line
            if not self._feed(await self.channel.read(self.read_size)):
                return self._take_rest()

    def detach(self) -> tuple[AsyncChannel, bytes]:
        """
        Release the channel. Returns the channel and the read-ahead bytes that were dropped.
        """
        self._check_attached()
        return self.channel, self._discard()
