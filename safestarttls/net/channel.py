"""
Byte channels, the transport the executor performs its I/O on.

There are two families with the same four operations (`read`, `write`, `flush`, `close`):

    - `Channel`: blocking, every operation returns its result directly.
    - `AsyncChannel`: asyncio, every operation is a coroutine.

Within each family there is a plaintext variant and a TLS variant layered over a plaintext one.
Protocol code never needs to know which of the four it is talking to.

Shared semantics:

    - `read(size)` returns at most `size` bytes, and `b""` at end of stream.
    - `write(data)` may write less than `data`, the return value says how much. Use `write_all`.
    - OS and TLS faults are raised as `IoError`, with the original exception as `__cause__`.
    - `close()` may be called more than once.
    - A plaintext channel is consumed by `detach()` when it is upgraded. Using it afterwards
      raises `ProtocolStateError`.
"""
import abc
import asyncio
import select
import socket

from OpenSSL import SSL

from safestarttls.exceptions import IoError
from safestarttls.exceptions import ProtocolStateError
from safestarttls.exceptions import UpgradeError

MAX_BIO_READ = 65535


def close_socket(sock: socket.socket) -> None:
    """
    Does a hard close of a socket, without emitting a RST.
    """
    try:
        # We already indicate that we close our end.
        # may raise "Transport endpoint is not connected" on Linux
        sock.shutdown(socket.SHUT_WR)
        # Now we can close the other half as well.
        sock.shutdown(socket.SHUT_RD)
    except OSError:
        pass

    sock.close()


def is_unexpected_eof(e: SSL.Error) -> bool:
    """
    True if the peer closed the TCP connection without sending a TLS close_notify.
    Depending on the OpenSSL version, this is a SysCallError or a generic SSL.Error.
    """
    if isinstance(e, SSL.SysCallError):
        return e.args == (-1, "Unexpected EOF")
    return "unexpected eof" in str(e).lower()


class Channel(metaclass=abc.ABCMeta):
    """A blocking byte channel."""

    address: tuple | None = None
    """The peer address, for log messages."""

    @abc.abstractmethod
    def read(self, size: int) -> bytes:
        raise NotImplementedError

    @abc.abstractmethod
    def write(self, data: bytes) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def flush(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    def write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            n = self.write(bytes(view))
            if n <= 0:
                raise IoError("Channel did not accept any data.")
            view = view[n:]


class AsyncChannel(metaclass=abc.ABCMeta):
    """An asyncio byte channel."""

    address: tuple | None = None
    """The peer address, for log messages."""

    @abc.abstractmethod
    async def read(self, size: int) -> bytes:
        raise NotImplementedError

    @abc.abstractmethod
    async def write(self, data: bytes) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    async def flush(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    async def write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            n = await self.write(bytes(view))
            if n <= 0:
                raise IoError("Channel did not accept any data.")
            view = view[n:]


class SocketChannel(Channel):
    """
    Plaintext channel over a connected, blocking socket.
    A socket timeout, if set, applies to every read and write.
    """

    sock: socket.socket | None

    def __init__(self, sock: socket.socket, address: tuple | None = None) -> None:
        self.sock = sock
        self.address = address

    def _socket(self) -> socket.socket:
        if self.sock is None:
            raise ProtocolStateError("Channel has been detached or closed.")
        return self.sock

    def read(self, size: int) -> bytes:
        sock = self._socket()
        try:
            return sock.recv(size)
        except OSError as e:
            raise IoError(f"Error reading from {self.address}: {e!r}") from e

    def write(self, data: bytes) -> int:
        sock = self._socket()
        try:
            return sock.send(data)
        except OSError as e:
            raise IoError(f"Error writing to {self.address}: {e!r}") from e

    def flush(self) -> None:
        # Sockets are unbuffered on our side.
        self._socket()

    def close(self) -> None:
        if self.sock is not None:
            close_socket(self.sock)
            self.sock = None

    def detach(self) -> socket.socket:
        """
        Hand over the socket. This channel cannot be used afterwards.
        """
        sock = self._socket()
        self.sock = None
        return sock

    def __repr__(self):
        state = "open" if self.sock is not None else "detached"
        return f"SocketChannel({self.address!r}, {state})"


class TlsChannel(Channel):
    """
    TLS channel over a socket taken from a `SocketChannel`.
    """

    def __init__(
        self, conn: SSL.Connection, sock: socket.socket, address: tuple | None = None
    ) -> None:
        self.conn = conn
        self.sock = sock
        self.address = address
        self.closed = False

    @property
    def tls_version(self) -> str | None:
        return self.conn.get_protocol_version_name()

    @property
    def cipher(self) -> str | None:
        return self.conn.get_cipher_name()

    def _wait(self, error: SSL.Error) -> None:
        """
        Wait until the socket is ready after a WantRead/WantWrite.
        Only happens if the socket has a timeout, which makes it non-blocking for OpenSSL.
        """
        timeout = self.sock.gettimeout()
        if isinstance(error, SSL.WantWriteError):
            ready = select.select([], [self.sock], [], timeout)[1]
        else:
            ready = select.select([self.sock], [], [], timeout)[0]
        if not ready:
            raise IoError(f"TLS operation with {self.address} timed out.")

    def handshake(self) -> None:
        while True:
            try:
                self.conn.do_handshake()
            except (SSL.WantReadError, SSL.WantWriteError) as e:
                try:
                    self._wait(e)
                except IoError as timeout:
                    raise UpgradeError(str(timeout)) from e
            except (SSL.Error, OSError) as e:
                raise UpgradeError(f"TLS handshake with {self.address} failed: {e!r}") from e
            else:
                return

    def read(self, size: int) -> bytes:
        if self.closed:
            raise ProtocolStateError("Channel has been closed.")
        while True:
            try:
                return self.conn.recv(size)
            except SSL.ZeroReturnError:
                # TLS connection was shut down cleanly
                return b""
            except (SSL.WantReadError, SSL.WantWriteError) as e:
                self._wait(e)
            except SSL.Error as e:
                if is_unexpected_eof(e):
                    return b""
                raise IoError(f"Error reading from {self.address}: {e!r}") from e
            except OSError as e:
                raise IoError(f"Error reading from {self.address}: {e!r}") from e

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ProtocolStateError("Channel has been closed.")
        while True:
            try:
                return self.conn.send(data)
            except (SSL.WantReadError, SSL.WantWriteError) as e:
                self._wait(e)
            except (SSL.Error, OSError) as e:
                raise IoError(f"Error writing to {self.address}: {e!r}") from e

    def flush(self) -> None:
        if self.closed:
            raise ProtocolStateError("Channel has been closed.")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.conn.shutdown()
        except (SSL.Error, OSError):
            pass
        close_socket(self.sock)

    def __repr__(self):
        state = "closed" if self.closed else "open"
        return f"TlsChannel({self.address!r}, {state})"


class StreamChannel(AsyncChannel):
    """
    Plaintext channel over an asyncio stream pair.
    """

    reader: asyncio.StreamReader | None
    writer: asyncio.StreamWriter | None

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        address: tuple | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.address = address

    def _streams(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if self.reader is None or self.writer is None:
            raise ProtocolStateError("Channel has been detached or closed.")
        return self.reader, self.writer

    async def read(self, size: int) -> bytes:
        reader, _ = self._streams()
        try:
            return await reader.read(size)
        except OSError as e:
            raise IoError(f"Error reading from {self.address}: {e!r}") from e

    async def write(self, data: bytes) -> int:
        _, writer = self._streams()
        if writer.is_closing():
            raise IoError(f"Error writing to {self.address}: connection is closing.")
        writer.write(data)
        return len(data)

    async def flush(self) -> None:
        _, writer = self._streams()
        try:
            await writer.drain()
        except OSError as e:
            raise IoError(f"Error writing to {self.address}: {e!r}") from e

    async def close(self) -> None:
        if self.writer is None:
            return
        writer = self.writer
        self.reader = self.writer = None
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    def detach(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Hand over the stream pair. This channel cannot be used afterwards.
        """
        streams = self._streams()
        self.reader = self.writer = None
        return streams

    def __repr__(self):
        state = "open" if self.writer is not None else "detached"
        return f"StreamChannel({self.address!r}, {state})"


class AsyncTlsChannel(AsyncChannel):
    """
    TLS channel over an asyncio stream pair taken from a `StreamChannel`.

    OpenSSL works on memory BIOs here: ciphertext is shuttled between the
    `SSL.Connection` and the streams by this class, plaintext never touches the streams.
    """

    def __init__(
        self,
        conn: SSL.Connection,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        address: tuple | None = None,
        read_size: int = 4096,
    ) -> None:
        self.conn = conn
        self.reader = reader
        self.writer = writer
        self.address = address
        self.read_size = read_size
        self.closed = False

    @property
    def tls_version(self) -> str | None:
        return self.conn.get_protocol_version_name()

    @property
    def cipher(self) -> str | None:
        return self.conn.get_cipher_name()

    async def _send_outgoing(self) -> None:
        """Move all pending ciphertext from OpenSSL to the network."""
        while True:
            try:
                data = self.conn.bio_read(MAX_BIO_READ)
            except SSL.WantReadError:
                break
            self.writer.write(data)
        await self.writer.drain()

    async def _receive_incoming(self) -> bool:
        """Feed the next chunk of ciphertext to OpenSSL. Returns False at end of stream."""
        data = await self.reader.read(self.read_size)
        if not data:
            self.conn.bio_shutdown()
            return False
        self.conn.bio_write(data)
        return True

    async def handshake(self) -> None:
        try:
            while True:
                try:
                    self.conn.do_handshake()
                except SSL.WantReadError:
                    await self._send_outgoing()
                    if not await self._receive_incoming():
                        raise UpgradeError(
                            f"Connection to {self.address} closed during TLS handshake."
                        )
                else:
                    break
            # The final handshake flight (e.g. the client Finished message) may still be pending.
            await self._send_outgoing()
        except (SSL.Error, OSError) as e:
            raise UpgradeError(f"TLS handshake with {self.address} failed: {e!r}") from e

    async def read(self, size: int) -> bytes:
        if self.closed:
            raise ProtocolStateError("Channel has been closed.")
        eof = False
        try:
            while True:
                try:
                    data = self.conn.recv(size)
                except SSL.WantReadError:
                    if eof:
                        return b""
                    await self._send_outgoing()
                    eof = not await self._receive_incoming()
                except SSL.ZeroReturnError:
                    return b""
                except SSL.Error as e:
                    if eof or is_unexpected_eof(e):
                        return b""
                    raise
                else:
                    # reading may have produced protocol messages, e.g. a key update.
                    await self._send_outgoing()
                    return data
        except (SSL.Error, OSError) as e:
            raise IoError(f"Error reading from {self.address}: {e!r}") from e

    async def write(self, data: bytes) -> int:
        if self.closed:
            raise ProtocolStateError("Channel has been closed.")
        try:
            n = self.conn.send(data)
            await self._send_outgoing()
        except (SSL.Error, OSError) as e:
            raise IoError(f"Error writing to {self.address}: {e!r}") from e
        return n

    async def flush(self) -> None:
        if self.closed:
            raise ProtocolStateError("Channel has been closed.")
        try:
            await self._send_outgoing()
        except OSError as e:
            raise IoError(f"Error writing to {self.address}: {e!r}") from e

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.conn.shutdown()
            await self._send_outgoing()
        except (SSL.Error, OSError):
            pass
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass

    def __repr__(self):
        state = "closed" if self.closed else "open"
        return f"AsyncTlsChannel({self.address!r}, {state})"
