"""
The executor's collaborators for opening connections and upgrading them to TLS.

Socket providers open plaintext channels, TLS upgrade providers consume a
plaintext channel and return an encrypted one over the same connection.
Tests swap these out for in-memory fakes.
"""
import abc
import asyncio
import logging
import socket

from OpenSSL import SSL

from safestarttls import options as moptions
from safestarttls.exceptions import ConnectError
from safestarttls.exceptions import ProtocolStateError
from safestarttls.exceptions import UpgradeError
from safestarttls.net import tls
from safestarttls.net.channel import AsyncChannel
from safestarttls.net.channel import AsyncTlsChannel
from safestarttls.net.channel import Channel
from safestarttls.net.channel import close_socket
from safestarttls.net.channel import SocketChannel
from safestarttls.net.channel import StreamChannel
from safestarttls.net.channel import TlsChannel

logger = logging.getLogger(__name__)


class Connector(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def open(self, host: str, port: int) -> Channel:
        """Open a plaintext channel. Raises ConnectError."""


class TlsUpgrader(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def upgrade(self, channel: Channel, server_name: str) -> Channel:
        """
        Consume a plaintext channel and return a TLS channel over the same connection.
        Raises UpgradeError.
        """


class AsyncConnector(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    async def open(self, host: str, port: int) -> AsyncChannel:
        """Open a plaintext channel. Raises ConnectError."""


class AsyncTlsUpgrader(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    async def upgrade(self, channel: AsyncChannel, server_name: str) -> AsyncChannel:
        """
        Consume a plaintext channel and return a TLS channel over the same connection.
        Raises UpgradeError.
        """


class TcpConnector(Connector):
    def __init__(self, options: moptions.Options | None = None) -> None:
        self.options = options or moptions.Options()

    def open(self, host: str, port: int) -> Channel:
        try:
            sock = socket.create_connection(
                (host, port), timeout=self.options.connect_timeout
            )
        except OSError as e:
            raise ConnectError(f'Error connecting to "{host}": {e}') from e
        return SocketChannel(sock, address=(host, port))


class AsyncTcpConnector(AsyncConnector):
    def __init__(self, options: moptions.Options | None = None) -> None:
        self.options = options or moptions.Options()

    async def open(self, host: str, port: int) -> AsyncChannel:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.options.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            err = str(e) or type(e).__name__
            raise ConnectError(f'Error connecting to "{host}": {err}') from e
        return StreamChannel(reader, writer, address=(host, port))


class OpenSSLUpgrader(TlsUpgrader):
    def __init__(self, options: moptions.Options | None = None) -> None:
        self.options = options or moptions.Options()

    def upgrade(self, channel: Channel, server_name: str) -> Channel:
        if not isinstance(channel, SocketChannel):
            channel.close()
            raise ProtocolStateError(f"Cannot upgrade {channel!r} to TLS.")
        try:
            context = tls.context_from_options(self.options)
        except RuntimeError as e:
            channel.close()
            raise UpgradeError(str(e)) from e
        sock = channel.detach()
        try:
            conn = tls.client_connection(context, server_name, sock)
        except SSL.Error as e:
            close_socket(sock)
            raise UpgradeError(f"Cannot set up TLS for {server_name}: {e!r}") from e
        tls_channel = TlsChannel(conn, sock, address=channel.address)
        try:
            tls_channel.handshake()
        except BaseException:
            close_socket(sock)
            raise
        logger.debug(
            f"TLS established with {server_name}: {tls_channel.tls_version}, {tls_channel.cipher}"
        )
        return tls_channel


class AsyncOpenSSLUpgrader(AsyncTlsUpgrader):
    def __init__(self, options: moptions.Options | None = None) -> None:
        self.options = options or moptions.Options()

    async def upgrade(self, channel: AsyncChannel, server_name: str) -> AsyncChannel:
        if not isinstance(channel, StreamChannel):
            await channel.close()
            raise ProtocolStateError(f"Cannot upgrade {channel!r} to TLS.")
        try:
            context = tls.context_from_options(self.options)
        except RuntimeError as e:
            await channel.close()
            raise UpgradeError(str(e)) from e
        reader, writer = channel.detach()
        try:
            conn = tls.client_connection(context, server_name)
        except SSL.Error as e:
            writer.close()
            raise UpgradeError(f"Cannot set up TLS for {server_name}: {e!r}") from e
        tls_channel = AsyncTlsChannel(
            conn,
            reader,
            writer,
            address=channel.address,
            read_size=self.options.read_size,
        )
        try:
            await tls_channel.handshake()
        except UpgradeError:
            await tls_channel.close()
            raise
        except BaseException:
            # cancelled mid-handshake
            writer.close()
            raise
        logger.debug(
            f"TLS established with {server_name}: {tls_channel.tls_version}, {tls_channel.cipher}"
        )
        return tls_channel
