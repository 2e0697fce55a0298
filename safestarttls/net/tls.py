import os
import threading
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO

import certifi
from OpenSSL import SSL

from safestarttls.utils import human


class Version(Enum):
    UNBOUNDED = 0
    TLS1 = SSL.TLS1_VERSION
    TLS1_1 = SSL.TLS1_1_VERSION
    TLS1_2 = SSL.TLS1_2_VERSION
    TLS1_3 = SSL.TLS1_3_VERSION


class Verify(Enum):
    VERIFY_NONE = SSL.VERIFY_NONE
    VERIFY_PEER = SSL.VERIFY_PEER


DEFAULT_MIN_VERSION = Version.TLS1_2
DEFAULT_MAX_VERSION = Version.UNBOUNDED
DEFAULT_OPTIONS = SSL.OP_NO_COMPRESSION

# Matching on the CN is disabled in both Chrome and Firefox, so we disable it, too.
# https://www.chromestatus.com/feature/4981025180483584
DEFAULT_HOSTFLAGS = (
    getattr(SSL._lib, "X509_CHECK_FLAG_NO_PARTIAL_WILDCARDS", 0)  # type: ignore
    | getattr(SSL._lib, "X509_CHECK_FLAG_NEVER_CHECK_SUBJECT", 0)  # type: ignore
)


class MasterSecretLogger:
    def __init__(self, filename: Path):
        self.filename = filename.expanduser()
        self.f: BinaryIO | None = None
        self.lock = threading.Lock()

    # required for functools.wraps, which pyOpenSSL uses.
    __name__ = "MasterSecretLogger"

    def __call__(self, connection: SSL.Connection, keymaterial: bytes) -> None:
        with self.lock:
            if self.f is None:
                self.filename.parent.mkdir(parents=True, exist_ok=True)
                self.f = self.filename.open("ab")
                self.f.write(b"\n")
            self.f.write(keymaterial + b"\n")
            self.f.flush()

    def close(self):
        with self.lock:
            if self.f is not None:
                self.f.close()


def make_master_secret_logger(filename: str | None) -> MasterSecretLogger | None:
    if filename:
        return MasterSecretLogger(Path(filename))
    return None


log_master_secret = make_master_secret_logger(
    os.getenv("SAFESTARTTLS_SSLKEYLOGFILE") or os.getenv("SSLKEYLOGFILE")
)


@lru_cache(256)
def create_client_context(
    *,
    min_version: Version,
    max_version: Version,
    cipher_list: tuple[str, ...] | None,
    verify: Verify,
    ca_path: str | None,
    ca_pemfile: str | None,
    client_cert: str | None,
) -> SSL.Context:
    """
    Create the context used to upgrade a plaintext connection.
    Contexts are cached, so all arguments must be hashable.
    """
    context = SSL.Context(SSL.TLS_CLIENT_METHOD)

    try:
        context.set_min_proto_version(min_version.value)
        context.set_max_proto_version(max_version.value)
    except SSL.Error as e:
        raise RuntimeError(
            f"Error setting TLS versions ({min_version=}, {max_version=}). "
            "The version you specified may be unavailable in your libssl."
        ) from e

    context.set_options(DEFAULT_OPTIONS)

    if cipher_list is not None:
        try:
            context.set_cipher_list(b":".join(x.encode() for x in cipher_list))
        except SSL.Error as e:
            raise RuntimeError(f"SSL cipher specification error: {e}") from e

    context.set_verify(verify.value, None)
    if ca_path is None and ca_pemfile is None:
        ca_pemfile = certifi.where()
    try:
        context.load_verify_locations(ca_pemfile, ca_path)
    except SSL.Error as e:
        raise RuntimeError(
            f"Cannot load trusted certificates ({ca_pemfile=}, {ca_path=})."
        ) from e

    if client_cert:
        try:
            context.use_privatekey_file(client_cert)
            context.use_certificate_chain_file(client_cert)
        except SSL.Error as e:
            raise RuntimeError(f"Cannot load TLS client certificate: {e}") from e

    if log_master_secret:
        context.set_keylog_callback(log_master_secret)

    return context


def context_from_options(options) -> SSL.Context:
    """
    Build (or fetch from cache) the client context described by a `safestarttls.options.Options` instance.
    """
    if options.ssl_insecure:
        verify = Verify.VERIFY_NONE
    else:
        verify = Verify.VERIFY_PEER
    cipher_list: tuple[str, ...] | None = None
    if options.ciphers:
        cipher_list = tuple(options.ciphers.split(":"))
    return create_client_context(
        min_version=Version[options.tls_version_min],
        max_version=Version[options.tls_version_max],
        cipher_list=cipher_list,
        verify=verify,
        ca_path=options.ssl_verify_upstream_trusted_confdir,
        ca_pemfile=options.ssl_verify_upstream_trusted_ca,
        client_cert=options.client_cert,
    )


def client_connection(
    context: SSL.Context, server_name: str, sock=None
) -> SSL.Connection:
    """
    Create a client-side `SSL.Connection` for `server_name`.

    SNI is sent for host names, but not for IP literals (RFC 6066).
    If the context verifies peers, the certificate must also match `server_name`.
    Pass `sock=None` for a memory BIO connection.
    """
    conn = SSL.Connection(context, sock)
    ip = human.packed_ip(server_name)
    if context.get_verify_mode() != SSL.VERIFY_NONE:
        # Manually enable hostname verification on the connection object.
        # https://wiki.openssl.org/index.php/Hostname_validation
        param = SSL._lib.SSL_get0_param(conn._ssl)  # type: ignore
        SSL._lib.X509_VERIFY_PARAM_set_hostflags(param, DEFAULT_HOSTFLAGS)  # type: ignore
        if ip is not None:
            ok = SSL._lib.X509_VERIFY_PARAM_set1_ip(param, ip, len(ip))  # type: ignore
        else:
            host_name = server_name.encode("idna")
            ok = SSL._lib.X509_VERIFY_PARAM_set1_host(param, host_name, len(host_name))  # type: ignore
        SSL._openssl_assert(ok == 1)  # type: ignore
    if ip is None:
        # RFC 6066: Literal IPv4 and IPv6 addresses are not permitted in "HostName".
        conn.set_tlsext_host_name(server_name.encode("idna"))
    conn.set_connect_state()
    return conn
