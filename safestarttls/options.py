from typing import Optional

from safestarttls import optmanager
from safestarttls.net import tls


class Options(optmanager.OptManager):
    def __init__(self, **kwargs) -> None:
        super().__init__()
        self.add_option(
            "connect_timeout",
            Optional[float],
            30.0,
            "Timeout in seconds for establishing the TCP connection. None waits forever.",
        )
        self.add_option(
            "read_size",
            int,
            4096,
            "Maximum number of bytes requested from the network in a single read.",
        )
        self.add_option(
            "max_line_length",
            int,
            64 * 1024,
            """
            Maximum length of a single protocol line, including the terminator.
            Longer lines abort the sequence.
            """,
        )
        self.add_option(
            "ssl_insecure",
            bool,
            False,
            "Do not verify server certificates.",
        )
        self.add_option(
            "ssl_verify_upstream_trusted_confdir",
            Optional[str],
            None,
            """
            Path to a directory of trusted CA certificates for server
            certificate verification prepared using the c_rehash tool.
            """,
        )
        self.add_option(
            "ssl_verify_upstream_trusted_ca",
            Optional[str],
            None,
            """
            Path to a PEM formatted trusted CA certificate.
            If neither this nor the confdir option is set, the certifi bundle is used.
            """,
        )
        self.add_option(
            "tls_version_min",
            str,
            tls.DEFAULT_MIN_VERSION.name,
            "Set the minimum TLS version for the upgraded connection.",
            choices=[x.name for x in tls.Version],
        )
        self.add_option(
            "tls_version_max",
            str,
            tls.DEFAULT_MAX_VERSION.name,
            "Set the maximum TLS version for the upgraded connection.",
            choices=[x.name for x in tls.Version],
        )
        self.add_option(
            "ciphers",
            Optional[str],
            None,
            "Set supported ciphers for the upgraded connection using OpenSSL syntax.",
        )
        self.add_option(
            "client_cert",
            Optional[str],
            None,
            "Path to a PEM file containing a client certificate and its private key.",
        )
        self.update(**kwargs)
