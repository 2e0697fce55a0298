"""
Ready-made STARTTLS negotiations.

The exact framing matters for interoperability, so these are spelled out
effect by effect rather than generated.
"""
from safestarttls.sequence import EffectSequence

IMAP_PORT = 143
SMTP_PORT = 25


class StartTlsProvider:
    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port

    def imap(self) -> EffectSequence:
        """
        IMAP (RFC 3501): skip the greeting, ask for STARTTLS, upgrade
        and fetch the capabilities over the encrypted channel.
        """
        seq = EffectSequence()

        seq.connect(self.host, self.port)
        seq.discard_line()

        seq.write_line("A1 STARTTLS")
        seq.discard_line()

        seq.upgrade(self.host)
        seq.write_line("A2 CAPABILITY")
        seq.read_line()

        seq.disconnect()
        return seq

    def smtp(self, helo: str) -> EffectSequence:
        """
        SMTP (RFC 3207): greet with HELO, ask for STARTTLS, upgrade and send a NOOP.
        """
        seq = EffectSequence()

        seq.connect(self.host, self.port)
        seq.discard_line()

        seq.write_line(f"HELO {helo}")
        seq.discard_line()

        seq.write_line("STARTTLS")
        seq.discard_line()

        seq.upgrade(self.host)
        seq.write_line("NOOP")
        seq.discard_line()

        seq.disconnect()
        return seq

    def __repr__(self):
        return f"StartTlsProvider({self.host!r}, {self.port})"


def imap_starttls(host: str, port: int = IMAP_PORT) -> EffectSequence:
    return StartTlsProvider(host, port).imap()


def smtp_starttls(host: str, helo: str, port: int = SMTP_PORT) -> EffectSequence:
    return StartTlsProvider(host, port).smtp(helo)
