import ipaddress


def format_address(address: tuple | None) -> str:
    """
    Format a `(host, port)` tuple for log messages.
    IPv6 hosts are bracketed, IPv4-mapped IPv6 addresses are shown as IPv4.
    """
    if address is None:
        return "<no address>"
    try:
        host = ipaddress.ip_address(address[0])
    except ValueError:
        return f"{address[0]}:{address[1]}"
    if isinstance(host, ipaddress.IPv6Address):
        if host.ipv4_mapped:
            return f"{host.ipv4_mapped}:{address[1]}"
        return f"[{host}]:{address[1]}"
    return f"{host}:{address[1]}"


def packed_ip(host: str) -> bytes | None:
    """
    The packed form of `host` if it is an IP literal, None for host names.
    """
    try:
        return ipaddress.ip_address(host).packed
    except ValueError:
        return None
