"""DNS stamp (sdns://) encoding for DoH and DoT upstreams.

Brief:
  Stamps are the descriptor format the resolver proxy reads for statically
  defined servers: a protocol byte, 8 little-endian property bytes and a
  sequence of length-prefixed fields, base64url-encoded without padding.
"""

from __future__ import annotations

import base64
import ipaddress
import urllib.parse
from typing import List, Sequence

STAMP_SCHEME = "sdns://"
PROTO_DOH = 0x02
PROTO_DOT = 0x03

PROP_DNSSEC = 1 << 0
PROP_NO_LOGS = 1 << 1
PROP_NO_FILTER = 1 << 2


def _b64url_no_pad(data: bytes) -> str:
    """
    Brief: Base64url-encode without padding.

    Example:
        >>> _b64url_no_pad(b"\\x01\\x02")
        'AQI'
    """
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _lp(value: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > 255:
        raise ValueError(f"stamp field too long: {value!r}")
    return bytes([len(raw)]) + raw


def _vlp(values: Sequence[bytes]) -> bytes:
    """Variable-length set: every element but the last has the 0x80 bit set."""
    items: List[bytes] = list(values) or [b""]
    out = bytearray()
    for i, item in enumerate(items):
        if len(item) > 0x7F:
            raise ValueError("stamp set element too long")
        marker = len(item) | (0x80 if i < len(items) - 1 else 0)
        out.append(marker)
        out.extend(item)
    return bytes(out)


def _header(proto: int, props: int) -> bytes:
    return bytes([proto]) + int(props).to_bytes(8, "little")


def stamp_address(address: str) -> str:
    """
    Brief: Format an IP for the stamp address field; IPv6 goes in brackets.

    Example:
        >>> stamp_address("2606:4700::1111")
        '[2606:4700::1111]'
        >>> stamp_address("1.1.1.1")
        '1.1.1.1'
    """
    address = address.strip().strip("[]")
    if not address:
        return ""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        raise ValueError(f"stamp address is not an IP: {address!r}") from None
    return f"[{ip.compressed}]" if ip.version == 6 else ip.compressed


def doh_stamp(url: str, *, address: str = "", props: int = 0) -> str:
    """Brief: Encode a DNS-over-HTTPS stamp.

    Inputs:
      - url: Full https:// URL of the DoH endpoint.
      - address: Optional IP address of the server (empty lets the proxy resolve it).
      - props: Property bits (PROP_DNSSEC, PROP_NO_LOGS, PROP_NO_FILTER).

    Outputs:
      - str: sdns:// stamp.

    Example:
      >>> doh_stamp("https://dns.example.com/dns-query").startswith("sdns://Ag")
      True
    """

    parts = urllib.parse.urlsplit(url)
    if parts.scheme.lower() != "https" or not parts.hostname:
        raise ValueError(f"not a DoH URL: {url!r}")
    path = parts.path or "/dns-query"
    if parts.query:
        path = f"{path}?{parts.query}"

    body = bytearray(_header(PROTO_DOH, props))
    body += _lp(stamp_address(address))
    body += _vlp([])
    body += _lp(parts.netloc.lower())
    body += _lp(path)
    return STAMP_SCHEME + _b64url_no_pad(bytes(body))


def dot_stamp(host: str, *, address: str = "", props: int = 0) -> str:
    """Brief: Encode a DNS-over-TLS stamp.

    Inputs:
      - host: Server hostname, optionally with ":port".
      - address: Optional IP address of the server.
      - props: Property bits.

    Outputs:
      - str: sdns:// stamp.

    Example:
      >>> dot_stamp("dns.example.com").startswith("sdns://Aw")
      True
    """

    if not host:
        raise ValueError("DoT stamp needs a hostname")
    body = bytearray(_header(PROTO_DOT, props))
    body += _lp(stamp_address(address))
    body += _vlp([])
    body += _lp(host.lower())
    return STAMP_SCHEME + _b64url_no_pad(bytes(body))


def decode_stamp(stamp: str) -> bytes:
    """Brief: Return the raw bytes of an sdns:// stamp (for diagnostics and tests)."""
    if not stamp.startswith(STAMP_SCHEME):
        raise ValueError(f"not a stamp: {stamp!r}")
    payload = stamp[len(STAMP_SCHEME) :]
    payload += "=" * (-len(payload) % 4)
    return base64.urlsafe_b64decode(payload)

