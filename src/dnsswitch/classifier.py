"""Classification of free-form resolver strings into ServerSpec entries.

Brief:
  classify() never raises. Tokens that are not a dotted-quad IPv4 address, an
  IPv6 address, an https:// DoH URL, a tls:// DoT host or a bare DoT host[:port]
  are dropped. An empty result is the caller's "no valid servers" case.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import urllib.parse
from typing import Iterable, List, Optional

from .models import ServerKind, ServerSpec

logger = logging.getLogger(__name__)

_OCTET = r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)"
_IPV4_RE = re.compile(rf"^{_OCTET}(?:\.{_OCTET}){{3}}$")
_IPV6_RE = re.compile(r"^[0-9A-Fa-f:]+$")
_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?$")
_HOST_PORT_RE = re.compile(r"^(?P<host>[A-Za-z0-9.-]+)(?::(?P<port>\d{1,5}))?$")

_SHORTHANDS = (("doh:", "https://"), ("dot:", "tls://"))
DOH_PREFIX = "https://"
DOT_PREFIX = "tls://"


def expand_shorthand(token: str) -> str:
    """Brief: Expand doh:/dot: shorthand prefixes.

    Inputs:
      - token: Trimmed input token.

    Outputs:
      - str: Token with the shorthand replaced by https:// or tls://.

    Example:
      >>> expand_shorthand("doh:dns.example.com")
      'https://dns.example.com'
      >>> expand_shorthand("dot://dns.example.com")
      'tls://dns.example.com'
    """

    lowered = token.lower()
    for short, full in _SHORTHANDS:
        if lowered.startswith(short) and not lowered.startswith(full):
            rest = token[len(short) :]
            return full + rest.lstrip("/")
    return token


def _normalize_ip(token: str) -> Optional[str]:
    if _IPV4_RE.match(token):
        return token
    if ":" in token and _IPV6_RE.match(token):
        try:
            return ipaddress.IPv6Address(token).compressed
        except ValueError:
            return None
    return None


def _is_hostname(host: str) -> bool:
    if "." not in host or not _HOSTNAME_RE.match(host):
        return False
    labels = host.rstrip(".").split(".")
    if any(not label or len(label) > 63 for label in labels):
        return False
    # A numeric-looking last label is a malformed address, not a host.
    return any(c.isalpha() for c in labels[-1])


def _normalize_doh(token: str) -> Optional[str]:
    parts = urllib.parse.urlsplit(token)
    if not parts.hostname:
        return None
    netloc = parts.netloc.lower()
    path = parts.path or ""
    query = f"?{parts.query}" if parts.query else ""
    return f"{DOH_PREFIX}{netloc}{path}{query}"


def _normalize_dot(host: str) -> Optional[str]:
    # TLS verifies a server name, so IP literals are not DoT targets.
    host = host.strip().rstrip("/").lower()
    m = _HOST_PORT_RE.match(host)
    if not m or not _is_hostname(m.group("host")):
        return None
    return host


def classify_token(raw: str) -> Optional[ServerSpec]:
    """Brief: Classify a single raw string.

    Inputs:
      - raw: Free-form resolver string.

    Outputs:
      - ServerSpec or None when the token is unrecognized.

    Example:
      >>> classify_token("tls://Dns.Example.com").normalized
      'dns.example.com'
      >>> classify_token("not a server") is None
      True
    """

    token = expand_shorthand(str(raw).strip())
    if not token:
        return None

    ip = _normalize_ip(token)
    if ip is not None:
        return ServerSpec(ServerKind.IP, ip, raw=raw)

    lowered = token.lower()
    if lowered.startswith(DOH_PREFIX):
        url = _normalize_doh(token)
        return ServerSpec(ServerKind.DOH, url, raw=raw) if url else None

    if lowered.startswith(DOT_PREFIX):
        host = _normalize_dot(token[len(DOT_PREFIX) :])
        return ServerSpec(ServerKind.DOT, host, raw=raw) if host else None

    host = _normalize_dot(token)
    if host is not None:
        return ServerSpec(ServerKind.DOT, host, raw=raw)

    return None


def classify(tokens: Iterable[str]) -> List[ServerSpec]:
    """Brief: Classify and deduplicate a batch of resolver strings.

    Inputs:
      - tokens: Iterable of raw strings (IPs, URLs, hostnames, shorthands).

    Outputs:
      - list[ServerSpec]: First-seen order, unique by normalized value.

    Example:
      >>> [s.normalized for s in classify(["1.1.1.1", "1.1.1.1", "doh:dns.example.com"])]
      ['1.1.1.1', 'https://dns.example.com']
    """

    seen = set()
    out: List[ServerSpec] = []
    for raw in tokens or []:
        spec = classify_token(raw)
        if spec is None:
            logger.debug("Dropping unrecognized server entry %r", raw)
            continue
        if spec.normalized in seen:
            continue
        seen.add(spec.normalized)
        out.append(spec)
    return out
