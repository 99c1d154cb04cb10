"""
Brief: Tests for dnsswitch.classifier (server string classification).

Inputs:
  - None

Outputs:
  - None
"""

import pytest

from dnsswitch.classifier import classify, classify_token, expand_shorthand
from dnsswitch.models import ApplyRequest, ServerKind, ServerSpec, spec_strings


def test_classify_dedupes_after_normalization():
    """
    Brief: Duplicate entries collapse to one spec in first-seen order.

    Inputs:
      - ["1.1.1.1", "1.1.1.1"]

    Outputs:
      - None: Asserts a single IP spec
    """
    assert classify(["1.1.1.1", "1.1.1.1"]) == [ServerSpec(ServerKind.IP, "1.1.1.1")]
    assert spec_strings(classify([" 9.9.9.9", "1.1.1.1", "9.9.9.9 "])) == ["9.9.9.9", "1.1.1.1"]


def test_classify_expands_shorthand_prefixes():
    assert classify(["doh:dns.example.com"]) == [
        ServerSpec(ServerKind.DOH, "https://dns.example.com")
    ]
    assert classify(["dot:dns.example.com"]) == [ServerSpec(ServerKind.DOT, "dns.example.com")]
    assert expand_shorthand("DoH://dns.example.com/q") == "https://dns.example.com/q"
    assert expand_shorthand("https://x.example") == "https://x.example"


@pytest.mark.parametrize(
    "raw,kind,normalized",
    [
        ("8.8.8.8", ServerKind.IP, "8.8.8.8"),
        ("255.255.255.255", ServerKind.IP, "255.255.255.255"),
        ("2606:4700:4700:0000:0000:0000:0000:1111", ServerKind.IP, "2606:4700:4700::1111"),
        ("::1", ServerKind.IP, "::1"),
        ("https://DNS.Example.com/dns-query", ServerKind.DOH, "https://dns.example.com/dns-query"),
        ("https://dns.example.com:8443/q?x=1", ServerKind.DOH, "https://dns.example.com:8443/q?x=1"),
        ("tls://Dns.Example.com", ServerKind.DOT, "dns.example.com"),
        ("tls://dns.example.com:853", ServerKind.DOT, "dns.example.com:853"),
        ("one.one.one.one", ServerKind.DOT, "one.one.one.one"),
        ("dns.example.com:853", ServerKind.DOT, "dns.example.com:853"),
    ],
)
def test_classify_token_kinds(raw, kind, normalized):
    """
    Brief: Each supported form maps to its kind and canonical string.

    Inputs:
      - raw, kind, normalized: parametrized cases

    Outputs:
      - None: Asserts classification result
    """
    spec = classify_token(raw)
    assert spec is not None
    assert spec.kind is kind
    assert spec.normalized == normalized
    assert spec.raw == raw


@pytest.mark.parametrize(
    "raw",
    [
        "", "   ", "256.1.1.1", "01.2.3.4", "1.2.3", "not a server", "localhost",
        "https://", "tls://", "tls://bad host", "ftp://x.example", "10.0.0.300",
        # DoT needs a server name for certificate checks
        "tls://1.1.1.1", "dot:9.9.9.9:853", "tls://[2606:4700::1111]", "1.1.1.1:53",
    ],
)
def test_unrecognized_tokens_are_dropped(raw):
    assert classify_token(raw) is None
    assert classify([raw]) == []


def test_classify_is_idempotent_on_normalized_strings():
    """
    Brief: Reclassifying normalized strings yields the same specs.

    Inputs:
      - mixed list of raw forms

    Outputs:
      - None: Asserts classify(spec_strings(x)) == x
    """
    specs = classify(
        [
            "doh:DNS.example.com/dns-query",
            " 1.1.1.1",
            "dot:dns.example.net",
            "2001:db8::0:1",
            "quad9.net",
            "tls://dns.example.com:853",
            "https://dns.example.com:8443/q?x=1",
        ]
    )
    assert len(specs) == 7
    assert classify(spec_strings(specs)) == specs
    assert [s.kind for s in classify(spec_strings(specs))] == [s.kind for s in specs]


def test_classify_mixed_request_exposes_kinds_by_priority():
    req = ApplyRequest(classify(["1.1.1.1", "tls://dns.example.net", "https://dns.example.com/q"]))
    assert req.is_mixed
    assert req.kinds == [ServerKind.DOH, ServerKind.DOT, ServerKind.IP]
    assert req.priority_kind() is ServerKind.DOH
    assert spec_strings(req.select(ServerKind.IP)) == ["1.1.1.1"]


def test_classify_empty_input():
    assert classify([]) == []
    assert ApplyRequest([]).priority_kind() is None
