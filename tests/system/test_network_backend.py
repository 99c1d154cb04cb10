"""
Brief: Tests for dnsswitch.system.network (parsers and SystemDNSBackend).

Inputs:
  - None

Outputs:
  - None
"""

import socket

from dnsswitch.models import ErrorKind
from dnsswitch.system import network as network_mod
from dnsswitch.system.network import (
    SystemDNSBackend,
    parse_dns_servers,
    parse_network_services,
    parse_scutil_nameservers,
    resolve_host,
)

SCUTIL_SAMPLE = """DNS configuration

resolver #1
  search domain[0] : lan
  nameserver[0] : 192.168.1.1
  if_index : 15 (en0)
  flags    : Request A records
  reach    : 0x00020002 (Reachable,Directly Reachable Address)

resolver #2
  domain   : local
  options  : mdns
  timeout  : 5

DNS configuration (for scoped queries)

resolver #1
  nameserver[0] : 192.168.1.1
  nameserver[1] : fe80::1%en0
"""


def test_parsers_handle_real_tool_output():
    """
    Brief: Service list, per-service servers and scutil output are parsed.

    Inputs:
      - captured tool output samples

    Outputs:
      - None: Asserts parsed lists
    """
    listing = "An asterisk (*) denotes that a network service is disabled.\nWi-Fi\nThunderbolt Bridge\n*iPhone USB\n"
    assert parse_network_services(listing) == ["Wi-Fi", "Thunderbolt Bridge"]
    assert parse_dns_servers("There aren't any DNS Servers set on Wi-Fi.\n") == []
    assert parse_dns_servers("1.1.1.1\n2606:4700:4700::1111\n") == ["1.1.1.1", "2606:4700:4700::1111"]
    assert parse_scutil_nameservers(SCUTIL_SAMPLE) == ["192.168.1.1", "fe80::1%en0"]


def test_wifi_scenario_applies_and_verifies(fake_system):
    """
    Brief: Two IPs on one "Wi-Fi" service are applied, flushed and verified.

    Inputs:
      - fake_system: one enabled service

    Outputs:
      - None: Asserts the exact success message and call order
    """
    backend = SystemDNSBackend(fake_system)
    result = backend.set_servers(["1.1.1.1", "1.0.0.1"])
    assert result.ok
    assert result.message == "Applied to 1 services (active: 1.1.1.1, 1.0.0.1)"
    assert fake_system.dns["Wi-Fi"] == ["1.1.1.1", "1.0.0.1"]

    tools = [c[0].rsplit("/", 1)[-1] for c in fake_system.calls]
    assert tools.index("dscacheutil") < tools.index("scutil")
    assert tools.index("killall") < tools.index("scutil")


def test_set_servers_reaches_every_enabled_service(make_system):
    system = make_system(services=["Wi-Fi", "Ethernet", "USB LAN"], disabled=["Bluetooth PAN"])
    result = SystemDNSBackend(system).set_servers(["9.9.9.9"])
    assert result.ok
    assert result.message.startswith("Applied to 3 services")
    for svc in ["Wi-Fi", "Ethernet", "USB LAN"]:
        assert "9.9.9.9" in system.dns[svc]
    assert not any("Bluetooth PAN" in c for c in system.commands("networksetup"))


def test_set_then_clear_round_trip(make_system):
    """
    Brief: clear_servers leaves no explicit override on any service.

    Inputs:
      - system with two services

    Outputs:
      - None: Asserts dns lists empty and message
    """
    system = make_system(services=["Wi-Fi", "Ethernet"])
    backend = SystemDNSBackend(system)
    assert backend.set_servers(["8.8.8.8"]).ok
    result = backend.clear_servers()
    assert result.ok
    assert result.message == "Cleared on 2 services"
    assert system.dns == {"Wi-Fi": [], "Ethernet": []}
    assert ["/usr/sbin/networksetup", "-setdnsservers", "Ethernet", "Empty"] in system.calls


def test_no_services_is_fatal(make_system):
    system = make_system(services=[])
    backend = SystemDNSBackend(system)
    for result in (backend.set_servers(["1.1.1.1"]), backend.clear_servers()):
        assert not result.ok
        assert result.error is ErrorKind.NO_NETWORK_INTERFACES
        assert result.message == "No network services found"
    assert not system.commands("dscacheutil")


def test_failure_rolls_back_touched_services(make_system):
    """
    Brief: A failing service aborts the walk and restores earlier services.

    Inputs:
      - three services, the second one failing, the first with prior servers

    Outputs:
      - None: Asserts error names the service and prior state is restored
    """
    system = make_system(services=["Wi-Fi", "Ethernet", "USB LAN"])
    system.dns["Wi-Fi"] = ["192.168.1.1"]
    system.fail_on.add("Ethernet")
    result = SystemDNSBackend(system).set_servers(["1.1.1.1"])

    assert not result.ok
    assert result.error is ErrorKind.INTERFACE_FAILURE
    assert result.message.startswith("Failed for Ethernet: ** Error: unable to set DNS servers on Ethernet.")
    assert result.message.endswith("(restored 1 of 1 services)")
    assert system.dns["Wi-Fi"] == ["192.168.1.1"]
    assert system.dns["USB LAN"] == []
    assert not any(c[2:3] == ["USB LAN"] and c[1] == "-setdnsservers" for c in system.commands("networksetup"))


def test_failure_without_rollback_leaves_partial_state(make_system):
    system = make_system(services=["Wi-Fi", "Ethernet"])
    system.fail_on.add("Ethernet")
    result = SystemDNSBackend(system, rollback_on_failure=False).set_servers(["1.1.1.1"])
    assert result.message == "Failed for Ethernet: ** Error: unable to set DNS servers on Ethernet."
    assert system.dns["Wi-Fi"] == ["1.1.1.1"]
    assert not any(c[1] == "-getdnsservers" for c in system.commands("networksetup"))


def test_verification_mismatch_reports_current_state(fake_system):
    """
    Brief: A higher-priority resolver hides the change; soft failure returned.

    Inputs:
      - fake_system with scutil reporting another resolver

    Outputs:
      - None: Asserts verification_mismatch with observed resolvers
    """
    fake_system.scutil_override = ["10.0.0.53"]
    result = SystemDNSBackend(fake_system).set_servers(["1.1.1.1"])
    assert not result.ok
    assert result.error is ErrorKind.VERIFICATION_MISMATCH
    assert result.message == "Applied but not active; current: 10.0.0.53"
    assert result.data == {"active": ["10.0.0.53"]}
    assert fake_system.dns["Wi-Fi"] == ["1.1.1.1"]


def test_unverifiable_apply_still_succeeds(fake_system):
    fake_system.scutil_fails = True
    result = SystemDNSBackend(fake_system).set_servers(["1.1.1.1"])
    assert result.ok
    assert result.message == "Applied to 1 services (could not verify)"


def test_flush_cache_reports_tool_errors(fake_system):
    backend = SystemDNSBackend(fake_system)
    assert backend.flush_cache().message == "Flushed cache"
    fake_system.flush_fails = True
    result = backend.flush_cache()
    assert not result.ok
    assert result.message == "Flush error: dscacheutil: failed"


def test_set_servers_requires_addresses(fake_system):
    result = SystemDNSBackend(fake_system).set_servers([])
    assert result.error is ErrorKind.NO_VALID_SERVERS
    assert fake_system.calls == []


def test_resolve_host_dedupes_and_strips_port(monkeypatch):
    seen = {}

    def fake_getaddrinfo(host, port, family, type_):
        seen["host"] = host
        return [
            (socket.AF_INET, socket.SOCK_DGRAM, 17, "", ("203.0.113.5", 0)),
            (socket.AF_INET, socket.SOCK_DGRAM, 17, "", ("203.0.113.5", 0)),
            (socket.AF_INET6, socket.SOCK_DGRAM, 17, "", ("2001:db8::5", 0, 0, 0)),
        ]

    monkeypatch.setattr(network_mod.socket, "getaddrinfo", fake_getaddrinfo)
    assert resolve_host("dns.example.com:853") == ["203.0.113.5", "2001:db8::5"]
    assert seen["host"] == "dns.example.com"
    assert resolve_host("dns.example.com", limit=1) == ["203.0.113.5"]


def test_resolve_host_failure_returns_empty(monkeypatch):
    def boom(*a, **kw):
        raise socket.gaierror("nodename nor servname provided")

    monkeypatch.setattr(network_mod.socket, "getaddrinfo", boom)
    assert resolve_host("nope.invalid") == []
