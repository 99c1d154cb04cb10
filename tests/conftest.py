"""
Brief: Global pytest configuration and fakes for the macOS system tools.

Inputs:
  - None

Outputs:
  - Fixtures: fake_system, fake_proxy_binary, free_port
"""

import os
import plistlib
import signal
import socket
import stat
import sys
from typing import Dict, List, Optional

import pytest

# Ensure 'src' is on sys.path so 'dnsswitch' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from dnsswitch.system.commands import CommandResult  # noqa: E402
from dnsswitch.system.profiles import DNS_SETTINGS_PAYLOAD_TYPE  # noqa: E402

FAKE_PROXY_SCRIPT = os.path.join(os.path.dirname(__file__), "fake_dnscrypt_proxy.py")


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


class FakeSystem:
    """
    Brief: Command runner modelling networksetup, scutil, the cache flush
    tools and the profiles tool with in-memory state.

    Inputs (constructor):
      - services: enabled network service names
      - disabled: disabled service names (listed with a leading "*")

    Attributes:
      - dns: service -> explicit resolver list ([] means defaults)
      - fail_on: services whose -setdnsservers fails
      - scutil_override: resolvers reported by scutil regardless of dns
      - scutil_fails: make scutil --dns fail
      - profiles: identifier -> list of payload types
      - reject_install: make profiles -I fail with this output
      - calls: every argv received
    """

    def __init__(self, services=("Wi-Fi",), disabled=()):
        self.services: List[str] = list(services)
        self.disabled: List[str] = list(disabled)
        self.dns: Dict[str, List[str]] = {svc: [] for svc in self.services}
        self.fail_on = set()
        self.scutil_override: Optional[List[str]] = None
        self.scutil_fails = False
        self.flush_fails = False
        self.profiles: Dict[str, List[str]] = {}
        self.installed_payloads: List[dict] = []
        self.reject_install: Optional[str] = None
        self.calls: List[List[str]] = []

    def __call__(self, argv, *, timeout=None, input_text=None) -> CommandResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        tool = os.path.basename(argv[0])
        handler = getattr(self, "_" + tool.replace("-", "_"), None)
        if handler is None:
            return CommandResult(127, f"Failed to run {argv[0]}: not faked")
        return handler(argv[1:])

    def commands(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if os.path.basename(c[0]) == tool]

    # networksetup
    def _networksetup(self, args):
        verb = args[0]
        if verb == "-listallnetworkservices":
            lines = ["An asterisk (*) denotes that a network service is disabled."]
            lines += self.services
            lines += ["*" + d for d in self.disabled]
            return CommandResult(0, "\n".join(lines) + "\n")
        if verb == "-getdnsservers":
            svc = args[1]
            if svc not in self.dns:
                return CommandResult(4, "** Error: The parameters were not valid.")
            if not self.dns[svc]:
                return CommandResult(0, f"There aren't any DNS Servers set on {svc}.\n")
            return CommandResult(0, "\n".join(self.dns[svc]) + "\n")
        if verb == "-setdnsservers":
            svc, values = args[1], args[2:]
            if svc in self.fail_on or svc not in self.dns:
                return CommandResult(4, f"** Error: unable to set DNS servers on {svc}.")
            self.dns[svc] = [] if values == ["Empty"] else list(values)
            return CommandResult(0, "")
        return CommandResult(4, f"unknown networksetup verb {verb}")

    # scutil
    def _scutil(self, args):
        if self.scutil_fails:
            return CommandResult(1, "scutil: failure")
        active = self.scutil_override
        if active is None:
            active = []
            for svc in self.services:
                for ip in self.dns[svc]:
                    if ip not in active:
                        active.append(ip)
        lines = ["DNS configuration", "", "resolver #1"]
        lines += [f"  nameserver[{i}] : {ip}" for i, ip in enumerate(active)]
        return CommandResult(0, "\n".join(lines) + "\n")

    # cache flush
    def _dscacheutil(self, args):
        return CommandResult(1, "dscacheutil: failed") if self.flush_fails else CommandResult(0, "")

    def _killall(self, args):
        return CommandResult(0, "")

    # profiles
    def _profiles(self, args):
        if args[:3] == ["-C", "-o", "stdout-xml"]:
            entries = [
                {
                    "ProfileIdentifier": ident,
                    "ProfileItems": [{"PayloadType": t} for t in types],
                }
                for ident, types in self.profiles.items()
            ]
            return CommandResult(
                0, plistlib.dumps({"_computerlevel": entries}).decode("utf-8")
            )
        if args[:2] == ["-I", "-F"]:
            if self.reject_install is not None:
                return CommandResult(1, self.reject_install)
            with open(args[2], "rb") as f:
                payload = plistlib.load(f)
            self.installed_payloads.append(payload)
            self.profiles[payload["PayloadIdentifier"]] = [
                item["PayloadType"] for item in payload["PayloadContent"]
            ]
            return CommandResult(0, "")
        if args[:2] == ["-R", "-p"]:
            if self.profiles.pop(args[2], None) is None:
                return CommandResult(1, "profiles: the profile could not be found")
            return CommandResult(0, "")
        return CommandResult(1, f"unknown profiles args {args}")

    def owned_dns_profiles(self, prefix="com.dnsswitch.dns"):
        return [
            ident
            for ident, types in self.profiles.items()
            if ident.startswith(prefix) and DNS_SETTINGS_PAYLOAD_TYPE in types
        ]


@pytest.fixture
def fake_system():
    """
    Brief: Fresh FakeSystem with one enabled service named "Wi-Fi".

    Outputs:
      - FakeSystem
    """
    return FakeSystem()


@pytest.fixture
def free_port():
    """
    Brief: A TCP/UDP port on 127.0.0.1 that was free a moment ago.

    Outputs:
      - int
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def fake_proxy_binary(tmp_path):
    """
    Brief: Executable wrapper that runs tests/fake_dnscrypt_proxy.py.

    Behaviour is selected with the FAKE_PROXY_MODE environment variable
    (listen, crash, hang).

    Outputs:
      - str path to the executable
    """
    path = tmp_path / "dnscrypt-proxy"
    path.write_text(
        f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_PROXY_SCRIPT}" "$@"\n',
        encoding="utf-8",
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def make_system():
    """
    Brief: Factory for FakeSystem with custom services.

    Outputs:
      - FakeSystem class (call with services=..., disabled=...)
    """
    return FakeSystem
