"""System DNS backend: per-service resolver lists, cache flush, verification.

Brief:
  SystemDNSBackend drives networksetup/scutil through an injectable command
  runner. setServers/clearServers walk every enabled network service, stop at
  the first hard failure and restore the services already touched, then flush
  the resolver cache. setServers additionally re-reads the active resolvers
  and reports success only when a requested address is observed.
"""

from __future__ import annotations

import logging
import socket
from typing import Dict, List, Optional, Sequence

from ..models import ErrorKind, OpResult
from .commands import CommandRunner, Runner

logger = logging.getLogger(__name__)

EMPTY_MARKER = "Empty"
_DISABLED_PREFIX = "*"
_HEADER_PREFIX = "An asterisk"


def parse_network_services(output: str) -> List[str]:
    """Brief: Parse `networksetup -listallnetworkservices` output.

    Inputs:
      - output: Raw command output.

    Outputs:
      - list[str]: Enabled service names; the header and disabled ("*") entries
        are skipped.

    Example:
      >>> parse_network_services("An asterisk (*) denotes...\\nWi-Fi\\n*Bluetooth PAN\\n")
      ['Wi-Fi']
    """

    services: List[str] = []
    for line in output.splitlines():
        name = line.strip()
        if not name or name.startswith(_HEADER_PREFIX) or name.startswith(_DISABLED_PREFIX):
            continue
        services.append(name)
    return services


def parse_dns_servers(output: str) -> List[str]:
    """Brief: Parse `networksetup -getdnsservers <svc>` output.

    Inputs:
      - output: Raw command output.

    Outputs:
      - list[str]: Explicit resolver addresses; empty when the service uses
        the defaults ("There aren't any DNS Servers set on ...").
    """

    servers: List[str] = []
    for line in output.splitlines():
        item = line.strip()
        if not item or " " in item:
            continue
        servers.append(item)
    return servers


def parse_scutil_nameservers(output: str) -> List[str]:
    """Brief: Extract active resolvers from `scutil --dns` output.

    Inputs:
      - output: Raw command output.

    Outputs:
      - list[str]: Unique nameserver addresses in first-seen order.

    Example:
      >>> parse_scutil_nameservers("resolver #1\\n  nameserver[0] : 1.1.1.1\\n  nameserver[1] : 1.1.1.1\\n")
      ['1.1.1.1']
    """

    active: List[str] = []
    for line in output.splitlines():
        item = line.strip()
        if not item.startswith("nameserver["):
            continue
        _, _, value = item.partition(":")
        value = value.strip()
        if value and value not in active:
            active.append(value)
    return active


def resolve_host(host: str, limit: int = 4) -> List[str]:
    """Brief: Resolve a hostname to a few bootstrap IP addresses.

    Inputs:
      - host: Hostname (an optional ":port" suffix is ignored).
      - limit: Maximum number of addresses to return.

    Outputs:
      - list[str]: Unique IPv4/IPv6 addresses; empty when resolution fails.
    """

    name = host
    if name.count(":") == 1:
        name = name.split(":", 1)[0]
    try:
        infos = socket.getaddrinfo(name, None, socket.AF_UNSPEC, socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError, OSError) as exc:
        logger.warning("Bootstrap resolution for %s failed: %s", name, exc)
        return []

    addresses: List[str] = []
    for family, _type, _proto, _canon, sockaddr in infos:
        if family not in (socket.AF_INET, socket.AF_INET6):
            continue
        ip = str(sockaddr[0])
        if ip not in addresses:
            addresses.append(ip)
        if len(addresses) >= limit:
            break
    return addresses


class SystemDNSBackend:
    """Apply and clear resolver lists on every enabled network service.

    Inputs (constructor):
      - runner: Callable compatible with CommandRunner.run.
      - networksetup: Path to networksetup.
      - scutil: Path to scutil.
      - flush_commands: Commands executed, in order, to flush the resolver cache.
      - rollback_on_failure: Restore already-touched services on a failure.
    """

    def __init__(
        self,
        runner: Optional[Runner] = None,
        *,
        networksetup: str = "/usr/sbin/networksetup",
        scutil: str = "/usr/sbin/scutil",
        flush_commands: Optional[Sequence[Sequence[str]]] = None,
        rollback_on_failure: bool = True,
    ) -> None:
        self._run = runner or CommandRunner()
        self.networksetup = networksetup
        self.scutil = scutil
        self.flush_commands = [
            list(c)
            for c in (
                flush_commands
                if flush_commands is not None
                else (
                    ["/usr/bin/dscacheutil", "-flushcache"],
                    ["/usr/bin/killall", "-HUP", "mDNSResponder"],
                )
            )
        ]
        self.rollback_on_failure = rollback_on_failure

    def list_services(self) -> List[str]:
        res = self._run([self.networksetup, "-listallnetworkservices"])
        if not res.success:
            logger.warning("Listing network services failed: %s", res.output.strip())
            return []
        return parse_network_services(res.output)

    def get_servers(self, service: str) -> List[str]:
        res = self._run([self.networksetup, "-getdnsservers", service])
        if not res.success:
            return []
        return parse_dns_servers(res.output)

    def active_resolvers(self) -> Optional[List[str]]:
        """Brief: Return resolvers currently in effect, or None if unreadable."""
        res = self._run([self.scutil, "--dns"])
        if not res.success:
            logger.warning("scutil --dns failed: %s", res.output.strip())
            return None
        return parse_scutil_nameservers(res.output)

    def _apply_each(self, services: List[str], servers: List[str]) -> Optional[OpResult]:
        """Brief: Set servers on every service; None on success, failure otherwise."""
        previous: Dict[str, List[str]] = {}
        if self.rollback_on_failure:
            for svc in services:
                previous[svc] = self.get_servers(svc)

        touched: List[str] = []
        for svc in services:
            res = self._run([self.networksetup, "-setdnsservers", svc, *servers])
            if res.success:
                touched.append(svc)
                continue

            detail = res.output.strip() or f"exit status {res.returncode}"
            message = f"Failed for {svc}: {detail}"
            logger.error(message)
            if self.rollback_on_failure and touched:
                restored = self._rollback(touched, previous)
                message += f" (restored {restored} of {len(touched)} services)"
            return OpResult.failure(ErrorKind.INTERFACE_FAILURE, message)
        return None

    def _rollback(self, touched: List[str], previous: Dict[str, List[str]]) -> int:
        restored = 0
        for svc in touched:
            prior = previous.get(svc) or [EMPTY_MARKER]
            res = self._run([self.networksetup, "-setdnsservers", svc, *prior])
            if res.success:
                restored += 1
            else:
                logger.error("Rollback for %s failed: %s", svc, res.output.strip())
        return restored

    def set_servers(self, ips: Sequence[str]) -> OpResult:
        """Brief: Point every enabled service at ips, flush, then verify.

        Inputs:
          - ips: Plain resolver addresses in preference order.

        Outputs:
          - OpResult: "Applied to N services (active: ...)" on success;
            verification_mismatch when none of ips is observed active.
        """

        servers = [str(ip) for ip in ips]
        if not servers:
            return OpResult.failure(ErrorKind.NO_VALID_SERVERS, "No DNS servers to apply")

        services = self.list_services()
        if not services:
            return OpResult.failure(ErrorKind.NO_NETWORK_INTERFACES, "No network services found")

        failed = self._apply_each(services, servers)
        if failed is not None:
            return failed

        self.flush_cache()

        active = self.active_resolvers()
        count = len(services)
        if active is None:
            return OpResult.success(f"Applied to {count} services (could not verify)")
        current = ", ".join(active)
        if any(ip in active for ip in servers):
            logger.info("Applied %s to %d services", servers, count)
            return OpResult.success(
                f"Applied to {count} services (active: {current})",
                data={"active": active},
            )
        logger.warning("Applied %s but active resolvers are %s", servers, active)
        return OpResult.failure(
            ErrorKind.VERIFICATION_MISMATCH,
            f"Applied but not active; current: {current}",
            data={"active": active},
        )

    def clear_servers(self) -> OpResult:
        """Brief: Return every enabled service to its default resolvers."""
        services = self.list_services()
        if not services:
            return OpResult.failure(ErrorKind.NO_NETWORK_INTERFACES, "No network services found")

        failed = self._apply_each(services, [EMPTY_MARKER])
        if failed is not None:
            return failed

        self.flush_cache()
        logger.info("Cleared DNS servers on %d services", len(services))
        return OpResult.success(f"Cleared on {len(services)} services")

    def flush_cache(self) -> OpResult:
        """Brief: Flush the local resolver cache and signal the resolver daemon."""
        outputs: List[str] = []
        ok = True
        for cmd in self.flush_commands:
            res = self._run(cmd)
            if not res.success:
                ok = False
                outputs.append(res.output.strip() or f"{cmd[0]} exit {res.returncode}")
        if ok:
            return OpResult.success("Flushed cache")
        message = "Flush error: " + " | ".join(outputs)
        logger.warning(message)
        return OpResult.failure(ErrorKind.INTERNAL_ERROR, message)
