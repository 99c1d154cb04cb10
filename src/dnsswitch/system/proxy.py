"""Supervisor for the local DoH/DoT forwarding proxy.

Brief:
  ProxySupervisor launches a dnscrypt-proxy compatible binary with a runtime
  configuration pointing at a single upstream, polls its loopback listener
  until it accepts connections, and stops it again. At most one supervised
  process exists at a time; a PID file lets a later supervisor stop a proxy
  it did not launch itself.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import threading
import time
import urllib.parse
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Optional, Tuple

from dnslib import QTYPE, RCODE, DNSRecord

from ..classifier import DOT_PREFIX
from ..models import ErrorKind, OpResult, ProxyState
from .commands import CommandRunner, Runner
from .network import resolve_host
from .stamps import doh_stamp, dot_stamp

logger = logging.getLogger(__name__)

BINARY_NAME = "dnscrypt-proxy"
RUNTIME_CONFIG_NAME = "dnscrypt-proxy-runtime.toml"
PID_FILE_NAME = "dnscrypt-proxy.pid"
LOG_FILE_NAME = "dnscrypt-proxy.log"
DOH_SERVER_NAME = "custom-doh"
DOT_SERVER_NAME = "custom-dot"

_DEFAULT_BINARY_DIRS = ("/opt/homebrew/bin", "/usr/local/bin", "/usr/local/sbin")
_SERVER_NAMES_RE = re.compile(r"^[ \t]*#?[ \t]*server_names[ \t]*=.*$", re.MULTILINE)
_LISTEN_RE = re.compile(r"^[ \t]*#?[ \t]*listen_addresses[ \t]*=.*$", re.MULTILINE)
_TABLE_RE = re.compile(r"^[ \t]*\[", re.MULTILINE)


class OutputBuffer:
    """Thread-safe bounded buffer of the most recent output lines.

    Inputs (constructor):
      - capacity: Maximum number of lines retained (>= 1).

    Example:
      >>> buf = OutputBuffer(capacity=2)
      >>> for line in ("a", "b", "c"):
      ...     buf.push(line)
      >>> buf.text()
      'b\\nc'
    """

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(1, int(capacity))
        self._items: List[str] = []
        self._lock = threading.Lock()

    def push(self, line: str) -> None:
        with self._lock:
            self._items.append(line)
            overflow = len(self._items) - self._capacity
            if overflow > 0:
                self._items = self._items[overflow:]

    def clear(self) -> None:
        with self._lock:
            self._items = []

    def snapshot(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def text(self) -> str:
        return "\n".join(self.snapshot())


def find_binary(configured: Optional[str] = None) -> Optional[str]:
    """Brief: Locate the proxy binary.

    Inputs:
      - configured: Explicit path from configuration, if any.

    Outputs:
      - str path of an existing file, or None.
    """

    if configured:
        return configured if Path(configured).is_file() else None
    found = shutil.which(BINARY_NAME)
    if found:
        return found
    for d in _DEFAULT_BINARY_DIRS:
        candidate = Path(d) / BINARY_NAME
        if candidate.is_file():
            return str(candidate)
    return None


def default_template_path() -> Path:
    """Brief: Path of the configuration template shipped with the package."""
    return Path(__file__).resolve().parent.parent / "assets" / "dnscrypt-proxy.toml"


def _set_top_level_key(text: str, pattern: re.Pattern, line: str) -> str:
    if pattern.search(text):
        return pattern.sub(lambda _m: line, text, count=1)
    # Top-level keys must precede the first table header.
    m = _TABLE_RE.search(text)
    if m is None:
        return text.rstrip("\n") + "\n" + line + "\n"
    return text[: m.start()] + line + "\n\n" + text[m.start() :]


def build_runtime_config(
    template: str, server_name: str, stamp: str, listen: str
) -> str:
    """Brief: Materialize a runtime proxy configuration from the template.

    Inputs:
      - template: Template TOML text.
      - server_name: Name of the static server entry to add and select.
      - stamp: sdns:// descriptor of the upstream.
      - listen: "host:port" loopback listener.

    Outputs:
      - str: TOML text with server_names/listen_addresses rewritten and a
        [static.'<server_name>'] table appended.

    Example:
      >>> cfg = build_runtime_config("server_names = ['cloudflare']\\n", "custom-doh", "sdns://x", "127.0.0.1:53535")
      >>> "server_names = ['custom-doh']" in cfg and "[static.'custom-doh']" in cfg
      True
    """

    text = _set_top_level_key(template, _SERVER_NAMES_RE, f"server_names = ['{server_name}']")
    text = _set_top_level_key(text, _LISTEN_RE, f"listen_addresses = ['{listen}']")
    return text.rstrip("\n") + f"\n\n[static.'{server_name}']\nstamp = '{stamp}'\n"


def port_is_listening(host: str, port: int, timeout: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProxySupervisor:
    """Launch, health-check and terminate the local forwarding proxy.

    Inputs (constructor):
      - binary: Explicit proxy binary path (searched on PATH when None).
      - template: Template configuration path (bundled template when None).
      - runtime_dir: Directory for the runtime config, PID file and log.
      - listen_host / listen_port: Loopback listener handed to the system.
      - start_timeout: Seconds to wait for the listener to open.
      - poll_interval: Seconds between listener checks.
      - grace_period: Seconds between SIGTERM and SIGKILL on stop.
      - output_lines: Captured output lines kept for diagnostics.
      - supports_dot: Whether the binary accepts DoT stamps.
      - detach: Start in a new session with output to a log file (one-shot use).
      - runner: Command runner for auxiliary commands (quarantine removal,
        ps lookups before signalling a PID-file process).
      - resolver: Callable(host) -> list[str] used to pre-resolve the upstream.
    """

    def __init__(
        self,
        *,
        binary: Optional[str] = None,
        template: Optional[str] = None,
        runtime_dir: Optional[str] = None,
        listen_host: str = "127.0.0.1",
        listen_port: int = 53,
        start_timeout: float = 30.0,
        poll_interval: float = 1.0,
        grace_period: float = 0.5,
        output_lines: int = 200,
        supports_dot: bool = True,
        detach: bool = False,
        runner: Optional[Runner] = None,
        resolver: Optional[Callable[[str], List[str]]] = None,
    ) -> None:
        self.binary = binary
        self.template = template
        self.runtime_dir = Path(
            runtime_dir or os.path.join(tempfile.gettempdir(), "dnsswitch")
        )
        self.listen_host = listen_host
        self.listen_port = int(listen_port)
        self.start_timeout = float(start_timeout)
        self.poll_interval = float(poll_interval)
        self.grace_period = float(grace_period)
        self.supports_dot = supports_dot
        self.detach = detach
        self._run = runner or CommandRunner(timeout=10)
        self._resolve = resolver or resolve_host
        self.output = OutputBuffer(output_lines)

        self._lock = threading.RLock()
        self._process: Optional[subprocess.Popen] = None
        self._drainer: Optional[threading.Thread] = None
        self._log_handle: Optional[IO[Any]] = None
        self._state = ProxyState.STOPPED
        self.upstream: Optional[str] = None

    # -- status ---------------------------------------------------------------

    @property
    def loopback_address(self) -> str:
        return self.listen_host

    @property
    def pid_file(self) -> Path:
        return self.runtime_dir / PID_FILE_NAME

    @property
    def runtime_config_path(self) -> Path:
        return self.runtime_dir / RUNTIME_CONFIG_NAME

    def _poll(self) -> bool:
        proc = self._process
        if proc is None:
            return False
        if proc.poll() is None:
            return True
        if self._state in (ProxyState.STARTING, ProxyState.LISTENING):
            self._state = ProxyState.CRASHED
        return False

    @property
    def is_running(self) -> bool:
        """Brief: True only while the supervised process is alive."""
        with self._lock:
            return self._poll()

    @property
    def state(self) -> ProxyState:
        with self._lock:
            self._poll()
            return self._state

    def describe(self) -> Dict[str, Any]:
        with self._lock:
            self._poll()
            return {
                "state": self._state.value,
                "upstream": self.upstream,
                "listen": f"{self.listen_host}:{self.listen_port}",
                "pid": self._process.pid if self._process is not None else None,
            }

    # -- start ----------------------------------------------------------------

    def _server_address(self, host: str) -> str:
        # IPv4 first; an IPv6-only answer is still usable (bracketed in the stamp).
        addresses = self._resolve(host.rsplit(":", 1)[0] if host.count(":") == 1 else host)
        for addr in addresses:
            if ":" not in addr:
                return addr
        return addresses[0] if addresses else ""

    def _stamp_for(self, upstream: str) -> Tuple[str, str]:
        if upstream.lower().startswith(DOT_PREFIX):
            host = upstream[len(DOT_PREFIX) :]
            return DOT_SERVER_NAME, dot_stamp(host, address=self._server_address(host))
        host = urllib.parse.urlsplit(upstream).hostname or ""
        return DOH_SERVER_NAME, doh_stamp(upstream, address=self._server_address(host))

    def _write_runtime_config(self, template_path: Path, upstream: str) -> Path:
        template_text = template_path.read_text(encoding="utf-8")
        server_name, stamp = self._stamp_for(upstream)
        text = build_runtime_config(
            template_text, server_name, stamp, f"{self.listen_host}:{self.listen_port}"
        )
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.runtime_dir), suffix=".toml")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, self.runtime_config_path)
        return self.runtime_config_path

    def _remove_quarantine(self, binary: str) -> None:
        if sys.platform != "darwin":
            return
        res = self._run(["/usr/bin/xattr", "-d", "com.apple.quarantine", binary])
        if not res.success:
            logger.debug("xattr: %s", res.output.strip())

    def _drain(self, stream: IO[str]) -> None:
        for line in iter(stream.readline, ""):
            line = line.rstrip("\n")
            self.output.push(line)
            logger.debug("proxy: %s", line)
        stream.close()

    def _launch(self, binary: str, config_path: Path) -> subprocess.Popen:
        argv = [binary, "-config", str(config_path)]
        logger.info("Starting proxy: %s", " ".join(argv))
        if self.detach:
            self._log_handle = open(self.runtime_dir / LOG_FILE_NAME, "a", encoding="utf-8")
            return subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=self._log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
        self._drainer = threading.Thread(
            target=self._drain, args=(proc.stdout,), name="proxy-output", daemon=True
        )
        self._drainer.start()
        return proc

    def _diagnostics(self) -> str:
        if self._drainer is not None:
            self._drainer.join(timeout=1.0)
        if self.detach:
            try:
                tail = (self.runtime_dir / LOG_FILE_NAME).read_text(encoding="utf-8")
                return "\n".join(tail.splitlines()[-20:])
            except OSError:
                return ""
        return self.output.text()

    def start(self, upstream: str) -> OpResult:
        """Brief: Start the proxy forwarding to upstream.

        Inputs:
          - upstream: https:// DoH URL or tls://host DoT target.

        Outputs:
          - OpResult: success once the loopback port accepts connections;
            proxy_launch_failed or proxy_timeout otherwise.
        """

        with self._lock:
            self.stop()

            if upstream.lower().startswith(DOT_PREFIX) and not self.supports_dot:
                return OpResult.failure(
                    ErrorKind.PROXY_LAUNCH_FAILED,
                    "DoT is not supported by the configured proxy; use DoH instead",
                )

            binary = find_binary(self.binary)
            template_path = Path(self.template) if self.template else default_template_path()
            if binary is None or not template_path.is_file():
                missing = "binary" if binary is None else f"config template {template_path}"
                return OpResult.failure(
                    ErrorKind.PROXY_LAUNCH_FAILED, f"Proxy {missing} not found"
                )

            self._remove_quarantine(binary)
            try:
                config_path = self._write_runtime_config(template_path, upstream)
            except (OSError, ValueError) as exc:
                return OpResult.failure(
                    ErrorKind.PROXY_LAUNCH_FAILED, f"Failed to create runtime config: {exc}"
                )

            self.output.clear()
            try:
                proc = self._launch(binary, config_path)
            except OSError as exc:
                self._close_log()
                return OpResult.failure(
                    ErrorKind.PROXY_LAUNCH_FAILED, f"Failed to start proxy: {exc}"
                )

            self._process = proc
            self._state = ProxyState.STARTING
            self.upstream = upstream
            self._write_pid(proc.pid)
            return self._await_listener(proc)

    def _await_listener(self, proc: subprocess.Popen) -> OpResult:
        started = time.monotonic()
        deadline = started + self.start_timeout
        while True:
            if proc.poll() is not None:
                self._state = ProxyState.CRASHED
                output = self._diagnostics().strip() or "no output"
                self._forget(proc)
                message = f"Proxy crashed during startup (exit {proc.returncode}): {output}"
                logger.error(message)
                return OpResult.failure(ErrorKind.PROXY_LAUNCH_FAILED, message)

            if port_is_listening(self.listen_host, self.listen_port):
                self._state = ProxyState.LISTENING
                logger.info(
                    "Proxy initialized after %.1f seconds", time.monotonic() - started
                )
                return OpResult.success(
                    f"Proxy started on {self.listen_host}:{self.listen_port}"
                )

            if time.monotonic() >= deadline:
                break
            time.sleep(self.poll_interval)

        self.stop()
        message = (
            f"Proxy started but failed to initialize within "
            f"{self.start_timeout:g} seconds"
        )
        logger.error(message)
        return OpResult.failure(ErrorKind.PROXY_TIMEOUT, message)

    # -- stop -----------------------------------------------------------------

    def _write_pid(self, pid: int) -> None:
        try:
            self.pid_file.write_text(str(pid), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write proxy PID file: %s", exc)

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def _remove_pid(self) -> None:
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove proxy PID file: %s", exc)

    def _close_log(self) -> None:
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

    def _forget(self, proc: Optional[subprocess.Popen]) -> None:
        if proc is not None and self._process is proc:
            self._process = None
        self._drainer = None
        self._close_log()
        self._remove_pid()

    def _owns_pid(self, pid: int) -> bool:
        """True when pid runs the proxy with this supervisor's runtime config."""
        res = self._run(["/bin/ps", "-p", str(pid), "-o", "command="])
        if not res.success:
            return False
        return f"-config {self.runtime_config_path}" in res.output

    def _terminate_pid(self, pid: int) -> None:
        """Stop a proxy left behind by another supervisor instance."""
        if not _pid_alive(pid):
            return
        if not self._owns_pid(pid):
            logger.warning(
                "PID file names process %d, which is not the proxy; discarding it", pid
            )
            return
        logger.info("Stopping stale proxy process %d", pid)
        try:
            os.kill(pid, signal.SIGTERM)
            deadline = time.monotonic() + self.grace_period
            while time.monotonic() < deadline and _pid_alive(pid):
                time.sleep(0.05)
            if _pid_alive(pid):
                os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            logger.warning("Cannot stop proxy process %d: %s", pid, exc)

    def stop(self) -> None:
        """Brief: Terminate the supervised proxy; always clears handle state.

        Inputs: none
        Outputs: None
        """

        with self._lock:
            proc = self._process
            try:
                if proc is not None:
                    if proc.poll() is None:
                        proc.terminate()
                        try:
                            proc.wait(timeout=self.grace_period)
                        except subprocess.TimeoutExpired:
                            logger.warning("Proxy did not exit after SIGTERM; killing")
                            proc.kill()
                            proc.wait(timeout=self.grace_period)
                else:
                    pid = self._read_pid()
                    if pid is not None:
                        self._terminate_pid(pid)
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.error("Error while stopping proxy: %s", exc)
            finally:
                self._process = None
                self._forget(proc)
                if self._state != ProxyState.CRASHED or proc is not None:
                    self._state = ProxyState.STOPPED
                self.upstream = None

    # -- probe ----------------------------------------------------------------

    def probe(self, qname: str, timeout: float = 3.0) -> OpResult:
        """Brief: Resolve qname through the loopback listener.

        Inputs:
          - qname: Name to query (A record).
          - timeout: Seconds to wait for the answer.

        Outputs:
          - OpResult: success when a NOERROR answer arrives.
        """

        try:
            q = DNSRecord.question(qname, "A")
            raw = q.send(self.listen_host, self.listen_port, timeout=timeout)
            reply = DNSRecord.parse(raw)
        except (OSError, socket.timeout, ValueError) as exc:
            return OpResult.failure(
                ErrorKind.VERIFICATION_MISMATCH, f"probe {qname} failed: {exc}"
            )
        rcode = reply.header.rcode
        if rcode != RCODE.NOERROR:
            return OpResult.failure(
                ErrorKind.VERIFICATION_MISMATCH,
                f"probe {qname} returned {RCODE.get(rcode)}",
            )
        answers = [str(rr.rdata) for rr in reply.rr if rr.rtype == QTYPE.A]
        return OpResult.success(f"probe {qname}: {', '.join(answers) or 'no A records'}")
