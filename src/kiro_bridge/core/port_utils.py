"""
Port Utilities
==============

Port availability checks, free-port scanning and port-owner lookup.

The bridge may be activated several times (multiple IDE windows, crashed
sessions), so binding the configured port can fail. These helpers let the
bootstrap detect that deterministically and tell the operator which process
holds the port.

Port-owner lookup is platform specific; the implementation is selected once
per process by ``get_port_owner_lookup()`` and nothing else branches on the
platform.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import re
import socket
import subprocess
import sys
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

import psutil

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PROBE_TIMEOUT_S = 2.0
DEFAULT_SCAN_SPAN = 100
LOOKUP_TIMEOUT_S = 5.0


def is_valid_port(port: object) -> bool:
    """True for an integer in 1..65535."""
    return isinstance(port, int) and not isinstance(port, bool) and 1 <= port <= 65535


def get_reserved_ports() -> list[int]:
    """Commonly used ports that a free-port scan should not hand out."""
    return [
        21,    # FTP
        22,    # SSH
        23,    # Telnet
        25,    # SMTP
        53,    # DNS
        80,    # HTTP
        110,   # POP3
        143,   # IMAP
        443,   # HTTPS
        993,   # IMAPS
        995,   # POP3S
        3000,  # Common dev server
        3306,  # MySQL
        5432,  # PostgreSQL
        6379,  # Redis
        8080,  # Common HTTP alternate
        8443,  # Common HTTPS alternate
    ]


def _family_for(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def _probe_bind(port: int, host: str) -> bool:
    """Exclusive bind-and-release on (host, port)."""
    sock = socket.socket(_family_for(host), socket.SOCK_STREAM)
    try:
        if sys.platform == "win32":
            # Without this, Windows lets a second socket bind a port that is in use.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_EXCLUSIVEADDRUSE, 1)  # type: ignore[attr-defined]
        else:
            # Same flag the real listener uses, so TIME_WAIT leftovers don't count as busy.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(1)
        return True
    except OSError as e:
        if e.errno not in (errno.EADDRINUSE, errno.EACCES):
            logger.debug("Bind probe on %s:%d failed: %s", host, port, e)
        return False
    finally:
        with contextlib.suppress(OSError):
            sock.close()


async def is_port_available(
    port: int,
    host: str = DEFAULT_HOST,
    *,
    timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
) -> bool:
    """
    Check whether ``port`` can be bound on ``host``.

    Every failure (in use, permission, bad address, probe timeout) is reported
    uniformly as ``False``.
    """
    if not is_valid_port(port):
        return False
    try:
        return await asyncio.wait_for(asyncio.to_thread(_probe_bind, port, host), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning("Port probe on %s:%d timed out after %.1fs", host, port, timeout_s)
        return False


async def find_available_port(
    start_port: int,
    max_port: Optional[int] = None,
    host: str = DEFAULT_HOST,
    *,
    timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
    skip_reserved: bool = False,
) -> Optional[int]:
    """
    Linear scan from ``start_port`` to ``max_port`` (inclusive).

    Returns:
        The first available port, or None if the whole range is taken.
    """
    if max_port is None:
        max_port = start_port + DEFAULT_SCAN_SPAN
    start_port = max(1, start_port)
    max_port = min(65535, max_port)
    reserved = set(get_reserved_ports()) if skip_reserved else set()

    for port in range(start_port, max_port + 1):
        if port in reserved:
            continue
        if await is_port_available(port, host, timeout_s=timeout_s):
            return port
    logger.info("No available port in %d-%d on %s", start_port, max_port, host)
    return None


async def check_ports_availability(
    ports: Iterable[int],
    host: str = DEFAULT_HOST,
    *,
    timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
) -> dict[int, bool]:
    """Probe several ports concurrently."""
    unique = list(dict.fromkeys(ports))
    results = await asyncio.gather(*(is_port_available(p, host, timeout_s=timeout_s) for p in unique))
    return dict(zip(unique, results))


# ============================================================================
# Port owner lookup
# ============================================================================


@dataclass(frozen=True)
class PortOwner:
    pid: int
    name: Optional[str] = None
    cmdline: Optional[str] = None

    def describe(self) -> str:
        return f"PID {self.pid} ({self.name})" if self.name else f"PID {self.pid}"


class PortOwnerLookup(Protocol):
    def get_process_using_port(self, port: int, host: str = DEFAULT_HOST) -> Optional[PortOwner]:
        ...


def _describe_pid(pid: int) -> PortOwner:
    """Fill in process name/cmdline when psutil is allowed to see them."""
    try:
        proc = psutil.Process(pid)
        name = proc.name()
        try:
            cmdline = " ".join(proc.cmdline()) or None
        except (psutil.AccessDenied, psutil.ZombieProcess):
            cmdline = None
        return PortOwner(pid=pid, name=name, cmdline=cmdline)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return PortOwner(pid=pid)


def _run_tool(argv: list[str]) -> Optional[str]:
    try:
        result = subprocess.run(argv, capture_output=True, text=True, timeout=LOOKUP_TIMEOUT_S)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("%s unavailable: %s", argv[0], e)
        return None
    if result.returncode != 0:
        return None
    return result.stdout


class PosixPortOwnerLookup:
    """Uses ``lsof`` to find the listening process."""

    def get_process_using_port(self, port: int, host: str = DEFAULT_HOST) -> Optional[PortOwner]:
        output = _run_tool(["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"])
        if not output:
            return None
        for line in output.splitlines():
            line = line.strip()
            if line.isdigit():
                return _describe_pid(int(line))
        return None


class WindowsPortOwnerLookup:
    """Parses ``netstat -ano`` LISTENING rows."""

    def get_process_using_port(self, port: int, host: str = DEFAULT_HOST) -> Optional[PortOwner]:
        output = _run_tool(["netstat", "-ano", "-p", "TCP"])
        if not output:
            return None
        pid = parse_netstat_listener(output, port)
        return _describe_pid(pid) if pid is not None else None


_NETSTAT_ROW = re.compile(r"^\s*TCP\s+(\S+):(\d+)\s+\S+\s+LISTENING\s+(\d+)\s*$", re.IGNORECASE)


def parse_netstat_listener(output: str, port: int) -> Optional[int]:
    """Return the PID listening on ``port`` in ``netstat -ano`` output."""
    for line in output.splitlines():
        match = _NETSTAT_ROW.match(line)
        if match and int(match.group(2)) == port:
            return int(match.group(3))
    return None


_lookup: Optional[PortOwnerLookup] = None


def get_port_owner_lookup() -> PortOwnerLookup:
    """Platform-specific lookup, selected on first use."""
    global _lookup
    if _lookup is None:
        _lookup = WindowsPortOwnerLookup() if sys.platform == "win32" else PosixPortOwnerLookup()
        logger.debug("Port owner lookup: %s", type(_lookup).__name__)
    return _lookup


def get_process_using_port(port: int, host: str = DEFAULT_HOST) -> Optional[PortOwner]:
    """
    Identify the process listening on ``port``.

    Best effort: returns None when nothing is found or the platform tooling
    (lsof / netstat) is missing.
    """
    try:
        return get_port_owner_lookup().get_process_using_port(port, host)
    except Exception as e:  # lookup must never break startup diagnostics
        logger.debug("Port owner lookup failed for %d: %s", port, e)
        return None
