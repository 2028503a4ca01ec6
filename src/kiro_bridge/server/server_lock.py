from __future__ import annotations

import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil


@dataclass(frozen=True)
class LockStatus:
    is_running: bool
    pid: Optional[int]
    reason: str

    def describe(self, port: int) -> str:
        if self.is_running and self.pid == os.getpid():
            return f"this bridge process (PID {self.pid}) already serves port {port}"
        if self.is_running:
            return f"another kiro-bridge instance (PID {self.pid}) holds port {port}"
        if self.reason.startswith("stale"):
            return f"a previous kiro-bridge session (PID {self.pid}) did not shut down cleanly"
        return ""


class ServerLock:
    """
    Cross-process marker recording which bridge process serves a port.

    Uses a PID file in the OS temp directory and detects stale locks, so a
    port conflict can be attributed to another bridge instance.
    """

    def __init__(self, port: int, *, namespace: str = "kiro-bridge", lock_dir: Optional[Path] = None):
        self.port = int(port)
        self.namespace = namespace
        lock_dir = Path(lock_dir) if lock_dir else Path(tempfile.gettempdir()) / "kiro-bridge-locks"
        lock_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = lock_dir / f"{namespace}-{self.port}.pid"
        self.pid = os.getpid()

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text(encoding="utf-8", errors="replace").strip())
        except (OSError, ValueError):
            return None

    def status(self) -> LockStatus:
        if not self.lock_file.exists():
            return LockStatus(is_running=False, pid=None, reason="no lock file")
        existing_pid = self._read_pid()
        if existing_pid is None:
            return LockStatus(is_running=False, pid=None, reason="invalid lock file")

        if not psutil.pid_exists(existing_pid):
            return LockStatus(is_running=False, pid=existing_pid, reason="stale lock (pid dead)")

        # PID reuse is possible; a live PID is taken as a live bridge.
        return LockStatus(is_running=True, pid=existing_pid, reason="pid alive")

    def acquire(self, *, force: bool = False, timeout_s: float = 10) -> bool:
        start = time.time()
        while True:
            st = self.status()
            if not st.is_running or st.pid == self.pid:
                if self.lock_file.exists() and st.pid != self.pid:
                    # Remove stale or unreadable lock if requested
                    if force or st.reason.startswith("stale"):
                        try:
                            self.lock_file.unlink()
                        except OSError:
                            pass
                    else:
                        return False

                try:
                    tmp = self.lock_file.with_suffix(".tmp")
                    tmp.write_text(str(self.pid), encoding="utf-8")
                    tmp.replace(self.lock_file)
                    return True
                except OSError:
                    pass

            if time.time() - start >= timeout_s:
                return False
            time.sleep(0.2)

    def release(self) -> None:
        if self._read_pid() == self.pid:
            try:
                self.lock_file.unlink()
            except OSError:
                return

    def __enter__(self):
        if not self.acquire(force=True):
            st = self.status()
            pid_info = f" (PID {st.pid})" if st.pid else ""
            raise RuntimeError(f"Bridge already running on port {self.port}{pid_info}")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
