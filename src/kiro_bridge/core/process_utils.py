"""
Process Utilities
=================

Process-tree termination shared by force restart and job cancellation.
"""

import asyncio
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from typing import Literal

import psutil

logger = logging.getLogger(__name__)

# Check if running on Windows
IS_WINDOWS = sys.platform == "win32"


@dataclass
class KillResult:
    """Result of a process tree kill operation.

    Attributes:
        status: "success" if all processes terminated, "partial" if some required
            force-kill, "failure" if the parent couldn't be killed
        parent_pid: PID of the parent process
        children_found: Number of child processes found
        children_terminated: Number of children that terminated gracefully
        children_killed: Number of children that required SIGKILL
        parent_forcekilled: Whether the parent required SIGKILL
    """

    status: Literal["success", "partial", "failure"]
    parent_pid: int
    children_found: int = 0
    children_terminated: int = 0
    children_killed: int = 0
    parent_forcekilled: bool = False


def _kill_windows_process_tree_taskkill(pid: int) -> bool:
    """Use ``taskkill /F /T`` to kill a whole tree on Windows."""
    if not IS_WINDOWS:
        return False

    try:
        result = subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(pid)],
            capture_output=True,
            timeout=10,
        )
        return result.returncode == 0
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("taskkill failed for PID %d: %s", pid, e)
        return False


def kill_process_tree(pid: int, timeout_s: float = 5.0) -> KillResult:
    """Kill a process and all its child processes.

    Children are terminated first, then the parent. Anything still alive
    after ``timeout_s`` is force-killed.

    Args:
        pid: Process ID of the tree root
        timeout_s: Seconds to wait for graceful termination before force-killing

    Returns:
        KillResult with status and statistics about the termination
    """
    result = KillResult(status="success", parent_pid=pid)

    if pid == os.getpid():
        logger.error("Refusing to kill the current process (PID %d)", pid)
        result.status = "failure"
        return result

    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        logger.debug("PID %d already gone", pid)
        return result
    except psutil.AccessDenied as e:
        logger.warning("No permission to inspect PID %d: %s", pid, e)
        result.status = "failure"
        return result

    try:
        children = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []
    result.children_found = len(children)

    logger.debug("Killing process tree: PID %d with %d children", pid, len(children))

    for child in children:
        try:
            child.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("Child PID %d already gone or inaccessible: %s", child.pid, e)

    gone, still_alive = psutil.wait_procs(children, timeout=timeout_s)
    result.children_terminated = len(gone)

    if IS_WINDOWS and still_alive:
        _kill_windows_process_tree_taskkill(pid)

    for child in still_alive:
        try:
            logger.debug("Force-killing child PID %d", child.pid)
            child.kill()
            result.children_killed += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("Child PID %d gone during force-kill: %s", child.pid, e)

    if result.children_killed > 0:
        result.status = "partial"

    try:
        parent.terminate()
        try:
            parent.wait(timeout=timeout_s)
        except psutil.TimeoutExpired:
            logger.debug("Parent PID %d did not terminate, force-killing", pid)
            parent.kill()
            parent.wait(timeout=timeout_s)
            result.parent_forcekilled = True
            result.status = "partial"
    except psutil.NoSuchProcess:
        pass
    except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
        logger.warning("Could not kill PID %d: %s", pid, e)
        if not (IS_WINDOWS and _kill_windows_process_tree_taskkill(pid)):
            result.status = "failure"

    logger.debug(
        "Process tree kill complete: status=%s, children=%d (terminated=%d, killed=%d)",
        result.status, result.children_found,
        result.children_terminated, result.children_killed,
    )
    return result


async def terminate_subprocess(proc: asyncio.subprocess.Process, grace_s: float) -> bool:
    """Terminate an asyncio subprocess (and its children), force-killing after ``grace_s``.

    Returns only once the process has exited.

    Returns:
        True if a force kill was required
    """
    if proc.returncode is not None:
        return False

    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []

    for child in children:
        try:
            child.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    try:
        proc.terminate()
    except ProcessLookupError:
        pass

    forced = False
    try:
        await asyncio.wait_for(proc.wait(), timeout=max(0.0, grace_s))
    except asyncio.TimeoutError:
        logger.warning("PID %d ignored terminate for %.1fs; force-killing", proc.pid, grace_s)
        forced = True
        if IS_WINDOWS:
            _kill_windows_process_tree_taskkill(proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()

    for child in children:
        try:
            if child.is_running():
                child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    return forced
