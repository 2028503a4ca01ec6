"""
Agent Access
============

Command proxy for the headless coding agent and progress reporting.
"""

from kiro_bridge.agent.command_proxy import CancelToken, CommandProxy, CommandResult, InputResult, SubprocessCommandRunner
from kiro_bridge.agent.progress import ProgressBoard, ProgressSink, ProgressUpdate

__all__ = [
    "CancelToken",
    "CommandProxy",
    "CommandResult",
    "InputResult",
    "SubprocessCommandRunner",
    "ProgressBoard",
    "ProgressSink",
    "ProgressUpdate",
]
