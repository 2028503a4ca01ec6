"""
Core Components
===============

Configuration, errors, the job model and the filesystem/process/port
services the job manager builds on.
"""

from kiro_bridge.core.config import BridgeSettings, load_settings, save_settings
from kiro_bridge.core.errors import BridgeError
from kiro_bridge.core.jobs import DevelopmentJob, JobRequest, JobState

__all__ = [
    "BridgeSettings",
    "load_settings",
    "save_settings",
    "BridgeError",
    "DevelopmentJob",
    "JobRequest",
    "JobState",
]
