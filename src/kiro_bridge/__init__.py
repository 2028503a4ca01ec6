"""
Kiro Bridge - Local Orchestration Service

Bridges a desktop frontend and the headless Kiro coding agent: isolated
workspaces, a bounded job queue, agent command execution and an HTTP API.
"""

__version__ = "0.1.0"

from kiro_bridge.core.config import BridgeSettings, load_settings
from kiro_bridge.core.errors import BridgeError
from kiro_bridge.server.bootstrap import BridgeContext, ConflictChoice, activate, deactivate

__all__ = [
    "__version__",
    "BridgeSettings",
    "load_settings",
    "BridgeError",
    "BridgeContext",
    "ConflictChoice",
    "activate",
    "deactivate",
]
