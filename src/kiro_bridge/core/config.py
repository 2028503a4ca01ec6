"""
Bridge Configuration
====================

Typed settings for the bridge, loaded once at bootstrap.

Sources (lowest to highest precedence):
1) dataclass defaults
2) JSON settings file (~/.kiro-bridge/settings.json or KIRO_BRIDGE_SETTINGS_FILE)
3) KIRO_BRIDGE_* environment variables

Environment Variables:
- KIRO_BRIDGE_API_HOST / KIRO_BRIDGE_API_PORT: API server bind address (default: 127.0.0.1:3001)
- KIRO_BRIDGE_MAX_CONCURRENT_JOBS: running job cap (default: 3)
- KIRO_BRIDGE_WORKSPACE_ROOT: directory holding application workspaces
- KIRO_BRIDGE_AGENT_COMMAND: agent executable (+ fixed args), shell-split (default: kiro)
- KIRO_BRIDGE_MAX_CONCURRENT_COMMANDS: cap on ad-hoc agent commands, never below the job cap (default: 8)

Invalid values never abort startup; they are logged and replaced by the default.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Final, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX: Final[str] = "KIRO_BRIDGE_"
SETTINGS_FILE_ENV: Final[str] = "KIRO_BRIDGE_SETTINGS_FILE"

DEFAULT_API_HOST: Final[str] = "127.0.0.1"
DEFAULT_API_PORT: Final[int] = 3001
RETENTION_POLICIES: Final[tuple[str, ...]] = ("archive", "destroy")
LOG_LEVELS: Final[tuple[str, ...]] = ("debug", "info", "warn", "error")


def _config_dir() -> Path:
    return Path.home() / ".kiro-bridge"


def default_settings_path() -> Path:
    raw = os.environ.get(SETTINGS_FILE_ENV, "").strip()
    if raw:
        return Path(raw).expanduser()
    return _config_dir() / "settings.json"


@dataclass
class BridgeSettings:
    # API server
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    api_key: str = ""
    allow_remote: bool = False
    auto_start: bool = True

    # Jobs
    max_concurrent_jobs: int = 3
    job_timeout_s: float = 1800.0
    progress_interval_s: float = 5.0
    cancel_grace_s: float = 5.0

    # Workspaces
    workspace_root: Path = field(default_factory=lambda: _config_dir() / "apps")
    workspace_retention: str = "archive"  # archive|destroy
    workspace_template_dir: Optional[Path] = None  # seeds .kiro/ in new workspaces
    finished_job_retention_s: float = 3600.0  # finished jobs stay queryable this long

    # Agent
    agent_command: list[str] = field(default_factory=lambda: ["kiro"])
    agent_timeout_s: float = 300.0
    max_concurrent_commands: int = 8

    # Ports / lifecycle
    port_probe_timeout_s: float = 2.0
    port_scan_span: int = 100
    shutdown_timeout_s: float = 10.0

    # Logging
    log_level: str = "info"
    log_dir: Optional[Path] = field(default_factory=lambda: _config_dir() / "logs")

    @property
    def metadata_root(self) -> Path:
        return self.workspace_root / ".metadata"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["workspace_root"] = str(self.workspace_root)
        data["log_dir"] = str(self.log_dir) if self.log_dir else None
        data["workspace_template_dir"] = str(self.workspace_template_dir) if self.workspace_template_dir else None
        return data


# ============================================================================
# Value coercion (shared by the JSON file and env layers)
# ============================================================================


def _coerce_port(name: str, raw: Any, default: int) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value %r; using default %s", name, raw, default)
        return default
    # Avoid well-known ports 1-1023
    if 1024 <= port <= 65535:
        return port
    logger.warning("%s=%s is out of valid range (1024-65535); using default %s", name, port, default)
    return default


def _coerce_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() not in ("0", "false", "no", "off", "")


def _coerce_number(name: str, raw: Any, default: Any, *, minimum: float = 0.0) -> Any:
    caster = int if isinstance(default, int) and not isinstance(default, bool) else float
    try:
        value = caster(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value %r; using default %s", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s=%s is below minimum %s; clamping", name, value, minimum)
        return caster(minimum)
    return value


def _coerce_argv(raw: Any) -> list[str]:
    if isinstance(raw, (list, tuple)):
        return [str(part) for part in raw]
    return shlex.split(str(raw), posix=os.name != "nt")


_MINIMUMS: dict[str, float] = {
    "max_concurrent_jobs": 1,
    "max_concurrent_commands": 1,
    "port_scan_span": 1,
    "job_timeout_s": 1.0,
    "agent_timeout_s": 0.1,
    "progress_interval_s": 0.05,
    "cancel_grace_s": 0.0,
    "port_probe_timeout_s": 0.1,
    "shutdown_timeout_s": 0.1,
}


def _apply_value(settings: BridgeSettings, name: str, raw: Any, *, source: str) -> None:
    default = getattr(BridgeSettings(), name)
    label = f"{source}:{name}"
    if name == "api_port":
        value: Any = _coerce_port(label, raw, DEFAULT_API_PORT)
    elif name in ("workspace_root", "log_dir", "workspace_template_dir"):
        value = Path(str(raw)).expanduser() if raw not in (None, "") else default
    elif name == "agent_command":
        value = _coerce_argv(raw)
        if not value:
            logger.warning("Empty %s; using default %s", label, default)
            value = default
    elif name == "workspace_retention":
        value = str(raw).strip().lower()
        if value not in RETENTION_POLICIES:
            logger.warning("Unknown %s %r; using 'archive'", label, raw)
            value = "archive"
    elif name == "log_level":
        value = str(raw).strip().lower()
        if value == "warning":
            value = "warn"
        if value not in LOG_LEVELS:
            logger.warning("Unknown %s %r; using 'info'", label, raw)
            value = "info"
    elif isinstance(default, bool):
        value = _coerce_bool(raw)
    elif isinstance(default, (int, float)):
        value = _coerce_number(label, raw, default, minimum=_MINIMUMS.get(name, 0.0))
    else:
        value = str(raw)
    setattr(settings, name, value)


def _load_settings_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read settings file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Settings file %s does not contain an object; ignoring", path)
        return {}
    return data


def load_settings(
    settings_file: Optional[Path] = None,
    *,
    environ: Optional[dict[str, str]] = None,
    **overrides: Any,
) -> BridgeSettings:
    """
    Build the effective settings.

    Args:
        settings_file: JSON file to read (default: ``default_settings_path()``)
        environ: Environment mapping (default: ``os.environ``)
        **overrides: Explicit values (e.g. from CLI flags), applied last

    Returns:
        Fully validated BridgeSettings
    """
    env = os.environ if environ is None else environ
    settings = BridgeSettings()
    known = {f.name for f in fields(BridgeSettings)}

    path = settings_file or default_settings_path()
    for key, raw in _load_settings_file(path).items():
        if key not in known:
            logger.warning("Unknown setting %r in %s; ignoring", key, path)
            continue
        _apply_value(settings, key, raw, source="file")

    for name in known:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is None or raw == "":
            continue
        _apply_value(settings, name, raw, source="env")

    for name, raw in overrides.items():
        if name not in known:
            raise TypeError(f"Unknown setting: {name}")
        if raw is None:
            continue
        _apply_value(settings, name, raw, source="override")

    if settings.max_concurrent_commands < settings.max_concurrent_jobs:
        logger.warning(
            "max_concurrent_commands=%d is below max_concurrent_jobs=%d; raising it to match",
            settings.max_concurrent_commands, settings.max_concurrent_jobs,
        )
        settings.max_concurrent_commands = settings.max_concurrent_jobs
    return settings


def save_settings(settings: BridgeSettings, path: Optional[Path] = None) -> Path:
    """Persist settings as JSON (atomic replace)."""
    target = path or default_settings_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(".tmp")
    tmp.write_text(json.dumps(settings.to_dict(), indent=2), encoding="utf-8")
    tmp.replace(target)
    return target
