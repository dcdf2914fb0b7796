"""
Runtime configuration.

Sources, lowest precedence first:
    1. dataclass defaults
    2. TOML file (default ~/.delegator/config.toml): [agent], [limits],
       [assessment] and [telemetry] tables
    3. DELEGATOR_* environment variables

Usage:
    config = load_config()                     # default file, if present
    config = load_config("agent.toml", env={})  # ignore the environment
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from delegator.admission.engine import ResourceLimits
from delegator.errors import ValidationError
from delegator.execution.assessment import AssessmentPolicy
from delegator.telemetry.engine import TelemetryConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "DELEGATOR_"
DEFAULT_DATA_DIR = Path.home() / ".delegator"
CONFIG_FILENAME = "config.toml"
TELEMETRY_DB_FILENAME = "telemetry.db"

DEFAULT_CONFIG_TOML = """\
[agent]
agent_id = "local-agent"
agent_name = "Local Agent"
max_concurrent_tasks = 5
default_timeout_ms = 300000
task_history_size = 500

[limits]
memory_mb = 4096
cpu_percent = 400
disk_mb = 10240
network_mbps = 1000

[assessment]
window = 10
update_threshold = 0.1

[telemetry]
enabled = true
buffer_size = 100
flush_interval_ms = 5000
sampling_rate = 1.0
min_severity = "info"
"""


@dataclass
class RuntimeConfig:
    agent_id: str = "local-agent"
    agent_name: str = "Local Agent"
    max_concurrent_tasks: int = 5
    default_timeout_ms: int = 300_000
    task_history_size: int = 500
    confidence_history_size: int | None = None
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    assessment: AssessmentPolicy = field(default_factory=AssessmentPolicy)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    data_dir: Path = DEFAULT_DATA_DIR

    def __post_init__(self) -> None:
        if not self.agent_id:
            raise ValidationError("agent_id is required")
        if self.max_concurrent_tasks < 1:
            raise ValidationError(
                f"max_concurrent_tasks must be >= 1, got {self.max_concurrent_tasks}"
            )
        if self.default_timeout_ms <= 0:
            raise ValidationError(
                f"default_timeout_ms must be > 0, got {self.default_timeout_ms}"
            )
        if self.task_history_size < 1:
            raise ValidationError(f"task_history_size must be >= 1, got {self.task_history_size}")
        self.data_dir = Path(self.data_dir).expanduser()
        # [agent] confidence_history_size wins over [assessment] history_size
        if self.confidence_history_size is not None:
            if self.confidence_history_size < 1:
                raise ValidationError(
                    f"confidence_history_size must be >= 1, got {self.confidence_history_size}"
                )
            self.assessment.history_size = self.confidence_history_size

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILENAME

    @property
    def telemetry_db_path(self) -> Path:
        return self.data_dir / TELEMETRY_DB_FILENAME


# ── Loading ───────────────────────────────────────────────────────────────

_AGENT_KEYS = (
    "agent_id",
    "agent_name",
    "max_concurrent_tasks",
    "default_timeout_ms",
    "task_history_size",
    "confidence_history_size",
    "data_dir",
)

_ENV_KEYS: dict[str, tuple[str | None, str, type]] = {
    "AGENT_ID": (None, "agent_id", str),
    "AGENT_NAME": (None, "agent_name", str),
    "MAX_CONCURRENT_TASKS": (None, "max_concurrent_tasks", int),
    "DEFAULT_TIMEOUT_MS": (None, "default_timeout_ms", int),
    "DATA_DIR": (None, "data_dir", str),
    "MEMORY_MB": ("limits", "memory_mb", float),
    "CPU_PERCENT": ("limits", "cpu_percent", float),
    "TELEMETRY_ENABLED": ("telemetry", "enabled", bool),
    "TELEMETRY_BUFFER_SIZE": ("telemetry", "buffer_size", int),
    "TELEMETRY_FLUSH_INTERVAL_MS": ("telemetry", "flush_interval_ms", int),
    "TELEMETRY_SAMPLING_RATE": ("telemetry", "sampling_rate", float),
    "TELEMETRY_MIN_SEVERITY": ("telemetry", "min_severity", str),
}


def _coerce(raw: str, kind: type) -> Any:
    if kind is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return kind(raw)


def _pick(cls: type, table: Mapping[str, Any], section: str) -> dict[str, Any]:
    known = {f.name for f in fields(cls)}
    unknown = set(table) - known
    if unknown:
        raise ValidationError(f"Unknown key(s) in [{section}]: {', '.join(sorted(unknown))}")
    return dict(table)


def config_from_mapping(data: Mapping[str, Any]) -> RuntimeConfig:
    """Build a config from parsed TOML tables."""
    agent = dict(data.get("agent", {}))
    unknown = set(agent) - set(_AGENT_KEYS)
    if unknown:
        raise ValidationError(f"Unknown key(s) in [agent]: {', '.join(sorted(unknown))}")
    try:
        return RuntimeConfig(
            **agent,
            resource_limits=ResourceLimits(
                **_pick(ResourceLimits, data.get("limits", {}), "limits")
            ),
            assessment=AssessmentPolicy(
                **_pick(AssessmentPolicy, data.get("assessment", {}), "assessment")
            ),
            telemetry=TelemetryConfig(
                **_pick(TelemetryConfig, data.get("telemetry", {}), "telemetry")
            ),
        )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, ValidationError):
            raise
        raise ValidationError(f"Invalid configuration: {exc}") from exc


def apply_env(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Overlay DELEGATOR_* variables onto parsed TOML tables."""
    for suffix, (section, key, kind) in _ENV_KEYS.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is None:
            continue
        try:
            value = _coerce(raw, kind)
        except ValueError as exc:
            raise ValidationError(f"Invalid {ENV_PREFIX}{suffix}={raw!r}") from exc
        data.setdefault(section or "agent", {})[key] = value
    return data


def load_config(
    path: str | Path | None = None, env: Mapping[str, str] | None = None
) -> RuntimeConfig:
    """Load configuration from ``path`` (or the default file) plus the environment.

    A missing default file is not an error; a missing explicit path is.
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}

    if path is None:
        data_dir = Path(env.get(ENV_PREFIX + "DATA_DIR", DEFAULT_DATA_DIR)).expanduser()
        candidate = data_dir / CONFIG_FILENAME
    else:
        candidate = Path(path).expanduser()
        if not candidate.exists():
            raise FileNotFoundError(f"Config file not found: {candidate}")

    if candidate.exists():
        with candidate.open("rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as exc:
                raise ValidationError(f"Invalid TOML in {candidate}: {exc}") from exc
        logger.debug("Loaded config from %s", candidate)

    return config_from_mapping(apply_env(data, env))


def write_default_config(data_dir: str | Path | None = None, overwrite: bool = False) -> Path:
    """Create the data directory and a starter config.toml. Returns the file path."""
    directory = Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / CONFIG_FILENAME
    if overwrite or not path.exists():
        path.write_text(DEFAULT_CONFIG_TOML)
    return path
