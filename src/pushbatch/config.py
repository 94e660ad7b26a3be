"""Configuration for the pushbatch pipeline.

Settings are read from ~/.config/pushbatch/config.yaml (respecting
XDG_CONFIG_HOME) and then overridden by environment variables:

    PUSHBATCH_DB                   SQLite path (":memory:" for the shared in-memory DB)
    PUSHBATCH_BATCH_WINDOW         Debounce window in seconds
    PUSHBATCH_STALE_AGE            Seconds before a failing batch is evicted
    PUSHBATCH_HEARTBEAT_INTERVAL   Presence heartbeat interval in seconds
    PUSHBATCH_PRESENCE_TTL         Optional presence staleness bound in seconds
    PUSHBATCH_PUSH_URL             Push send endpoint
    PUSHBATCH_PUSH_TOKEN           Bearer token for the push send endpoint
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from .errors import PushbatchConfigError

DEFAULT_BATCH_WINDOW_SECONDS = 5.0
DEFAULT_STALE_AGE_SECONDS = 60 * 60.0
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 20.0
DEFAULT_PREVIEW_LIMIT = 50

# Daily usage limits (reset at midnight UTC)
DEFAULT_DAILY_LIMITS = {"photo": 20, "text": 50}

# Show a warning once remaining usage drops to this number
DEFAULT_WARNING_THRESHOLDS = {"photo": 5, "text": 10}


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "pushbatch"


def get_config_path() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.yaml"


_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "PUSHBATCH_DB": ("db_path", str),
    "PUSHBATCH_BATCH_WINDOW": ("batch_window_seconds", float),
    "PUSHBATCH_STALE_AGE": ("stale_age_seconds", float),
    "PUSHBATCH_HEARTBEAT_INTERVAL": ("heartbeat_interval_seconds", float),
    "PUSHBATCH_PRESENCE_TTL": ("presence_ttl_seconds", float),
    "PUSHBATCH_PUSH_URL": ("push_url", str),
    "PUSHBATCH_PUSH_TOKEN": ("push_token", str),
}


@dataclass
class PushbatchConfig:
    """Settings for presence, batching, the sweep and usage limits."""

    db_path: str = ":memory:"
    batch_window_seconds: float = DEFAULT_BATCH_WINDOW_SECONDS
    stale_age_seconds: float = DEFAULT_STALE_AGE_SECONDS
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS
    presence_ttl_seconds: float | None = None
    """When set, presence older than this is ignored by is_active()."""

    preview_limit: int = DEFAULT_PREVIEW_LIMIT
    batch_limit: int = 500
    """Max batches selected per sweep."""

    max_concurrency: int = 10
    """Max batches dispatched at once within one sweep."""

    push_url: str | None = None
    push_token: str | None = None
    push_timeout_seconds: float = 10.0
    daily_limits: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_DAILY_LIMITS))
    warning_thresholds: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_WARNING_THRESHOLDS)
    )

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check that settings are consistent."""
        if self.batch_window_seconds <= 0:
            raise PushbatchConfigError("batch_window_seconds must be positive.")
        if self.heartbeat_interval_seconds <= 0:
            raise PushbatchConfigError("heartbeat_interval_seconds must be positive.")
        if self.stale_age_seconds <= self.batch_window_seconds:
            raise PushbatchConfigError(
                "stale_age_seconds must be larger than batch_window_seconds."
            )
        if self.presence_ttl_seconds is not None and self.presence_ttl_seconds <= 0:
            raise PushbatchConfigError("presence_ttl_seconds must be positive when set.")
        if self.preview_limit <= 0:
            raise PushbatchConfigError("preview_limit must be positive.")
        if self.batch_limit <= 0 or self.max_concurrency <= 0:
            raise PushbatchConfigError("batch_limit and max_concurrency must be positive.")
        for name, limit in self.daily_limits.items():
            if limit < 0:
                raise PushbatchConfigError(f"Daily limit for {name!r} cannot be negative.")

    @property
    def batch_window(self) -> timedelta:
        return timedelta(seconds=self.batch_window_seconds)

    @property
    def stale_age(self) -> timedelta:
        return timedelta(seconds=self.stale_age_seconds)

    @property
    def presence_ttl(self) -> timedelta | None:
        if self.presence_ttl_seconds is None:
            return None
        return timedelta(seconds=self.presence_ttl_seconds)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for YAML serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def save(self, path: Path | None = None) -> Path:
        """Save config to file."""
        path = path or get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {k: v for k, v in self.to_dict().items() if v is not None}
        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        return path

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PushbatchConfig":
        """Create from dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise PushbatchConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def load(cls, path: Path | None = None, *, apply_env: bool = True) -> "PushbatchConfig":
        """Load config from file (if present) and apply environment overrides."""
        path = path or get_config_path()
        data: dict[str, Any] = {}

        if path.exists():
            with open(path) as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise PushbatchConfigError(f"Config file {path} must contain a mapping.")
            data.update(loaded)

        if apply_env:
            data.update(_env_overrides())

        return cls.from_dict(data)

    @classmethod
    def exists(cls) -> bool:
        """Check if config file exists."""
        return get_config_path().exists()


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_name, (attr, cast) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            overrides[attr] = cast(raw)
        except ValueError as e:
            raise PushbatchConfigError(f"Invalid value for {env_name}: {raw!r}") from e
    return overrides


_config: PushbatchConfig | None = None


def get_config() -> PushbatchConfig:
    """Get the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = PushbatchConfig.load()
    return _config


def set_config(config: PushbatchConfig) -> None:
    """Replace the process-wide config."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget the cached config (for testing)."""
    global _config
    _config = None
