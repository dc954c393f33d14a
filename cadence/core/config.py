"""
Cadence Configuration — loads and merges config from multiple sources.

Precedence (highest to lowest):
1. Explicit overrides (passed in code)
2. Environment variables (CADENCE_*)
3. Project config (./cadence.toml)
4. User config (~/.cadence/config.toml)
5. Defaults (hardcoded)

Environment variable mapping:
    CADENCE_RATE_LIMIT_PRESET → rate_limit.preset
    CADENCE_RATE_LIMIT_MAX_PER_HOUR → rate_limit.max_per_hour
    CADENCE_QUIET_HOURS_ENABLED → quiet_hours.enabled
    CADENCE_GOVERNOR_POLL_INTERVAL → governor.poll_interval

Example cadence.toml:
    [rate_limit]
    preset = "moderate"

    [quiet_hours]
    enabled = true
    start = "22:00"
    end = "08:00"

    [optimizer.heatmap]
    9 = 0.8
    18 = 0.6
"""

from __future__ import annotations

import os
import re
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from cadence.core.errors import CadenceError, ConfigError
from cadence.core.types import (
    ALL_WEEKDAYS,
    SYSTEM_CAP,
    EngagementHeatmap,
    QuietHoursPolicy,
    RateLimitPolicy,
    TimeOfDay,
    Weekday,
)

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Sub-Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class GovernorConfig(BaseModel):
    """Governor and deferred-queue sizing."""

    system_cap: int = Field(default=SYSTEM_CAP, ge=1)
    queue_capacity: int = Field(default=64, ge=1)
    poll_interval: float = Field(default=30.0, gt=0)  # seconds


class RateLimitConfig(BaseModel):
    """
    Admission caps. A preset fills in the caps it names; explicit
    values win over the preset.
    """

    preset: str | None = None  # conservative | moderate | relaxed
    max_per_hour: int | None = Field(default=None, ge=0)
    max_per_day: int | None = Field(default=None, ge=0)
    min_spacing_seconds: int = Field(default=0, ge=0)
    burst_limit: int | None = Field(default=None, ge=0)
    burst_window_seconds: int = Field(default=60, gt=0)
    bypass_for_critical: bool = False

    def to_policy(self) -> RateLimitPolicy:
        presets = {
            "conservative": RateLimitPolicy.conservative,
            "moderate": RateLimitPolicy.moderate,
            "relaxed": RateLimitPolicy.relaxed,
        }
        base = RateLimitPolicy()
        if self.preset is not None:
            if self.preset not in presets:
                raise ConfigError(f"Unknown rate limit preset: {self.preset!r}")
            base = presets[self.preset]()
        try:
            return RateLimitPolicy(
                max_per_hour=self.max_per_hour if self.max_per_hour is not None else base.max_per_hour,
                max_per_day=self.max_per_day if self.max_per_day is not None else base.max_per_day,
                min_spacing=timedelta(seconds=self.min_spacing_seconds),
                burst_limit=self.burst_limit,
                burst_window=timedelta(seconds=self.burst_window_seconds),
                bypass_for_critical=self.bypass_for_critical,
            )
        except CadenceError as e:
            raise ConfigError(f"Invalid rate limit settings: {e.message}") from e


class QuietHoursConfig(BaseModel):
    """Do-not-disturb window. Disabled unless enabled or a preset is set."""

    enabled: bool = False
    preset: str | None = None  # night_time | sleep_time | work_hours_only
    start: str = "22:00"
    end: str = "08:00"
    weekdays: list[str] = Field(default_factory=lambda: [d.name.lower() for d in Weekday])
    allow_critical: bool = False

    def to_policy(self) -> QuietHoursPolicy | None:
        presets = {
            "night_time": QuietHoursPolicy.night_time,
            "sleep_time": QuietHoursPolicy.sleep_time,
            "work_hours_only": QuietHoursPolicy.work_hours_only,
        }
        if self.preset is not None:
            if self.preset not in presets:
                raise ConfigError(f"Unknown quiet hours preset: {self.preset!r}")
            base = presets[self.preset]()
        elif self.enabled:
            try:
                base = QuietHoursPolicy(TimeOfDay.parse(self.start), TimeOfDay.parse(self.end))
            except CadenceError as e:
                raise ConfigError(f"Invalid quiet hours window: {e.message}") from e
        else:
            return None

        try:
            days = frozenset(Weekday[name.upper()] for name in self.weekdays)
        except KeyError as e:
            raise ConfigError(f"Unknown weekday in quiet_hours.weekdays: {e}") from e
        return QuietHoursPolicy(
            window_start=base.window_start,
            window_end=base.window_end,
            active_weekdays=days if days else ALL_WEEKDAYS,
            allow_critical=self.allow_critical,
        )


class OptimizerConfig(BaseModel):
    """Engagement snapshot for delivery optimization (hour → score)."""

    heatmap: dict[int, float] = Field(default_factory=dict)

    def to_heatmap(self) -> EngagementHeatmap:
        try:
            return EngagementHeatmap.from_mapping(self.heatmap)
        except CadenceError as e:
            raise ConfigError(f"Invalid heatmap: {e.message}") from e


class LoggingConfig(BaseModel):
    """Log file locations and verbosity."""

    dir: str = "~/.cadence/logs"
    console_level: str = "WARNING"
    log_events: bool = True


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Main Config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class CadenceConfig(BaseModel):
    """Root configuration for Cadence."""

    governor: GovernorConfig = Field(default_factory=GovernorConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    quiet_hours: QuietHoursConfig = Field(default_factory=QuietHoursConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


    @classmethod
    def load(
        cls,
        overrides: dict[str, Any] | None = None,
        project_path: Path | None = None,
        user_path: Path | None = None,
    ) -> CadenceConfig:
        """
        Build the effective configuration.

        Later layers win: user toml, project toml, CADENCE_* variables,
        then overrides. ${VAR} references in string values are expanded
        after merging.
        """
        layers = []
        for path in (
            user_path or Path.home() / ".cadence" / "config.toml",
            project_path or Path.cwd() / "cadence.toml",
        ):
            if path.exists():
                layers.append(load_toml(path))
        layers.append(_env_layer())
        layers.append(overrides or {})

        merged: dict[str, Any] = {}
        for layer in layers:
            merged = _merge(merged, layer)

        try:
            return cls.model_validate(_expand_env(merged))
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def get_log_dir(self) -> Path:
        return Path(self.logging.dir).expanduser()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Sources
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def load_toml(path: Path) -> dict[str, Any]:
    """Parse a TOML file, raising ConfigError on unreadable or malformed input."""
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


# CADENCE_<SECTION>_<KEY> → [section] key
_ENV_KEYS = {
    "governor": ("system_cap", "queue_capacity", "poll_interval"),
    "rate_limit": ("preset", "max_per_hour", "max_per_day", "min_spacing_seconds"),
    "quiet_hours": ("enabled", "preset", "start", "end"),
    "logging": ("dir", "console_level", "log_events"),
}

# Never coerced to numbers or booleans
_TEXT_KEYS = {"preset", "start", "end", "dir", "console_level"}

_TRUTHY = {"true", "yes", "on"}
_FALSY = {"false", "no", "off"}


def _env_layer() -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for section, keys in _ENV_KEYS.items():
        for key in keys:
            raw = os.environ.get(f"CADENCE_{section}_{key}".upper())
            if raw is None:
                continue
            layer.setdefault(section, {})[key] = raw if key in _TEXT_KEYS else _coerce(raw)
    return layer


def _coerce(raw: str) -> Any:
    """Interpret an environment string as a bool, int or float when it looks like one."""
    lowered = raw.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    for kind in (int, float):
        try:
            return kind(raw)
        except ValueError:
            continue
    return raw


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return base updated by override, merging nested tables key by key."""
    result = dict(base)
    for key, value in override.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = _merge(current, value)
        else:
            result[key] = value
    return result


_ENV_REF = re.compile(r"\$\{([^}]+)\}")


def _expand_env(value: Any) -> Any:
    """Replace ${VAR} in strings, recursing into tables and arrays. Unset vars expand to ''."""
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value
