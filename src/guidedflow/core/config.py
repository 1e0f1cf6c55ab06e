"""Configuration resolver with layered priority.

Priority (highest to lowest):
1. CLI arguments
2. Environment variables (GUIDEDFLOW_*)
3. Config files (user > system)
4. Defaults
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from guidedflow.core.errors import ConfigError

ALLOWED_LOGGING_LEVELS = frozenset({"quiet", "normal", "verbose", "debug"})
DEFAULT_LOGGING_LEVEL = "normal"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class ConfigSource:
    """Represents where a config value came from."""

    value: Any
    source: str  # 'cli' | 'env' | 'user_config' | 'system_config' | 'default'


@dataclass(frozen=True)
class LoggingPolicy:
    """Resolved, immutable logging policy."""

    level_name: str  # quiet | normal | verbose | debug
    emit_error: bool
    emit_warning: bool
    emit_info: bool
    emit_debug: bool
    sources: dict[str, ConfigSource]


def _flatten_items(data: dict[str, Any], prefix: str = "") -> list[tuple[str, Any]]:
    """Flatten nested dicts to dot-notation key paths."""
    items: list[tuple[str, Any]] = []

    for key, value in data.items():
        key_path = f"{prefix}.{key}" if prefix else str(key)

        if isinstance(value, dict) and value:
            items.extend(_flatten_items(value, key_path))
        else:
            items.append((key_path, value))

    return items


class ConfigResolver:
    """Resolve configuration with strict priority.

    Example:
        resolver = ConfigResolver(
            cli_args={'pricing': {'debounce_seconds': 0.5}},
            user_config_path=Path('~/.config/guidedflow/config.yaml')
        )

        value, source = resolver.resolve('pricing.debounce_seconds')
        # value = 0.5, source = 'cli'
    """

    def __init__(
        self,
        cli_args: dict[str, Any] | None = None,
        user_config_path: Path | None = None,
        system_config_path: Path | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> None:
        self.cli_args = cli_args or {}
        self.user_config_path = user_config_path or Path.home() / ".config/guidedflow/config.yaml"
        self.system_config_path = system_config_path or Path("/etc/guidedflow/config.yaml")
        self.defaults = defaults or self._default_config()

        self._user_config: dict[str, Any] | None = None
        self._system_config: dict[str, Any] | None = None

    def resolve(self, key: str) -> tuple[Any, str]:
        """Resolve config value with priority.

        Args:
            key: Config key (supports dot notation: 'autosave.interval_seconds')

        Returns:
            (value, source) tuple

        Raises:
            ConfigError: If key not found in any source
        """
        value = self._get_nested(self.cli_args, key)
        if value is not None:
            return value, "cli"

        value = self._from_env(key)
        if value is not None:
            return value, "env"

        value = self._get_nested(self._get_user_config(), key)
        if value is not None:
            return value, "user_config"

        value = self._get_nested(self._get_system_config(), key)
        if value is not None:
            return value, "system_config"

        value = self._get_nested(self.defaults, key)
        if value is not None:
            return value, "default"

        raise ConfigError(f"Config key '{key}' not found in any source")

    def resolve_float(self, key: str) -> float:
        value, src = self.resolve(key)
        if isinstance(value, bool):
            raise ConfigError(f"Config key '{key}' must be a number, got bool")
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Config key '{key}' must be a number (from {src}): {value!r}") from e

    def resolve_int(self, key: str) -> int:
        value, src = self.resolve(key)
        if isinstance(value, bool):
            raise ConfigError(f"Config key '{key}' must be an int, got bool")
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
        raise ConfigError(f"Config key '{key}' must be an int (from {src}): {value!r}")

    def resolve_bool(self, key: str) -> bool:
        value, src = self.resolve(key)
        if isinstance(value, bool):
            return value
        s = str(value).strip().lower()
        if s in _TRUE_VALUES:
            return True
        if s in _FALSE_VALUES:
            return False
        raise ConfigError(f"Config key '{key}' must be a bool (from {src}): {value!r}")

    def resolve_list(self, key: str) -> list[str]:
        value, _src = self.resolve(key)
        if isinstance(value, str):
            # Environment form: comma separated.
            return [part.strip() for part in value.split(",") if part.strip()]
        if not isinstance(value, list):
            raise ConfigError(f"Config key '{key}' must be a list")
        return [str(v) for v in value]

    def resolve_logging_level(self) -> str:
        """Resolve and validate logging.level.

        Allowed values (after normalization): quiet | normal | verbose | debug

        Raises:
            ConfigError: If the resolved value is invalid.
        """
        level, _src = self._resolve_logging_level_and_source()
        return level

    def resolve_logging_policy(self) -> LoggingPolicy:
        """Resolve canonical logging policy (side-effect free)."""
        level_name, src = self._resolve_logging_level_and_source()
        return LoggingPolicy(
            level_name=level_name,
            emit_error=True,
            emit_warning=True,
            emit_info=level_name != "quiet",
            emit_debug=level_name in {"verbose", "debug"},
            sources={"level_name": src},
        )

    def _resolve_logging_level_and_source(self) -> tuple[str, ConfigSource]:
        key = "logging.level"
        try:
            value, source = self.resolve(key)
        except ConfigError:
            return DEFAULT_LOGGING_LEVEL, ConfigSource(value=DEFAULT_LOGGING_LEVEL, source="default")

        if not isinstance(value, str):
            raise ConfigError(f"Config key '{key}' must be a string, got {type(value).__name__}")
        norm = value.strip().lower()
        if norm not in ALLOWED_LOGGING_LEVELS:
            allowed = ", ".join(sorted(ALLOWED_LOGGING_LEVELS))
            raise ConfigError(f"Invalid '{key}': {value!r}. Allowed values: {allowed}")
        return norm, ConfigSource(value=norm, source=source)

    def resolve_all(self) -> dict[str, ConfigSource]:
        """Resolve every key known from defaults and config files."""
        keys = {k for k, _v in _flatten_items(self.defaults)}
        keys.update(k for k, _v in _flatten_items(self._get_user_config()))
        keys.update(k for k, _v in _flatten_items(self._get_system_config()))
        keys.update(k for k, _v in _flatten_items(self.cli_args))

        result: dict[str, ConfigSource] = {}
        for key in sorted(keys):
            try:
                value, source = self.resolve(key)
            except ConfigError:
                continue
            result[key] = ConfigSource(value=value, source=source)
        return result

    def _from_env(self, key: str) -> Any | None:
        """Environment variable format: GUIDEDFLOW_PRICING_DEBOUNCE_SECONDS"""
        env_key = f"GUIDEDFLOW_{key.upper().replace('.', '_')}"
        return os.environ.get(env_key)

    def _get_user_config(self) -> dict[str, Any]:
        if self._user_config is None:
            self._user_config = self._load_yaml(self.user_config_path)
        return self._user_config

    def _get_system_config(self) -> dict[str, Any]:
        if self._system_config is None:
            self._system_config = self._load_yaml(self.system_config_path)
        return self._system_config

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
                return data if isinstance(data, dict) else {}
        except Exception as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e

    def _get_nested(self, data: dict[str, Any], key: str) -> Any | None:
        """Get nested value using dot notation.

        Example:
            data = {'autosave': {'interval_seconds': 30}}
            _get_nested(data, 'autosave.interval_seconds') -> 30
        """
        current: Any = data
        for part in key.split("."):
            if not isinstance(current, dict):
                return None
            current = current.get(part)
            if current is None:
                return None
        return current

    @staticmethod
    def _default_config() -> dict[str, Any]:
        """Default configuration."""
        return {
            "pricing": {
                "debounce_seconds": 1.0,
                "oracle_timeout_seconds": 10.0,
                "default_services": ["WC"],
                "services_step": "scope-details",
                "rate_table_path": "",
                "include_risk_adjustments": True,
                "confidence": {
                    "max_missing_for_medium": 2,
                },
            },
            "validation": {
                "debounce_seconds": 2.0,
                "area_tolerance": 0.1,
                "enforce_blocked_steps": False,
            },
            "autosave": {
                "interval_seconds": 30.0,
            },
            "recovery": {
                "max_draft_age_hours": 24,
                "auto_cleanup": True,
                "max_recovery_attempts": 3,
                "cleanup_interval_seconds": 3600.0,
            },
            "drafts": {
                "dir": str(Path.home() / ".guidedflow" / "drafts"),
            },
            "logging": {
                "level": "normal",
                "color": True,
            },
            "diagnostics": {
                "enabled": False,
                "path": str(Path.home() / ".guidedflow" / "diagnostics.jsonl"),
            },
        }


@dataclass(frozen=True)
class EngineSettings:
    """Every engine knob, resolved once per session."""

    pricing_debounce_seconds: float = 1.0
    oracle_timeout_seconds: float = 10.0
    default_services: tuple[str, ...] = ("WC",)
    services_step: str = "scope-details"
    rate_table_path: str = ""
    include_risk_adjustments: bool = True
    max_missing_for_medium: int = 2
    validation_debounce_seconds: float = 2.0
    area_tolerance: float = 0.1
    enforce_blocked_steps: bool = False
    autosave_interval_seconds: float = 30.0
    max_draft_age_hours: float = 24.0
    auto_cleanup: bool = True
    max_recovery_attempts: int = 3
    cleanup_interval_seconds: float = 3600.0
    drafts_dir: str = str(Path.home() / ".guidedflow" / "drafts")

    @classmethod
    def from_resolver(cls, resolver: ConfigResolver | None = None) -> EngineSettings:
        r = resolver or ConfigResolver()
        settings = cls(
            pricing_debounce_seconds=r.resolve_float("pricing.debounce_seconds"),
            oracle_timeout_seconds=r.resolve_float("pricing.oracle_timeout_seconds"),
            default_services=tuple(r.resolve_list("pricing.default_services")),
            services_step=str(r.resolve("pricing.services_step")[0]),
            rate_table_path=_optional_str(r, "pricing.rate_table_path"),
            include_risk_adjustments=r.resolve_bool("pricing.include_risk_adjustments"),
            max_missing_for_medium=r.resolve_int("pricing.confidence.max_missing_for_medium"),
            validation_debounce_seconds=r.resolve_float("validation.debounce_seconds"),
            area_tolerance=r.resolve_float("validation.area_tolerance"),
            enforce_blocked_steps=r.resolve_bool("validation.enforce_blocked_steps"),
            autosave_interval_seconds=r.resolve_float("autosave.interval_seconds"),
            max_draft_age_hours=r.resolve_float("recovery.max_draft_age_hours"),
            auto_cleanup=r.resolve_bool("recovery.auto_cleanup"),
            max_recovery_attempts=r.resolve_int("recovery.max_recovery_attempts"),
            cleanup_interval_seconds=r.resolve_float("recovery.cleanup_interval_seconds"),
            drafts_dir=str(r.resolve("drafts.dir")[0]),
        )
        for name in (
            "pricing_debounce_seconds",
            "validation_debounce_seconds",
            "autosave_interval_seconds",
            "oracle_timeout_seconds",
            "cleanup_interval_seconds",
        ):
            if getattr(settings, name) < 0:
                raise ConfigError(f"'{name}' must not be negative")
        return settings


def _optional_str(resolver: ConfigResolver, key: str) -> str:
    try:
        value, _src = resolver.resolve(key)
    except ConfigError:
        return ""
    return str(value)
