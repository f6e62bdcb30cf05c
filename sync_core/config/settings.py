# =============================================================================
# sync_core/config/settings.py
# Engine Configuration: Defaults, TOML File, Environment
# =============================================================================
"""
Configuration for the offline engine.

Precedence (lowest to highest):
    1. Built-in defaults
    2. TOML file (``[engine]`` and ``[categories.<name>]`` tables)
    3. ``SYNC_CORE_*`` environment variables (``.env`` is loaded first)

Durations accept seconds (``600``) or a suffixed string (``"10m"``,
``"24h"``, ``"30s"``, ``"1d"``).

Example sync_core.toml:
    [engine]
    db_path = "local_data/guard_app.db"
    drain_interval = "5m"
    max_attempts = 10

    [categories.dashboard]
    ttl = "10m"
    interval = "10m"
    priority = "high"
    scopes = ["guard-7"]

    [categories.jobs]
    max_items = 50
"""

from __future__ import annotations
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
import logging

import toml
from dotenv import load_dotenv

from sync_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "SYNC_CORE_"
CONFIG_ENV_VAR = "SYNC_CORE_CONFIG"
DEFAULT_CONFIG_FILE = Path("sync_core.toml")

PRIORITY_NAMES = ("low", "normal", "high")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}

MINUTE = 60
HOUR = 60 * MINUTE


@dataclass
class CategoryConfig:
    """Cache and refresh settings for one category."""
    ttl: float
    interval: float
    priority: str = "normal"
    scopes: List[Optional[str]] = field(default_factory=lambda: [None])
    key_prefix: Optional[str] = None
    max_items: Optional[int] = None
    enabled: bool = True


def default_categories() -> Dict[str, CategoryConfig]:
    return {
        "jobs": CategoryConfig(ttl=24 * HOUR, interval=5 * MINUTE, priority="high", max_items=50),
        "dashboard": CategoryConfig(ttl=10 * MINUTE, interval=10 * MINUTE, priority="high"),
        "payment_status": CategoryConfig(ttl=5 * MINUTE, interval=5 * MINUTE),
        "profile_completion": CategoryConfig(ttl=1 * HOUR, interval=30 * MINUTE, priority="low"),
        "certificate_alerts": CategoryConfig(ttl=24 * HOUR, interval=6 * HOUR, priority="low"),
    }


@dataclass
class EngineConfig:
    """Everything needed to build an OfflineEngine."""
    db_path: str = "local_data/sync_core.db"
    sweep_multiplier: float = 4.0
    sweep_probability: float = 0.1
    max_cache_entries: Optional[int] = 500
    default_ttl: float = 24 * HOUR
    drain_interval: float = 5 * MINUTE
    max_attempts: Optional[int] = None
    monitor_connectivity: bool = True
    connectivity_hosts: List[Tuple[str, int]] = field(
        default_factory=lambda: [("8.8.8.8", 53), ("1.1.1.1", 53), ("208.67.222.222", 53)]
    )
    connectivity_timeout: float = 5.0
    check_interval_online: float = 30.0
    check_interval_offline: float = 10.0
    log_level: str = "INFO"
    log_to_file: bool = False
    categories: Dict[str, CategoryConfig] = field(default_factory=default_categories)

    def validate(self) -> EngineConfig:
        """Raise ConfigurationError on out-of-range values."""
        if self.sweep_multiplier < 1:
            raise ConfigurationError("sweep_multiplier must be >= 1", config_key="sweep_multiplier")
        if not 0.0 <= self.sweep_probability <= 1.0:
            raise ConfigurationError("sweep_probability must be within [0, 1]", config_key="sweep_probability")
        if self.max_cache_entries is not None and self.max_cache_entries < 1:
            raise ConfigurationError("max_cache_entries must be positive", config_key="max_cache_entries")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be positive", config_key="max_attempts")
        if self.drain_interval <= 0:
            raise ConfigurationError("drain_interval must be positive", config_key="drain_interval")
        if self.connectivity_timeout <= 0:
            raise ConfigurationError("connectivity_timeout must be positive", config_key="connectivity_timeout")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"Unknown log level '{self.log_level}'", config_key="log_level")

        for name, category in self.categories.items():
            if category.ttl < 0:
                raise ConfigurationError(f"TTL for '{name}' must not be negative", config_key=f"categories.{name}.ttl")
            if category.interval <= 0:
                raise ConfigurationError(
                    f"Refresh interval for '{name}' must be positive",
                    config_key=f"categories.{name}.interval",
                )
            if category.priority not in PRIORITY_NAMES:
                raise ConfigurationError(
                    f"Unknown priority '{category.priority}' for '{name}'",
                    config_key=f"categories.{name}.priority",
                    expected_type="|".join(PRIORITY_NAMES),
                )
            if category.max_items is not None and category.max_items < 1:
                raise ConfigurationError(
                    f"max_items for '{name}' must be positive",
                    config_key=f"categories.{name}.max_items",
                )
        return self

    def enabled_categories(self) -> Dict[str, CategoryConfig]:
        return {name: c for name, c in self.categories.items() if c.enabled}


# =============================================================================
# PARSERS
# =============================================================================

def parse_duration(value: Union[str, int, float], key: str = "duration") -> float:
    """Parse seconds or a ``<number><s|m|h|d>`` string into seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration for {key}: {value!r}", config_key=key, expected_type="duration")
    if isinstance(value, (int, float)):
        return float(value)

    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigurationError(f"Invalid duration for {key}: {value!r}", config_key=key, expected_type="duration")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit.lower()]


def _parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid boolean for {key}: {value!r}", config_key=key, expected_type="bool")


def _parse_number(value: Any, key: str, kind=float):
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid number for {key}: {value!r}", config_key=key, expected_type=kind.__name__)


def _parse_optional_int(value: Any, key: str) -> Optional[int]:
    # 0 and "none" both mean unlimited
    if value is None or str(value).strip().lower() in ("", "none", "null", "0"):
        return None
    return _parse_number(value, key, int)


def _parse_hosts(value: Any, key: str) -> List[Tuple[str, int]]:
    """Accept ``"h1:53,h2:53"`` or a list of ``"h:p"`` strings / ``[h, p]`` pairs."""
    items = value.split(",") if isinstance(value, str) else list(value)
    hosts = []
    for item in items:
        if isinstance(item, str):
            host, _, port = item.strip().rpartition(":")
            if not host:
                host, port = port, "53"
        else:
            host, port = item
        hosts.append((str(host), _parse_number(port, key, int)))
    if not hosts:
        raise ConfigurationError(f"{key} must list at least one host", config_key=key)
    return hosts


_ENGINE_PARSERS = {
    "db_path": lambda v, k: str(v),
    "sweep_multiplier": lambda v, k: _parse_number(v, k),
    "sweep_probability": lambda v, k: _parse_number(v, k),
    "max_cache_entries": _parse_optional_int,
    "default_ttl": parse_duration,
    "drain_interval": parse_duration,
    "max_attempts": _parse_optional_int,
    "monitor_connectivity": _parse_bool,
    "connectivity_hosts": _parse_hosts,
    "connectivity_timeout": parse_duration,
    "check_interval_online": parse_duration,
    "check_interval_offline": parse_duration,
    "log_level": lambda v, k: str(v).upper(),
    "log_to_file": _parse_bool,
}


def _parse_scopes(value: Any, key: str) -> List[Optional[str]]:
    items = value.split(",") if isinstance(value, str) else list(value)
    scopes = [str(s).strip() or None for s in items]
    return scopes or [None]


_CATEGORY_PARSERS = {
    "ttl": parse_duration,
    "interval": parse_duration,
    "priority": lambda v, k: str(v).strip().lower(),
    "scopes": _parse_scopes,
    "key_prefix": lambda v, k: str(v),
    "max_items": _parse_optional_int,
    "enabled": _parse_bool,
}


# =============================================================================
# LOADING
# =============================================================================

def apply_overrides(config: EngineConfig, data: Mapping[str, Any], source: str = "config") -> EngineConfig:
    """Apply ``{"engine": {...}, "categories": {name: {...}}}`` onto ``config``."""
    engine_values = dict(data.get("engine", {}))
    updates = {}
    for key, raw in engine_values.items():
        parser = _ENGINE_PARSERS.get(key)
        if parser is None:
            raise ConfigurationError(f"Unknown engine setting '{key}' in {source}", config_key=key)
        updates[key] = parser(raw, f"engine.{key}")

    categories = {name: replace(c) for name, c in config.categories.items()}
    for name, values in dict(data.get("categories", {})).items():
        if not isinstance(values, Mapping):
            raise ConfigurationError(f"[categories.{name}] must be a table", config_key=f"categories.{name}")
        parsed = {}
        for key, raw in values.items():
            parser = _CATEGORY_PARSERS.get(key)
            if parser is None:
                raise ConfigurationError(
                    f"Unknown setting '{key}' for category '{name}' in {source}",
                    config_key=f"categories.{name}.{key}",
                )
            parsed[key] = parser(raw, f"categories.{name}.{key}")

        if name in categories:
            categories[name] = replace(categories[name], **parsed)
        else:
            if "ttl" not in parsed or "interval" not in parsed:
                raise ConfigurationError(
                    f"New category '{name}' needs both ttl and interval",
                    config_key=f"categories.{name}",
                )
            categories[name] = CategoryConfig(**parsed)

    return replace(config, categories=categories, **updates)


def load_toml(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a TOML configuration file."""
    try:
        return toml.load(str(path))
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}", config_key="path")
    except (toml.TomlDecodeError, TypeError) as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}", config_key="path")


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Collect ``SYNC_CORE_*`` variables.

    Engine settings use ``SYNC_CORE_<SETTING>`` (e.g. ``SYNC_CORE_DRAIN_INTERVAL``);
    category settings use ``SYNC_CORE_<CATEGORY>__<SETTING>``
    (e.g. ``SYNC_CORE_DASHBOARD__TTL=15m``).
    """
    environ = os.environ if environ is None else environ
    engine: Dict[str, Any] = {}
    categories: Dict[str, Dict[str, Any]] = {}

    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX) or name == CONFIG_ENV_VAR:
            continue
        key = name[len(ENV_PREFIX):].lower()
        if "__" in key:
            category, _, setting = key.partition("__")
            categories.setdefault(category, {})[setting] = value
        elif key in _ENGINE_PARSERS:
            engine[key] = value
        else:
            logger.warning(f"Ignoring unknown environment setting {name}")

    return {"engine": engine, "categories": categories}


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> EngineConfig:
    """
    Build an EngineConfig from defaults, a TOML file and the environment.

    Args:
        path: TOML file; falls back to ``$SYNC_CORE_CONFIG`` then
            ``./sync_core.toml`` when present
        environ: Environment mapping (defaults to ``os.environ``)
        use_dotenv: Load a ``.env`` file into the environment first

    Raises:
        ConfigurationError: unreadable file or invalid values
    """
    if use_dotenv and environ is None:
        load_dotenv()
    env = os.environ if environ is None else environ

    config = EngineConfig()

    if path is None:
        env_path = env.get(CONFIG_ENV_VAR)
        if env_path:
            path = env_path
        elif DEFAULT_CONFIG_FILE.exists():
            path = DEFAULT_CONFIG_FILE

    if path is not None:
        config = apply_overrides(config, load_toml(path), source=str(path))
        logger.debug(f"Loaded configuration from {path}")

    config = apply_overrides(config, env_overrides(env), source="environment")
    return config.validate()
