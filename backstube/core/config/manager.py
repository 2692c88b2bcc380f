"""
ConfigManager: dot-notation access to tunable runtime parameters.

Purpose
-------
- Provide hierarchical, dot-notation access to tunables such as backoff
  constants, rate bucket sizes, handler pool size and timeouts.
- Back configuration with YAML files under `config/` merged over built-in
  defaults.
- Allow tests to override individual keys without touching files.

Key Design Decisions
--------------------
- YAML is the single source for **deployment values**; `_BUILTIN_DEFAULTS`
  keeps the runtime functional when no YAML is present.
- All YAML files found under `config/` are deep-merged in sorted path order,
  so a deployment can split tunables across files.
- Overrides (`set_override`) sit on top of everything and are cleared by
  `reset()`.

Dependencies
------------
- PyYAML for loading `config/*.yaml`
- `backstube.core.logging.logger.get_logger`
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional

import yaml

from backstube.core.config.errors import ConfigInitializationError
from backstube.core.logging.logger import get_logger

logger = get_logger(__name__)

_MISSING = object()

_BUILTIN_DEFAULTS: Dict[str, Any] = {
    "gateway": {
        "hello_timeout_seconds": 20.0,
        "backoff": {
            "base_seconds": 1.0,
            "max_seconds": 60.0,
            "jitter_ratio": 0.1,
        },
        "send_bucket": {"limit": 120, "period_seconds": 60.0},
        "heartbeat_reserve": 3,
        "identify_bucket": {"limit": 1, "period_seconds": 5.0},
    },
    "http": {
        "max_retries": 5,
        "request_timeout_seconds": 30.0,
        "global_bucket": {"limit": 50, "period_seconds": 1.0},
        "default_route_bucket": {"limit": 5, "period_seconds": 5.0},
        "route_bucket_idle_seconds": 300.0,
    },
    "dispatcher": {
        "pool_size": 8,
        "queue_size": 1000,
        "handler_timeout_seconds": 30.0,
        "drain_timeout_seconds": 10.0,
    },
    "runtime": {
        "shutdown_grace_seconds": 5.0,
        "health_check_interval_seconds": 60,
        "slow_heartbeat_latency_ms": 1000.0,
    },
    "voice": {
        "max_channels_per_kind": 6,
        "channel_name_prefix": "\U0001f50avoice",
    },
    "moderation": {
        "slowmode_max_seconds": 21600,
    },
}


@dataclass(slots=True)
class ConfigManagerMetrics:
    gets: int = 0
    misses: int = 0
    overrides: int = 0
    yaml_files_loaded: int = 0


class ConfigManager:
    """
    Tunable configuration with YAML backing and test overrides.

    Examples
    --------
    >>> ConfigManager.initialize()
    >>> ConfigManager.get("gateway.backoff.base_seconds", 1.0)
    1.0
    """

    _defaults: Dict[str, Any] = {}
    _overrides: Dict[str, Any] = {}
    _initialized: bool = False
    _config_dir: Path = Path("config")
    _metrics: ConfigManagerMetrics = ConfigManagerMetrics()

    # =========================================================================
    # YAML LOADING & DEFAULTS
    # =========================================================================

    @staticmethod
    def _deep_merge_dict(
        target: MutableMapping[str, Any],
        source: MutableMapping[str, Any],
    ) -> None:
        """Recursively merge `source` into `target` (in-place)."""
        for key, value in source.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                ConfigManager._deep_merge_dict(target[key], value)  # type: ignore[index]
            else:
                target[key] = value

    @classmethod
    def _load_yaml_configs(cls, config_dir: Path) -> int:
        """
        Recursively load all YAML config files from `config_dir` into `_defaults`.

        Returns the number of files merged.
        """
        if not config_dir.exists():
            logger.warning(
                "Config directory not found; using built-in defaults only",
                extra={"config_dir": str(config_dir)},
            )
            return 0

        yaml_files = sorted(
            list(config_dir.rglob("*.yaml")) + list(config_dir.rglob("*.yml"))
        )
        loaded_count = 0

        for yaml_file in yaml_files:
            try:
                with yaml_file.open("r", encoding="utf-8") as handle:
                    data = yaml.safe_load(handle)
            except (OSError, yaml.YAMLError) as exc:
                raise ConfigInitializationError(
                    f"Failed to load YAML config {yaml_file}: {exc}"
                ) from exc

            if isinstance(data, dict):
                cls._deep_merge_dict(cls._defaults, data)
                loaded_count += 1
                logger.debug(
                    "Loaded YAML config",
                    extra={"file": str(yaml_file.relative_to(config_dir))},
                )
            elif data is not None:
                logger.warning(
                    "Ignoring non-dict YAML root object",
                    extra={
                        "file": str(yaml_file.relative_to(config_dir)),
                        "root_type": type(data).__name__,
                    },
                )

        return loaded_count

    # =========================================================================
    # INITIALIZATION
    # =========================================================================

    @classmethod
    def initialize(cls, config_dir: Optional[Path] = None) -> None:
        """
        Load built-in defaults and YAML files (idempotent).

        Raises
        ------
        ConfigInitializationError
            If a YAML file exists but cannot be parsed.
        """
        if cls._initialized:
            return

        if config_dir is not None:
            cls._config_dir = Path(config_dir)

        cls._defaults = copy.deepcopy(_BUILTIN_DEFAULTS)
        loaded = cls._load_yaml_configs(cls._config_dir)
        cls._metrics.yaml_files_loaded = loaded
        cls._initialized = True

        logger.info(
            "ConfigManager initialized",
            extra={
                "yaml_file_count": loaded,
                "top_level_keys": sorted(cls._defaults.keys()),
            },
        )

    @classmethod
    def _resolve(cls, source: Dict[str, Any], key: str) -> Any:
        value: Any = source
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return _MISSING
            value = value[part]
        return value

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Retrieve a configuration value by dot-notation path.

        Examples
        --------
        >>> ConfigManager.get("dispatcher.pool_size", 8)
        >>> ConfigManager.get("http.global_bucket.limit")
        """
        cls._metrics.gets += 1

        if key in cls._overrides:
            return cls._overrides[key]

        if not cls._initialized:
            # Lazy bootstrap for library use without an explicit entry point
            cls.initialize()

        value = cls._resolve(cls._defaults, key)
        if value is _MISSING or value is None:
            cls._metrics.misses += 1
            return default
        return value

    @classmethod
    def set_override(cls, key: str, value: Any) -> None:
        """Pin `key` to `value` until `reset()`; used by tests."""
        cls._overrides[key] = value
        cls._metrics.overrides += 1

    @classmethod
    def reset(cls) -> None:
        """
        Drop overrides and loaded values; the next `get` reloads from disk.

        Intended for testing.
        """
        cls._defaults = {}
        cls._overrides = {}
        cls._initialized = False
        cls._metrics = ConfigManagerMetrics()
        cls._config_dir = Path("config")

    @classmethod
    def health_snapshot(cls) -> Dict[str, Any]:
        return {
            "initialized": cls._initialized,
            "config_dir": str(cls._config_dir),
            "yaml_files_loaded": cls._metrics.yaml_files_loaded,
            "overrides": len(cls._overrides),
            "gets": cls._metrics.gets,
            "misses": cls._metrics.misses,
        }


__all__ = ["ConfigManager", "ConfigManagerMetrics"]
