"""
Process-level settings for Backstube, read from the environment.

Everything here is fixed once the bot has started: credentials, endpoints,
the voice category and how logs are written. Gateway and REST tunables
(timeouts, buckets, backoff) live in YAML and are served by ConfigManager.

`.env` is loaded on import (python-dotenv) and `Config.load()` runs right
after, so attribute access never sees unset values. The entry point calls
`Config.validate()`, which raises ConfigurationError for missing
credentials and creates the logs directory.

Environment variables
---------------------
DISCORD_TOKEN       bot token (required)
VOICE_CATEGORY_ID   category holding the auto-scaled voice channels
GATEWAY_URL         gateway endpoint override; resolved over REST when unset
API_BASE_URL        REST base URL (https://discord.com/api/v10)
COMMAND_PREFIX      prefix for text commands ("!")
ENVIRONMENT         development | testing | staging | production
DEBUG               debug flag
LOG_LEVEL           root log level (INFO)
LOG_JSON            force JSON logs on/off; unset means "production only"
LOGS_DIR            directory for the rotating JSON log (<project>/logs)
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv

from backstube.core.exceptions import ConfigurationError

load_dotenv()

DEFAULT_API_BASE_URL = "https://discord.com/api/v10"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Environment(Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def from_string(cls, value: str) -> "Environment":
        """
        Case-insensitive lookup; unknown names fall back to DEVELOPMENT.

        >>> Environment.from_string("STAGING") is Environment.STAGING
        True
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            # Runs before setup_logging(), so this goes to the root logger
            logging.warning(f"Unknown ENVIRONMENT '{value}', treating as development")
            return cls.DEVELOPMENT


@dataclass
class ConfigLoadReport:
    """Where each setting came from during the last `Config.load()`."""

    sources: Dict[str, str] = field(default_factory=dict)
    validation_errors: Dict[str, str] = field(default_factory=dict)
    loaded_at: Optional[str] = None

    def record(self, key: str, source: str) -> None:
        self.sources[key] = source

    def reject(self, key: str, error: str) -> None:
        self.validation_errors[key] = error

    def as_dict(self) -> Dict[str, Any]:
        from_env = sorted(key for key, source in self.sources.items() if source == "env")
        return {
            "settings": len(self.sources),
            "from_env": from_env,
            "defaulted": sorted(set(self.sources) - set(from_env)),
            "rejected": sorted(self.validation_errors),
            "loaded_at": self.loaded_at,
        }


class Config:
    """
    Static settings, accessed as class attributes.

    >>> Config.DISCORD_TOKEN
    >>> Config.is_production()
    """

    _report: Optional[ConfigLoadReport] = None
    _validated: bool = False

    # Discord
    DISCORD_TOKEN: str = ""
    VOICE_CATEGORY_ID: Optional[int] = None
    GATEWAY_URL: Optional[str] = None
    API_BASE_URL: str = DEFAULT_API_BASE_URL
    COMMAND_PREFIX: str = "!"

    # Runtime environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: Optional[bool] = None

    PROJECT_ROOT = Path(__file__).resolve().parents[3]
    LOGS_DIR = PROJECT_ROOT / "logs"

    BOT_NAME: str = "Backstube"
    BOT_VERSION: str = "1.0.0"

    # =========================================================================
    # Environment Parsing
    # =========================================================================

    _TRUE_VALUES = frozenset({"true", "yes", "1", "on"})
    _FALSE_VALUES = frozenset({"false", "no", "0", "off"})

    @classmethod
    def _to_bool(cls, raw: str) -> bool:
        normalized = raw.strip().lower()
        if normalized in cls._TRUE_VALUES:
            return True
        if normalized in cls._FALSE_VALUES:
            return False
        raise ValueError("not a valid boolean")

    @staticmethod
    def _to_int(raw: str) -> int:
        try:
            return int(raw.strip())
        except ValueError:
            raise ValueError("not a valid integer") from None

    @classmethod
    def _env(
        cls,
        key: str,
        default: Any = None,
        parse: Optional[Callable[[str], Any]] = None,
        required: bool = False,
    ) -> Any:
        """
        Read one environment variable.

        Unset (or blank, for parsed values) yields `default`. A value `parse`
        rejects is recorded as a validation error and also yields `default`.
        `required` only records the absence; `validate()` is what raises.
        """
        report = cls._report or ConfigLoadReport()
        cls._report = report

        raw = os.environ.get(key)
        if raw is None or (parse is not None and not raw.strip()):
            if required:
                error = f"{key} is not set"
                logging.error(error)
                report.reject(key, error)
            report.record(key, "default")
            return default

        if parse is None:
            report.record(key, "env")
            return raw

        try:
            value = parse(raw)
        except ValueError as exc:
            error = f"{key}='{raw}' is {exc}, using {default!r}"
            logging.warning(error)
            report.reject(key, error)
            report.record(key, "default")
            return default

        report.record(key, "env")
        return value

    # =========================================================================
    # Loading & Validation
    # =========================================================================

    @classmethod
    def load(cls) -> None:
        """Re-read every setting from the environment (tests call this too)."""
        cls._report = ConfigLoadReport()

        cls.DISCORD_TOKEN = cls._env("DISCORD_TOKEN", "", required=True)
        cls.VOICE_CATEGORY_ID = cls._env("VOICE_CATEGORY_ID", parse=cls._to_int)
        cls.GATEWAY_URL = cls._env("GATEWAY_URL") or None
        cls.API_BASE_URL = cls._env("API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/")
        cls.COMMAND_PREFIX = cls._env("COMMAND_PREFIX", "!")

        cls.ENVIRONMENT = cls._env("ENVIRONMENT", "development")
        cls.DEBUG = cls._env("DEBUG", False, parse=cls._to_bool)
        cls.LOG_LEVEL = cls._env("LOG_LEVEL", "INFO")
        cls.LOG_JSON = cls._env("LOG_JSON", parse=cls._to_bool)

        logs_dir = cls._env("LOGS_DIR")
        if logs_dir:
            cls.LOGS_DIR = Path(logs_dir)

        cls._report.loaded_at = datetime.now(timezone.utc).isoformat()

    @classmethod
    def validate(cls) -> None:
        """
        Reload and check the settings the bot cannot start without.

        Raises
        ------
        ConfigurationError
            Missing DISCORD_TOKEN or an empty COMMAND_PREFIX.
        """
        if cls._validated:
            return

        logger = logging.getLogger(__name__)
        cls.load()

        if not cls.DISCORD_TOKEN:
            raise ConfigurationError("DISCORD_TOKEN", "environment variable is required")
        if not cls.COMMAND_PREFIX:
            raise ConfigurationError("COMMAND_PREFIX", "must not be empty")

        if cls.LOG_LEVEL.upper() not in LOG_LEVELS:
            logger.warning(f"LOG_LEVEL '{cls.LOG_LEVEL}' is not a level name, using INFO")
            cls.LOG_LEVEL = "INFO"

        if cls.VOICE_CATEGORY_ID is None:
            logger.warning("VOICE_CATEGORY_ID not set; voice channel management disabled")

        if cls.is_production() and cls.DEBUG:
            logger.warning("DEBUG is on in production")

        cls.LOGS_DIR.mkdir(parents=True, exist_ok=True)
        cls._validated = True

        report = cls._report
        if report is not None:
            logger.info("Configuration loaded", extra={"config": report.as_dict()})
            if report.validation_errors:
                logger.warning(
                    "Configuration values rejected",
                    extra={"rejected": report.validation_errors},
                )

    @classmethod
    def is_production(cls) -> bool:
        return Environment.from_string(cls.ENVIRONMENT) is Environment.PRODUCTION

    @classmethod
    def get_metrics(cls) -> Optional[ConfigLoadReport]:
        return cls._report

    @classmethod
    def get_config_summary(cls) -> Dict[str, Any]:
        """Settings safe to log; the token is reported only as present or not."""
        return {
            "bot": f"{cls.BOT_NAME}/{cls.BOT_VERSION}",
            "environment": cls.ENVIRONMENT,
            "debug": cls.DEBUG,
            "log_level": cls.LOG_LEVEL,
            "api_base_url": cls.API_BASE_URL,
            "gateway_url_override": cls.GATEWAY_URL is not None,
            "voice_category_id": cls.VOICE_CATEGORY_ID,
            "command_prefix": cls.COMMAND_PREFIX,
            "discord_token_set": bool(cls.DISCORD_TOKEN),
        }


Config.load()
