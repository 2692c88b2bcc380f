"""
Configuration error hierarchy for Backstube Bot.

Exception Hierarchy
-------------------
ConfigError (base)
└── ConfigInitializationError (tunables could not be loaded)

Missing or rejected credentials are not in this hierarchy; they raise
`backstube.core.exceptions.ConfigurationError`, which the runtime treats as
fatal.
"""


class ConfigError(Exception):
    """
    Base exception for all configuration-loading errors.

    Example
    -------
    >>> try:
    ...     ConfigManager.initialize()
    ... except ConfigError as e:
    ...     logger.error(f"Config load failed: {e}")
    """
    pass


class ConfigInitializationError(ConfigError):
    """
    Raised when ConfigManager initialization fails.

    This exception is raised when a YAML file under `config/` exists but
    cannot be read or parsed. The entry point treats it as fatal.
    """
    pass


__all__ = [
    "ConfigError",
    "ConfigInitializationError",
]
