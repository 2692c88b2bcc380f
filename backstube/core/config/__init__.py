"""
Configuration subsystem for Backstube Bot.

Static vs Tunable Configuration
-------------------------------
**Static (Config):**
- Loaded from environment variables (and `.env`) at startup
- Includes: Discord token, voice category, gateway/API URLs, log settings
- Validated by the entry point; changes require a restart

**Tunable (ConfigManager):**
- Loaded from YAML under `config/` merged over built-in defaults
- Includes: backoff constants, rate buckets, pool size, timeouts
- Overridable per key in tests

Usage Examples
--------------
```python
from backstube.core.config import Config, ConfigManager

token = Config.DISCORD_TOKEN
base = ConfigManager.get("gateway.backoff.base_seconds", 1.0)
```
"""

from backstube.core.config.config import Config, Environment
from backstube.core.config.errors import ConfigError, ConfigInitializationError
from backstube.core.config.manager import ConfigManager

__all__ = [
    "Config",
    "Environment",
    "ConfigManager",
    "ConfigError",
    "ConfigInitializationError",
]
