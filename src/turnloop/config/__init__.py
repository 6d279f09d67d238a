"""Configuration management for turnloop.

Hierarchical YAML configuration:
- System-level config (/etc/turnloop/ or %PROGRAMDATA%)
- User-level config (~/.config/turnloop/, ~/.turnloop/ or %APPDATA%)
- Project-level config (<root>/.turnloop/)
- Environment variable overrides (highest priority)

Example usage:
    from turnloop.config import load_config

    config = load_config(project_root="/path/to/project")
    print(config.llm.model)
"""

from turnloop.config.loader import (
    deep_merge,
    get_config,
    load_config,
    merge_configs,
    on_config_reload,
    reload_config,
    reset_config,
)
from turnloop.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
    resolve_store_dir,
)
from turnloop.config.schema import (
    Config,
    EventsConfig,
    LLMConfig,
    LoggingConfig,
    PermissionConfig,
    PoolConfig,
    SandboxConfig,
    SchedulerConfig,
    SessionConfig,
    StoreConfig,
)
from turnloop.config.secrets import clear_secret_cache, fetch_secret

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "reset_config",
    "on_config_reload",
    "deep_merge",
    "merge_configs",
    # Schema types
    "EventsConfig",
    "LLMConfig",
    "LoggingConfig",
    "PermissionConfig",
    "PoolConfig",
    "SandboxConfig",
    "SchedulerConfig",
    "SessionConfig",
    "StoreConfig",
    # Secrets
    "fetch_secret",
    "clear_secret_cache",
    # Paths
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "resolve_store_dir",
    "get_project_config_path",
]
