"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Deep merging of system, user and project layers
- Environment variable overrides
- Conversion from dict to the typed Config dataclass
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from turnloop.config.paths import get_config_paths
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

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("turnloop.config")

_cached_config: Config | None = None

_reload_callbacks: list[Callable[[Config], None]] = []

_KNOWN_SECTIONS = {
    "llm",
    "session",
    "permission",
    "store",
    "events",
    "pool",
    "sandbox",
    "scheduler",
    "logging",
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning an empty dict if missing or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge override into a copy of base.

    Nested dicts merge recursively, lists and scalars are replaced, and a
    None in override leaves the base value alone.
    """
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = deep_merge(current, value)
        else:
            result[key] = value
    return result


def merge_configs(*configs: dict[str, Any]) -> dict[str, Any]:
    """Merge config layers in order; later layers win."""
    merged: dict[str, Any] = {}
    for layer in configs:
        if layer:
            merged = deep_merge(merged, layer)
    return merged


def env_overrides() -> dict[str, Any]:
    """Build a config layer from environment variables.

    API keys are not read here; use fetch_secret() for those.
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("TURNLOOP_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    model = os.environ.get("TURNLOOP_MODEL")
    if model:
        overrides.setdefault("llm", {})["model"] = model

    store_dir = os.environ.get("TURNLOOP_STORE_DIR")
    if store_dir:
        overrides.setdefault("store", {})["base_dir"] = store_dir

    return overrides


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert a merged dict into the typed Config."""
    llm_data = _section(data, "llm")
    llm_defaults = LLMConfig()
    llm = LLMConfig(
        model=llm_data.get("model", llm_defaults.model),
        api_base=llm_data.get("api_base"),
        api_key_env=llm_data.get("api_key_env"),
        max_tokens=int(llm_data.get("max_tokens", llm_defaults.max_tokens)),
        temperature=float(llm_data.get("temperature", llm_defaults.temperature)),
    )

    session_data = _section(data, "session")
    session = SessionConfig(
        system=session_data.get("system"),
        max_concurrency=int(session_data.get("max_concurrency", 3)),
        stream=bool(session_data.get("stream", False)),
    )

    permission = PermissionConfig.from_dict(_section(data, "permission"))

    store_data = _section(data, "store")
    store_defaults = StoreConfig()
    store = StoreConfig(
        base_dir=store_data.get("base_dir", store_defaults.base_dir),
        event_flush_interval=float(
            store_data.get("event_flush_interval", store_defaults.event_flush_interval)
        ),
        sweep_on_start=bool(store_data.get("sweep_on_start", True)),
    )

    events = EventsConfig(
        memory_cap=int(_section(data, "events").get("memory_cap", 10_000)),
    )
    pool = PoolConfig(
        max_sessions=int(_section(data, "pool").get("max_sessions", 50)),
    )

    sandbox_data = _section(data, "sandbox")
    sandbox = SandboxConfig(
        work_dir=sandbox_data.get("work_dir"),
        enforce_boundary=bool(sandbox_data.get("enforce_boundary", True)),
        allow_paths=[p for p in sandbox_data.get("allow_paths", []) if isinstance(p, str)],
        exec_timeout_ms=int(sandbox_data.get("exec_timeout_ms", 120_000)),
        watch_poll_interval=float(sandbox_data.get("watch_poll_interval", 1.0)),
    )

    scheduler = SchedulerConfig(
        drift_tolerance_ms=int(_section(data, "scheduler").get("drift_tolerance_ms", 5_000)),
    )

    log_data = _section(data, "logging")
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    extra = {k: v for k, v in data.items() if k not in _KNOWN_SECTIONS}

    return Config(
        llm=llm,
        session=session,
        permission=permission,
        store=store,
        events=events,
        pool=pool,
        sandbox=sandbox,
        scheduler=scheduler,
        logging=logging_config,
        extra=extra,
    )


def load_config(project_root: str | None = None, reload: bool = False) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Project config (<project_root>/.turnloop/config.yaml)
    3. User config
    4. System config

    Only the global config (no project_root) is cached.
    """
    global _cached_config

    if _cached_config is not None and not reload and project_root is None:
        return _cached_config

    layers: list[dict[str, Any]] = []
    for path in get_config_paths(project_root):
        layer = load_yaml_file(path)
        if layer:
            _log.debug("Loaded config from %s", path)
            layers.append(layer)

    env_layer = env_overrides()
    if env_layer:
        layers.append(env_layer)

    config = dict_to_config(merge_configs(*layers))

    if project_root is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Return the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Drop the cached config (used by tests)."""
    global _cached_config
    _cached_config = None


def reload_config(project_root: str | None = None) -> Config:
    """Reload config from disk and notify registered callbacks."""
    config = load_config(project_root=project_root, reload=True)

    for callback in list(_reload_callbacks):
        try:
            callback(config)
        except Exception as e:
            _log.warning("Config reload callback error: %s", e)

    return config


def on_config_reload(callback: Callable[[Config], None]) -> Callable[[], None]:
    """Register a reload callback; returns a function that unregisters it."""
    _reload_callbacks.append(callback)

    def unregister() -> None:
        if callback in _reload_callbacks:
            _reload_callbacks.remove(callback)

    return unregister
