"""Secret lookup for provider credentials.

Resolution order for a key:
1. Environment variables
2. ``.env.secrets`` in the working directory
3. ``.env.secrets`` next to the user config file

Files are parsed with python-dotenv and cached until clear_secret_cache().
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import dotenv_values

from turnloop.config.paths import get_user_config_path

SECRETS_FILE = ".env.secrets"


def get_secrets_paths() -> list[Path]:
    """Candidate secrets files, lowest priority first (user, working dir)."""
    paths: list[Path] = []
    user_config = get_user_config_path()
    if user_config is not None:
        paths.append(user_config.parent / SECRETS_FILE)
    paths.append(Path.cwd() / SECRETS_FILE)
    return paths


@lru_cache(maxsize=8)
def _load_secrets(paths: tuple[Path, ...]) -> dict[str, str | None]:
    merged: dict[str, str | None] = {}
    for path in paths:
        if path.is_file():
            merged.update(dotenv_values(path))
    return merged


def fetch_secret(
    key: str,
    default: str | None = None,
    secrets_path: Path | None = None,
) -> str | None:
    """Fetch a secret such as an API key.

    Args:
        key: Variable name, e.g. "OPENAI_API_KEY".
        default: Returned when no source defines the key.
        secrets_path: Read only this file instead of the default locations.
    """
    value = os.environ.get(key)
    if value is not None:
        return value

    paths = (secrets_path,) if secrets_path else tuple(get_secrets_paths())
    found = _load_secrets(paths).get(key)
    return found if found is not None else default


def clear_secret_cache() -> None:
    _load_secrets.cache_clear()
