"""API key loading for the judge and generator providers.

Keys are read with this priority:
  1. Environment variables (highest, already set in the shell)
  2. ~/.lessonrefine/keys.env
  3. .env in the current directory
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

LESSONREFINE_HOME = Path.home() / ".lessonrefine"
KEYS_FILE = LESSONREFINE_HOME / "keys.env"


def load_keys_env(extra_files: list[Path] | None = None) -> list[str]:
    """Load API keys from keys.env files into os.environ.

    Existing environment variables are never overwritten, and earlier files
    win over later ones.

    Returns:
        Names of the variables that were set.
    """
    files = [KEYS_FILE, Path.cwd() / ".env", *(extra_files or [])]
    loaded: list[str] = []
    for env_file in files:
        if env_file.is_file():
            loaded.extend(_load_env_file(env_file))
    return loaded


def missing_keys(env_vars: list[str]) -> list[str]:
    """Return the variables in ``env_vars`` that are unset or empty."""
    return sorted({v for v in env_vars if v and not os.environ.get(v)})


def _load_env_file(path: Path) -> list[str]:
    """Parse a KEY=VALUE file and set the vars that aren't already set."""
    loaded: list[str] = []
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and not os.environ.get(key):
                os.environ[key] = value
                loaded.append(key)
                logger.debug("Loaded %s from %s", key, path)
    except OSError:
        logger.debug("Could not read %s", path)
    return loaded
