"""Canonical filesystem paths for studio configuration."""

from __future__ import annotations

import os
from pathlib import Path

STUDIO_CONFIG_DIR = Path.home() / ".config" / "studio"

_env_config = os.environ.get("STUDIO_CONFIG_PATH")
DEFAULT_CONFIG_PATH = (
    Path(_env_config).expanduser() if _env_config else STUDIO_CONFIG_DIR / "config.toml"
)
