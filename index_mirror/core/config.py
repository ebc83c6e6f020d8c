"""
Loading of the mirror configuration file (config.toml).
"""
from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from index_mirror.domain.errors import ConfigError
from index_mirror.domain.models import MirrorConfig

CONFIG_ENV_VAR = "INDEX_MIRROR_CONFIG"
DEFAULT_CONFIG_PATH = Path("config.toml")


def get_config_path(path: Optional[Path] = None) -> Path:
    """
    Determine the configuration file path.

    Priority:
    1. Explicit path argument (e.g. from the command line)
    2. Environment variable INDEX_MIRROR_CONFIG
    3. 'config.toml' in the working directory
    """
    if path is not None:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def load_config(path: Optional[Path] = None) -> MirrorConfig:
    config_path = get_config_path(path)
    if not config_path.is_file():
        raise ConfigError(f"Configuration file {config_path} does not exist")

    try:
        raw = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to parse {config_path}: {e}") from e

    try:
        return MirrorConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
