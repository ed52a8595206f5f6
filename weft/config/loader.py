"""Load WeftConfig from a JSON file."""

from __future__ import annotations

import json
import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from weft.config.schema import WeftConfig

CONFIG_ENV_VAR = "WEFT_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.weft/config.json")


def resolve_config_path(path: Path | str | None = None) -> Path:
    if path is not None:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def load_config(path: Path | str | None = None) -> WeftConfig:
    """Read config from ``path``, ``$WEFT_CONFIG`` or ``~/.weft/config.json``.

    A missing file yields defaults. A file that exists but is not valid JSON
    or does not match the schema raises ``ValueError``.
    """
    config_path = resolve_config_path(path)
    if not config_path.exists():
        logger.debug("No config file at {}, using defaults", config_path)
        return WeftConfig()

    try:
        data = json.loads(config_path.read_text(encoding="utf-8") or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in config file {config_path}: {exc}") from exc

    try:
        config = WeftConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid config in {config_path}: {exc}") from exc

    logger.debug("Loaded config from {}", config_path)
    return config


def save_config(config: WeftConfig, path: Path | str | None = None) -> Path:
    config_path = resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    tmp = config_path.with_suffix(".tmp")
    tmp.write_text(json.dumps(config.model_dump(), indent=2), encoding="utf-8")
    tmp.rename(config_path)
    return config_path
