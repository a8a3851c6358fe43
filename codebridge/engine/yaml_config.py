"""YAML configuration loader.

Loads a single YAML file whose ``bot`` section overrides BotConfig.
When no YAML is provided, env vars work exactly as before.

Example YAML:
    bot:
      work_dir: ../my-repo          # relative to this file
      default_model: claude-opus-4-6
      fallback_model: claude-sonnet-4-20250514
      kill_grace_seconds: 5
      output_drain_seconds: 2
      shell: /bin/bash
      log_level: DEBUG
      log_file: ~/.codebridge/logs/bot.log
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

import yaml

from .config import BotConfig

logger = logging.getLogger(__name__)

_FLOAT_FIELDS = {"kill_grace_seconds", "output_drain_seconds"}
# Fields that cannot be None; a null in YAML keeps the base value.
_REQUIRED_FIELDS = _FLOAT_FIELDS | {
    "work_dir", "fallback_model", "permission_mode", "log_level",
}
_KNOWN_FIELDS = {f.name for f in dataclasses.fields(BotConfig)}


def load_yaml_config(
    path: str | Path,
    base: BotConfig | None = None,
) -> BotConfig:
    """Load a YAML config file and overlay it on *base* (or defaults).

    Keys outside BotConfig are ignored with a warning. A relative
    ``work_dir`` is resolved against the directory holding the file.
    """
    path = Path(path).expanduser()
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    bot_raw = raw.get("bot", {}) or {}
    if not isinstance(bot_raw, dict):
        raise ValueError(f"{path}: 'bot' section must be a mapping")

    overrides: dict[str, object] = {}
    for key, value in bot_raw.items():
        if key not in _KNOWN_FIELDS:
            logger.warning("load_yaml_config: ignoring unknown key bot.%s", key)
            continue
        if value is None and key in _REQUIRED_FIELDS:
            continue
        if key in _FLOAT_FIELDS:
            value = float(value)
        elif value is not None:
            value = str(value)
        overrides[key] = value

    work_dir = overrides.get("work_dir")
    if isinstance(work_dir, str):
        work_path = Path(work_dir).expanduser()
        if not work_path.is_absolute():
            work_path = (path.parent / work_path).resolve()
        overrides["work_dir"] = str(work_path)

    log_file = overrides.get("log_file")
    if isinstance(log_file, str):
        overrides["log_file"] = str(Path(log_file).expanduser())

    config = dataclasses.replace(base or BotConfig(), **overrides)
    logger.info(
        "Parsed YAML config %s, overrides: %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    return config
