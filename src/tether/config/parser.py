"""Load, validate, and resolve tether.yaml configuration."""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from tether.config.models import TetherConfig

DEFAULT_CONFIG_NAME = "tether.yaml"

#: Env var overriding ``generator.binary``.
GENERATOR_PATH_ENV = "TETHER_GENERATOR_PATH"

#: Env var overriding ``generator.additional_args`` (shell-split).
ADDITIONAL_ARGS_ENV = "TETHER_ADDITIONAL_ARGS"


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None) -> TetherConfig:
    """Load and validate a tether.yaml file.

    Args:
        path: Explicit config file path. If None, looks for
              tether.yaml in the current directory and falls back to
              defaults when there is none.

    Returns:
        A validated TetherConfig instance.

    Raises:
        ConfigError: On missing explicit file, bad YAML, or validation failure.
    """
    config_path = _resolve_path(path)
    if config_path is None:
        _load_env(Path.cwd())
        raw: dict[str, Any] = {}
    else:
        raw = _read_yaml(config_path)
        _load_env(config_path.parent)
    _apply_env_overrides(raw)
    return _validate(raw)


def _resolve_path(path: Path | None) -> Path | None:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = Path.cwd() / DEFAULT_CONFIG_NAME
    if not default.is_file():
        return None
    return default


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)

    return data


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _apply_env_overrides(raw: dict[str, Any]) -> None:
    binary = os.environ.get(GENERATOR_PATH_ENV, "").strip()
    extra = os.environ.get(ADDITIONAL_ARGS_ENV, "").strip()
    if not binary and not extra:
        return

    generator = raw.get("generator")
    if generator is None:
        generator = {}
        raw["generator"] = generator
    if not isinstance(generator, dict):
        return
    if binary:
        generator["binary"] = binary
    if extra:
        generator["additional_args"] = shlex.split(extra)


def _validate(raw: dict[str, Any]) -> TetherConfig:
    try:
        return TetherConfig.model_validate(raw)
    except ValidationError as exc:
        errors = exc.errors()
        parts: list[str] = []
        for err in errors:
            loc = " → ".join(str(s) for s in err["loc"])
            msg = err["msg"]
            if "field required" in msg.lower():
                msg = "This field is required"
            elif "input should be" in msg.lower():
                msg = f"Invalid value: {msg}"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Config validation failed:\n{joined}"
        raise ConfigError(msg) from exc
