"""Layered YAML/env config loader for flotilla.

Precedence, lowest to highest: built-in defaults, user file
(``~/.flotilla/config.yaml``), project file (``<root>/.flotilla/config.yaml``),
environment (``FLOTILLA_*``, after loading ``<root>/.env``), explicit overrides.
Each layer is applied per key within a section; lists are replaced.
"""

from __future__ import annotations

import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from flotilla.config.schema import FlotillaConfig
from flotilla.errors import ConfigurationError
from flotilla.paths import PROJECT_DIR, HavenLayout, default_haven_dir, get_user_config_dir

log = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"

_SECTIONS = ("agent", "git", "store", "sandbox", "bridge", "paths", "ids")

# env var -> (section, key, kind)
_ENV_MAP: dict[str, tuple[str, str, str]] = {
    "FLOTILLA_SANDBOX": ("agent", "sandbox", "bool"),
    "FLOTILLA_SANDBOX_DEBUG": ("agent", "debug_sandbox", "bool"),
    "FLOTILLA_HAVEN_DIR": ("paths", "haven_dir", "str"),
    "FLOTILLA_MAIN_BRANCH": ("git", "main_branch", "str"),
}


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML config file, returning empty dict if not found."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}
    except (yaml.YAMLError, OSError) as exc:
        log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}


def load_config(
    project_root: str | Path,
    *,
    overrides: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    user_dir: Path | None = None,
) -> FlotillaConfig:
    """Build a config for ``project_root`` from every source in precedence order."""
    root = Path(project_root).resolve()
    config = FlotillaConfig(project_root=str(root))

    _apply_layer(config, load_yaml_config((user_dir or get_user_config_dir()) / CONFIG_FILE))
    _apply_layer(config, load_yaml_config(root / PROJECT_DIR / CONFIG_FILE))

    if env is None:
        load_dotenv(root / ".env", override=False)
        env = os.environ
    _apply_layer(config, _env_layer(env))

    if overrides:
        _apply_layer(config, _dotted_layer(overrides))
    return config


def resolve_layout(config: FlotillaConfig) -> HavenLayout:
    root = Path(config.project_root)
    haven = Path(config.paths.haven_dir).expanduser() if config.paths.haven_dir else default_haven_dir(root)
    worktrees = Path(config.paths.worktrees_dir).expanduser() if config.paths.worktrees_dir else None
    return HavenLayout(root=haven, worktrees_override=worktrees)


def _apply_layer(config: FlotillaConfig, raw: Mapping[str, Any]) -> None:
    for name in _SECTIONS:
        section_raw = raw.get(name)
        if not isinstance(section_raw, dict):
            continue
        section = getattr(config, name)
        for key, value in _pick(section_raw, type(section)).items():
            setattr(section, key, value)


def _env_layer(env: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    layer: dict[str, dict[str, Any]] = {}
    for var, (section, key, kind) in _ENV_MAP.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        layer.setdefault(section, {})[key] = _parse_bool(value) if kind == "bool" else value
    return layer


def _dotted_layer(overrides: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    layer: dict[str, dict[str, Any]] = {}
    for dotted, value in overrides.items():
        section, _, key = dotted.partition(".")
        if section not in _SECTIONS or not key:
            raise ConfigurationError(f"Unknown config key: {dotted}")
        section_type = type(getattr(FlotillaConfig(), section))
        if key not in {f.name for f in fields(section_type)}:
            raise ConfigurationError(f"Unknown config key: {dotted}")
        layer.setdefault(section, {})[key] = value
    return layer


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
