"""Configuration loading: TOML file, then dotted overrides, then validation."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Mapping, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from toolrun.config.models import ToolrunConfig

logger = logging.getLogger(__name__)

SECTIONS = frozenset(ToolrunConfig.model_fields)


def config_search_paths(cwd: Optional[Path] = None, home: Optional[Path] = None) -> list[Path]:
    """Candidate config files, most specific first."""
    project = cwd or Path.cwd()
    home = home or Path.home()
    return [
        project / "toolrun.toml",
        project / ".toolrun" / "config.toml",
        home / ".config" / "toolrun" / "config.toml",
        home / ".toolrun" / "config.toml",
    ]


def find_config_file(cwd: Optional[Path] = None) -> Optional[Path]:
    return next((path for path in config_search_paths(cwd) if path.is_file()), None)


def read_toml(path: Path) -> dict[str, Any]:
    """Parse ``path``; syntax errors become ``ValueError`` naming the file."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def set_dotted(target: dict[str, Any], key: str, value: Any) -> None:
    """``set_dotted(d, "sandbox.enabled", False)`` sets ``d["sandbox"]["enabled"]``."""
    *parents, leaf = key.split(".")
    for part in parents:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[leaf] = value


def load_config_from_file(path: Path) -> ToolrunConfig:
    """Load a config file that must exist.

    Raises:
        FileNotFoundError: If ``path`` is missing.
        ValueError: If the file is not valid TOML.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    return load_config(path)


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ToolrunConfig:
    """Build a validated ``ToolrunConfig``.

    A missing ``config_path`` yields defaults. Unknown top-level tables are
    ignored with a warning. ``overrides`` use dotted keys and win over the
    file.

    Raises:
        ValueError: On invalid TOML.
        pydantic.ValidationError: On values the models reject.
    """
    data: dict[str, Any] = {}
    if config_path is not None and config_path.is_file():
        raw = read_toml(config_path)
        for section, value in raw.items():
            if section in SECTIONS:
                data[section] = value
            else:
                logger.warning("Ignoring unknown config section [%s] in %s", section, config_path)
        logger.debug("Loaded config from %s", config_path)

    for key, value in (overrides or {}).items():
        set_dotted(data, key, value)

    return ToolrunConfig.model_validate(data)
