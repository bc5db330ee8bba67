"""Watch configuration values and YAML loading utilities."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import yaml # type: ignore


logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS: Tuple[str, ...] = ("md",)
DEFAULT_POLL_INTERVAL = 5.0


class ConfigError(Exception):
    """Raised when the watch configuration is missing or invalid."""


@dataclass(frozen=True)
class WatchConfig:
    """Directories to watch and how to filter what happens inside them."""

    dirs: Tuple[str, ...]
    cmds: Tuple[str, ...]
    pattern: str
    recursive: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "dirs", tuple(self.dirs))
        object.__setattr__(self, "cmds", tuple(self.cmds))

        if not self.dirs:
            raise ConfigError("at least one directory to watch is required")
        if not self.cmds:
            raise ConfigError("at least one command is required")
        try:
            re.compile(self.pattern)
        except re.error as exc:
            raise ConfigError(f"invalid file name pattern {self.pattern!r}: {exc}") from exc
        if self.poll_interval <= 0:
            raise ConfigError("poll interval must be positive")


@dataclass
class FileSettings:
    """Settings read from a YAML configuration file; unset keys stay ``None``."""

    dirs: List[str] = field(default_factory=list)
    cmds: List[str] = field(default_factory=list)
    extensions: Optional[List[str]] = None
    recursive: Optional[bool] = None
    poll_interval: Optional[float] = None


def build_pattern(extensions: Sequence[str]) -> str:
    """Return a regex admitting file names that end in one of *extensions*."""

    return ".+\\.(%s)$" % "|".join(extensions)


def build_config(
    dirs: Sequence[str],
    cmds: Sequence[str],
    extensions: Optional[Sequence[str]] = None,
    *,
    recursive: bool = False,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> WatchConfig:
    """Assemble a validated :class:`WatchConfig` from user input."""

    pattern = build_pattern(extensions or DEFAULT_EXTENSIONS)
    return WatchConfig(
        dirs=tuple(dirs),
        cmds=tuple(cmds),
        pattern=pattern,
        recursive=recursive,
        poll_interval=poll_interval,
    )


def load_config(path: Path) -> FileSettings:
    """Load and validate a YAML configuration file."""

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse YAML configuration: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    dirs = [_resolve_dir(item, config_path=path) for item in _ensure_str_list(data.get("dirs"), "dirs")]
    cmds = _ensure_str_list(data.get("cmds"), "cmds")

    extensions: Optional[List[str]] = None
    if data.get("extensions") is not None:
        extensions = _ensure_str_list(data["extensions"], "extensions")
        if not extensions:
            raise ConfigError("extensions must not be empty")

    recursive = data.get("recursive")
    if recursive is not None and not isinstance(recursive, bool):
        raise ConfigError("recursive must be a boolean")

    settings = FileSettings(
        dirs=dirs,
        cmds=cmds,
        extensions=extensions,
        recursive=recursive,
        poll_interval=_parse_poll_interval(data.get("poll_interval")),
    )
    logger.info(
        "Loaded %s directories and %s commands from %s",
        len(settings.dirs),
        len(settings.cmds),
        path,
    )
    return settings


def _resolve_dir(value: str, *, config_path: Path) -> str:
    directory = Path(value).expanduser()
    if not directory.is_absolute():
        directory = config_path.parent / directory
    return str(directory)


def _parse_poll_interval(raw: Any) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ConfigError("poll_interval must be numeric")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError("poll_interval must be numeric") from exc
    if value <= 0:
        raise ConfigError("poll_interval must be positive")
    return value


def _ensure_str_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be a list of strings")
    items: List[str] = []
    for elem in value:
        if not isinstance(elem, str):
            raise ConfigError(f"{field_name} must contain only strings")
        items.append(elem)
    return items
