"""Configuration file handling for scopemark.

The project marker is a ``.scopemark`` file in the project root. It uses the
same INI codec as the index shards. Missing keys fall back to defaults; unknown
or invalid entries are reported and ignored.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from scopemark import codec
from scopemark.index import DEFAULT_KEY_LENGTH, MAX_KEY_LENGTH, MIN_KEY_LENGTH
from scopemark.storage import atomic_write

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".scopemark"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class Option:
    name: str
    default: Any
    validate: Callable[[Any], bool]
    description: str = ""


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool)


def _is_path(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _int_range(low: int, high: int | None = None) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        if isinstance(value, bool) or not isinstance(value, int):
            return False
        return value >= low and (high is None or value <= high)

    return check


def _one_of(*choices: str) -> Callable[[Any], bool]:
    return lambda value: isinstance(value, str) and value.upper() in choices


# Section order here is the order used when writing the default file
SECTIONS: dict[str, tuple[Option, ...]] = {
    "project": (
        Option("issue_dir", "issues", _is_path, "Directory (relative to the project root) holding issues"),
    ),
    "index": (
        Option(
            "key_length",
            DEFAULT_KEY_LENGTH,
            _int_range(MIN_KEY_LENGTH, MAX_KEY_LENGTH),
            f"Hex characters of the path hash used for shard names ({MIN_KEY_LENGTH}-{MAX_KEY_LENGTH})",
        ),
    ),
    "issue": (
        Option("description_length", 80, _int_range(1), "Characters of the description shown in listings"),
    ),
    "logging": (
        Option("enabled", False, _is_bool, "Write a log file"),
        Option("filepath", ".scopemark.log", _is_path, "Log file, relative to the project root"),
        Option("level", "INFO", _one_of(*LOG_LEVELS), "Log file level"),
    ),
}


@dataclass(frozen=True)
class Config:
    """Immutable snapshot of the active configuration."""

    issue_dir: str = "issues"
    key_length: int = DEFAULT_KEY_LENGTH
    description_length: int = 80
    log_enabled: bool = False
    log_filepath: str = ".scopemark.log"
    log_level: str = "INFO"

    @classmethod
    def from_sections(cls, values: dict[str, dict[str, Any]]) -> "Config":
        return cls(
            issue_dir=values["project"]["issue_dir"],
            key_length=values["index"]["key_length"],
            description_length=values["issue"]["description_length"],
            log_enabled=values["logging"]["enabled"],
            log_filepath=values["logging"]["filepath"],
            log_level=str(values["logging"]["level"]).upper(),
        )


def defaults() -> dict[str, dict[str, Any]]:
    return {section: {opt.name: opt.default for opt in options} for section, options in SECTIONS.items()}


def merge(user: dict[str, dict[str, Any]]) -> Config:
    """Overlay parsed user values on the defaults, reporting anything rejected."""
    values = defaults()
    for section, keys in user.items():
        options = {opt.name: opt for opt in SECTIONS.get(section, ())}
        if not options:
            logger.warning("Unknown config section: [%s]", section)
            continue
        for key, value in keys.items():
            opt = options.get(key)
            if opt is None:
                logger.warning("Unknown config key: [%s] %s", section, key)
            elif not opt.validate(value):
                logger.warning(
                    "Invalid value for [%s] %s: %r (using default: %r)", section, key, value, opt.default
                )
            else:
                values[section][key] = value
    return Config.from_sections(values)


def load_config(root: Path) -> Config:
    """Load <root>/.scopemark, falling back to defaults if it is missing."""
    path = root / CONFIG_FILENAME
    if not path.is_file():
        return Config()
    return merge(codec.parse_file(path))


def generate_default_file() -> str:
    """Template written by 'scopemark init': every option, commented out."""
    lines = ["# scopemark project configuration", ""]
    for section, options in SECTIONS.items():
        lines.append(f"[{section}]")
        for opt in options:
            if opt.description:
                lines.append(f"# {opt.description}")
            lines.append(f"# {opt.name} = {codec.format_value(opt.default)}")
        lines.append("")
    return "\n".join(lines)


def set_option(root: Path, section: str, key: str, value: Any) -> Config:
    """Persist one option to <root>/.scopemark and return the reloaded config.

    The file is rewritten through the codec, so comments are not preserved.
    """
    options = {opt.name: opt for opt in SECTIONS.get(section, ())}
    opt = options.get(key)
    if opt is None:
        raise KeyError(f"Unknown config key: [{section}] {key}")
    if not opt.validate(value):
        raise ValueError(f"Invalid value for [{section}] {key}: {value!r}")

    path = root / CONFIG_FILENAME
    sections = codec.parse_file(path) if path.is_file() else {}
    sections.setdefault(section, {})[key] = value
    atomic_write(path, codec.serialize(sections, order=SECTIONS))
    return load_config(root)
