"""INI-style section codec shared by issue records and index shards.

The format is deliberately small:

    # comment
    [section]
    key = value
    spaced = "quoted value"
    list[] = first
    list[] = second

Values are coerced after extraction, quoted or not: ``true``/``false`` become
booleans and plain decimal numbers become ``int``/``float``. A string that
looks like a boolean or a number therefore does not survive a round trip as a
string, and a string containing ``"`` is truncated at the quote on re-parse.
"""

import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from scopemark.errors import StorageIOError

Sections = dict[str, dict[str, Any]]

AGGREGATE_SUFFIX = "[]"

_SECTION_RE = re.compile(r"^\[(.+)\]")
_KEY_VALUE_RE = re.compile(r"^(\S+)\s*=\s*(.*)$")
_INT_RE = re.compile(r"^[0-9]+$")
_FLOAT_RE = re.compile(r"^[0-9]+\.[0-9]+$")
_WHITESPACE_RE = re.compile(r"\s")


def coerce(value: str) -> bool | int | float | str:
    """Convert a raw string to a boolean or number when it looks like one."""
    if value == "true":
        return True
    if value == "false":
        return False
    if _INT_RE.match(value):
        return int(value)
    if _FLOAT_RE.match(value):
        return float(value)
    return value


def _extract_value(rhs: str) -> bool | int | float | str | None:
    """Extract the value from everything after the '='."""
    rhs = rhs.lstrip()
    if not rhs:
        return None

    if rhs.startswith('"'):
        closing = rhs.find('"', 1)
        if closing == -1:
            return coerce(rhs[1:])
        return coerce(rhs[1:closing])

    # Anything after the first token is an implicit comment
    return coerce(rhs.split(None, 1)[0])


def parse(text: str) -> Sections:
    """Parse INI text into a section -> key -> value mapping."""
    sections: Sections = {}
    current: dict[str, Any] | None = None

    for line in text.splitlines():
        trimmed = line.lstrip()
        if not trimmed or trimmed.startswith("#"):
            continue

        header = _SECTION_RE.match(trimmed)
        if header:
            current = sections.setdefault(header.group(1), {})
            continue

        if current is None:
            continue

        match = _KEY_VALUE_RE.match(trimmed)
        if not match:
            continue
        key, rhs = match.groups()
        value = _extract_value(rhs)
        if value is None:
            continue

        if key.endswith(AGGREGATE_SUFFIX):
            current.setdefault(key, []).append(value)
        else:
            current[key] = value

    return sections


def format_value(value: Any) -> str:
    """Render a single value in its INI form."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value)
    if text == "" or _WHITESPACE_RE.search(text):
        return f'"{text}"'
    return text


def _ordered_names(sections: Sections, order: Iterable[str] | None) -> list[str]:
    names: list[str] = []
    if order:
        for name in order:
            if name in sections and name not in names:
                names.append(name)
    names.extend(sorted(name for name in sections if name not in names))
    return names


def serialize(sections: Sections | None, order: Iterable[str] | None = None) -> str:
    """Serialize sections to INI text.

    Sections named in ``order`` come first, in that order; the rest follow
    alphabetically. Keys are emitted alphabetically and list values produce
    one line per element.
    """
    if not sections:
        return ""

    blocks = []
    for name in _ordered_names(sections, order):
        lines = [f"[{name}]"]
        section = sections[name]
        for key in sorted(section):
            value = section[key]
            if value is None:
                continue
            if isinstance(value, list):
                lines.extend(f"{key} = {format_value(item)}" for item in value)
            else:
                lines.append(f"{key} = {format_value(value)}")
        blocks.append("\n".join(lines))

    return "\n\n".join(blocks) + "\n"


def parse_file(path: Path) -> Sections:
    """Read and parse an INI file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StorageIOError(f"Failed to read {path}: {e}") from e
    return parse(text)
