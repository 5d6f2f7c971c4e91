"""Data models for scopemark issues."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from scopemark.errors import InvalidFormatError

ID_FORMAT = "%Y%m%d_%H%M%S"
ID_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})$")

DESCRIPTION_BLOCK = "Issue Description"
RESOLUTION_BLOCK = "Issue Resolution"
RESERVED_LABELS = frozenset({"Version", "Status", "Location"})


class Status(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"

    @property
    def index_value(self) -> str:
        """Lower-case form stored in index shards."""
        return self.value.lower()

    @classmethod
    def from_index_value(cls, value: str) -> "Status | None":
        for status in cls:
            if status.index_value == value:
                return status
        return None


@dataclass(frozen=True)
class ScopeReference:
    """A named code scope, e.g. ``function_definition|calculate``."""

    kind: str
    symbol: str

    def __str__(self) -> str:
        return f"{self.kind}|{self.symbol}"

    @classmethod
    def parse(cls, text: str) -> "ScopeReference":
        """Split ``kind|symbol`` on the first pipe."""
        kind, sep, symbol = str(text).partition("|")
        if not sep or not kind or not symbol:
            raise InvalidFormatError(f"Malformed scope reference (expected kind|symbol): {text!r}")
        return cls(kind=kind, symbol=symbol)


@dataclass
class Location:
    filepath: str
    reference: list[ScopeReference] = field(default_factory=list)

    @property
    def is_file_scoped(self) -> bool:
        return not self.reference

    def copy(self) -> "Location":
        return Location(filepath=self.filepath, reference=list(self.reference))


@dataclass
class Issue:
    id: str
    location: Location
    status: Status = Status.OPEN
    blocks: dict[str, str] = field(default_factory=dict)
    version: int = 1

    @property
    def description(self) -> str:
        return self.blocks.get(DESCRIPTION_BLOCK, "")

    @property
    def resolution(self) -> str | None:
        return self.blocks.get(RESOLUTION_BLOCK)

    def is_open(self) -> bool:
        return self.status == Status.OPEN

    def set_block(self, label: str, content: str) -> None:
        """Set a body block, refusing the reserved labels.

        The content is normalized the way it will read back from Issue.md.
        """
        label = label.strip()
        if not label or "\n" in label:
            raise ValueError("Block label must be a single non-empty line")
        if label in RESERVED_LABELS:
            raise ValueError(f"'{label}' is a reserved label")
        self.blocks[label] = normalize_block(content)

    def copy(self) -> "Issue":
        return Issue(
            id=self.id,
            location=self.location.copy(),
            status=self.status,
            blocks=dict(self.blocks),
            version=self.version,
        )

    def summary(self, max_length: int = 80) -> str:
        """Short description for listings: cut at the first period, newline or max_length."""
        desc = self.description
        if not desc:
            return "(no description)"
        cut = max_length
        dot = desc.find(".")
        if dot != -1 and dot + 1 < cut:
            cut = dot + 1
        newline = desc.find("\n")
        if newline != -1 and newline < cut:
            cut = newline
        if cut < len(desc):
            return desc[:cut] + ("..." if cut == max_length else "")
        return desc


def normalize_block(content: str) -> str:
    """Block text as it reads back from disk: newlines unified, leading and trailing blank lines dropped."""
    lines = content.splitlines()
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return "\n".join(lines[start:end])


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(now: datetime | None = None) -> str:
    """Generate a second-granularity ID like '20260109_143256' from UTC time."""
    return (now or utc_now()).strftime(ID_FORMAT)


def parse_id(issue_id: str) -> datetime | None:
    """Parse an ID back into its UTC timestamp, or None if it is not a valid ID."""
    if not isinstance(issue_id, str) or not ID_PATTERN.match(issue_id):
        return None
    try:
        return datetime.strptime(issue_id, ID_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def is_valid_id(issue_id: str) -> bool:
    return parse_id(issue_id) is not None
