"""Markdown file storage for scopemark issues."""

import logging
import os
import re
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from scopemark import codec
from scopemark.errors import (
    InvalidFormatError,
    InvalidStatusError,
    IssueNotFoundError,
    StorageIOError,
)
from scopemark.models import (
    DESCRIPTION_BLOCK,
    RESERVED_LABELS,
    RESOLUTION_BLOCK,
    Issue,
    Location,
    ScopeReference,
    Status,
    generate_id,
    is_valid_id,
    normalize_block,
    parse_id,
    utc_now,
)

logger = logging.getLogger(__name__)

CURRENT_VERSION = 1
ISSUE_FILENAME = "Issue.md"
MAX_ID_ATTEMPTS = 60

# Blocks emitted right after the reserved ones; the rest keep insertion order
BLOCK_ORDER = (DESCRIPTION_BLOCK, RESOLUTION_BLOCK)

LOCATION_SECTION = "location"
REFERENCE_KEY = "reference[]"


def atomic_write(path: Path, content: str) -> None:
    """Write content to path through a temp file so readers never see a partial file."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise StorageIOError(f"Failed to write {path}: {e}") from e


def serialize_location(location: Location) -> str:
    """Serialize a Location as an INI [location] section."""
    section: dict[str, object] = {"filepath": location.filepath}
    if location.reference:
        section[REFERENCE_KEY] = [str(ref) for ref in location.reference]
    return codec.serialize({LOCATION_SECTION: section})


def deserialize_location(text: str) -> Location:
    """Parse the INI body of a Location block."""
    parsed = codec.parse(text)
    section = parsed.get(LOCATION_SECTION)
    if section is None:
        raise InvalidFormatError("missing [location] section")
    filepath = section.get("filepath")
    if filepath is None:
        raise InvalidFormatError("missing filepath in [location]")

    references: list[ScopeReference] = []
    raw_refs = section.get(REFERENCE_KEY, [])
    if not isinstance(raw_refs, list):
        raw_refs = [raw_refs]
    for raw in raw_refs:
        try:
            ref = ScopeReference.parse(str(raw))
        except InvalidFormatError:
            logger.warning("Dropping malformed reference (no | delimiter): %s", raw)
            continue
        if ref not in references:
            references.append(ref)

    return Location(filepath=str(filepath), reference=references)


_HEADING_LINE_RE = re.compile(r"^(\\*)## ")


def escape_block(content: str) -> str:
    """Backslash lines that would otherwise start a new block."""
    return "\n".join(_HEADING_LINE_RE.sub(r"\\\1## ", line) for line in content.split("\n"))


def unescape_line(line: str) -> str:
    if line.startswith("\\") and _HEADING_LINE_RE.match(line):
        return line[1:]
    return line


def serialize_issue(issue: Issue) -> str:
    """Serialize an Issue to its Issue.md markdown form."""
    parts = [
        f"# {issue.id}",
        "",
        "## Version",
        str(issue.version),
        "",
        "## Status",
        issue.status.value,
        "",
        "## Location",
        serialize_location(issue.location).rstrip("\n"),
    ]

    labels = [label for label in BLOCK_ORDER if label in issue.blocks]
    labels += [label for label in issue.blocks if label not in BLOCK_ORDER]
    for label in labels:
        parts += ["", f"## {label}", escape_block(issue.blocks[label])]

    return "\n".join(parts) + "\n"


def deserialize_issue(content: str, dir_name: str | None = None) -> Issue:
    """Parse Issue.md content. ``dir_name`` recovers the ID when the H1 is missing."""
    lines = content.splitlines()

    issue_id = None
    body_start = 0
    for i, line in enumerate(lines):
        if line.startswith("# "):
            issue_id = line[2:].strip()
            body_start = i + 1
            break

    if not issue_id:
        if dir_name and is_valid_id(dir_name):
            logger.warning("Missing H1 in %s, using directory name: %s", ISSUE_FILENAME, dir_name)
            issue_id = dir_name
        else:
            raise InvalidFormatError("Missing issue ID (no H1 header)")

    raw_blocks: dict[str, str] = {}
    label: str | None = None
    block_lines: list[str] = []

    def save_block() -> None:
        if label is None:
            return
        if label in raw_blocks:
            logger.warning("Duplicate block '%s' in issue %s, using last occurrence", label, issue_id)
            del raw_blocks[label]
        raw_blocks[label] = normalize_block("\n".join(block_lines))

    for line in lines[body_start:]:
        if line.startswith("## "):
            save_block()
            label = line[3:].strip()
            block_lines = []
        elif label is not None:
            block_lines.append(unescape_line(line))
    save_block()

    version = CURRENT_VERSION
    if "Version" in raw_blocks:
        try:
            version = int(raw_blocks["Version"].strip())
        except ValueError:
            logger.warning("Unreadable version in issue %s, assuming %d", issue_id, CURRENT_VERSION)
    if version > CURRENT_VERSION:
        logger.warning(
            "Issue %s has format version %d, newer than supported version %d",
            issue_id,
            version,
            CURRENT_VERSION,
        )

    status = Status.OPEN
    raw_status = raw_blocks.get("Status", "").strip()
    try:
        status = Status(raw_status)
    except ValueError:
        logger.warning("Unknown status %r in issue %s, treating as OPEN", raw_status, issue_id)

    if "Location" not in raw_blocks:
        raise InvalidFormatError(f"Issue {issue_id} has no Location block")
    try:
        location = deserialize_location(raw_blocks["Location"])
    except InvalidFormatError as e:
        raise InvalidFormatError(f"Unparseable Location in issue {issue_id}: {e}") from e

    blocks = {k: v for k, v in raw_blocks.items() if k not in RESERVED_LABELS}

    return Issue(
        id=issue_id,
        location=location,
        status=status,
        blocks=blocks,
        version=version,
    )


@dataclass
class _CachedIssue:
    mtime_ns: int
    issue: Issue


class IssueStorage:
    """Read/write issues as Issue.md files under <issue_dir>/<YYYY>/<MM>/<id>/."""

    def __init__(self, issue_dir: Path, clock: Callable[[], datetime] = utc_now):
        self.issue_dir = issue_dir
        self.clock = clock
        self._cache: dict[str, _CachedIssue] = {}

    def ensure_initialized(self) -> None:
        """Create the issue directory if it does not exist."""
        try:
            self.issue_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Failed to create {self.issue_dir}: {e}") from e

    def issue_dir_for(self, issue_id: str) -> Path:
        """Get the directory holding an issue's record."""
        when = parse_id(issue_id)
        if when is None:
            raise IssueNotFoundError(issue_id)
        return self.issue_dir / f"{when.year:04d}" / f"{when.month:02d}" / issue_id

    def issue_path(self, issue_id: str) -> Path:
        """Get the path to an issue's Issue.md file."""
        return self.issue_dir_for(issue_id) / ISSUE_FILENAME

    def exists(self, issue_id: str) -> bool:
        return is_valid_id(issue_id) and self.issue_path(issue_id).is_file()

    def list_issue_ids(self) -> list[str]:
        """List all issue IDs by walking the year/month tree."""
        if not self.issue_dir.is_dir():
            return []
        ids = [
            path.parent.name
            for path in self.issue_dir.glob(f"[0-9][0-9][0-9][0-9]/[0-9][0-9]/*/{ISSUE_FILENAME}")
            if is_valid_id(path.parent.name) and path.is_file()
        ]
        return sorted(ids)

    def read_issue(self, issue_id: str) -> Issue:
        """Read and parse a single issue, reusing the cached parse while the file is unchanged."""
        path = self.issue_path(issue_id)
        try:
            mtime_ns = path.stat().st_mtime_ns
        except FileNotFoundError:
            self._cache.pop(issue_id, None)
            raise IssueNotFoundError(issue_id) from None
        except OSError as e:
            raise StorageIOError(f"Failed to stat {path}: {e}") from e

        cached = self._cache.get(issue_id)
        if cached and cached.mtime_ns == mtime_ns:
            return cached.issue.copy()

        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise IssueNotFoundError(issue_id) from None
        except OSError as e:
            raise StorageIOError(f"Failed to read {path}: {e}") from e

        issue = deserialize_issue(content, dir_name=issue_id)
        if issue.id != issue_id:
            logger.warning("Issue file %s declares ID %s, using %s", path, issue.id, issue_id)
            issue.id = issue_id
        self._cache[issue_id] = _CachedIssue(mtime_ns=mtime_ns, issue=issue.copy())
        return issue

    def read_all_issues(self) -> list[Issue]:
        """Read every issue in the store, skipping (and logging) unreadable records."""
        issues = []
        for issue_id in self.list_issue_ids():
            try:
                issues.append(self.read_issue(issue_id))
            except (InvalidFormatError, StorageIOError) as e:
                logger.warning("Skipping unreadable issue %s: %s", issue_id, e)
        return issues

    def write_issue(self, issue: Issue) -> None:
        """Serialize the full record, then replace Issue.md in place."""
        issue.version = CURRENT_VERSION
        content = serialize_issue(issue)
        path = self.issue_path(issue.id)
        atomic_write(path, content)
        self._cache.pop(issue.id, None)

    def _allocate_id(self) -> str:
        """Claim a fresh ID directory, stepping forward a second at a time on collision."""
        now = self.clock()
        for offset in range(MAX_ID_ATTEMPTS):
            candidate = generate_id(now + timedelta(seconds=offset))
            leaf = self.issue_dir_for(candidate)
            try:
                leaf.parent.mkdir(parents=True, exist_ok=True)
                leaf.mkdir()
            except FileExistsError:
                continue
            except OSError as e:
                raise StorageIOError(f"Failed to create {leaf}: {e}") from e
            if offset:
                logger.debug("ID collision, bumped %d second(s) to %s", offset, candidate)
            return candidate
        raise StorageIOError(f"Failed to allocate a unique issue ID within {MAX_ID_ATTEMPTS} seconds")

    def create_issue(self, location: Location, description: str = "") -> Issue:
        """Create and immediately persist a new OPEN issue."""
        issue_id = self._allocate_id()
        issue = Issue(id=issue_id, location=location.copy(), status=Status.OPEN)
        if normalize_block(description):
            issue.set_block(DESCRIPTION_BLOCK, description)
        try:
            self.write_issue(issue)
        except StorageIOError:
            self._release_dir(self.issue_dir_for(issue_id))
            raise
        logger.info("Created issue %s for %s", issue_id, location.filepath)
        return issue

    def resolve_issue(self, issue_id: str, resolution: str) -> Issue:
        """Close an OPEN issue, recording the resolution text."""
        issue = self.read_issue(issue_id)
        if issue.status != Status.OPEN:
            raise InvalidStatusError(
                f"Cannot resolve issue {issue_id}: status is {issue.status.value}, expected OPEN"
            )
        timestamp = self.clock().strftime("%Y-%m-%d %H:%M:%S UTC")
        issue.set_block(RESOLUTION_BLOCK, f"{timestamp}\n{resolution}")
        issue.status = Status.CLOSED
        self.write_issue(issue)
        return issue

    def reopen_issue(self, issue_id: str) -> Issue:
        """Reopen a CLOSED issue. The resolution block is kept."""
        issue = self.read_issue(issue_id)
        if issue.status != Status.CLOSED:
            raise InvalidStatusError(
                f"Cannot reopen issue {issue_id}: status is {issue.status.value}, expected CLOSED"
            )
        issue.status = Status.OPEN
        self.write_issue(issue)
        return issue

    def add_reference(self, issue_id: str, reference: ScopeReference) -> Issue:
        """Append a scope reference unless already present."""
        issue = self.read_issue(issue_id)
        if reference in issue.location.reference:
            return issue
        issue.location.reference.append(reference)
        self.write_issue(issue)
        return issue

    def remove_reference(self, issue_id: str, reference: ScopeReference) -> Issue:
        """Remove a scope reference if present. An empty chain means file-scoped."""
        issue = self.read_issue(issue_id)
        if reference not in issue.location.reference:
            return issue
        issue.location.reference = [r for r in issue.location.reference if r != reference]
        if not issue.location.reference:
            logger.info("Issue %s is now file-scoped (removed %s)", issue_id, reference)
        self.write_issue(issue)
        return issue

    def clear_references(self, issue_id: str) -> Issue:
        """Drop every scope reference, making the issue file-scoped."""
        issue = self.read_issue(issue_id)
        if issue.location.reference:
            logger.info(
                "Issue %s is now file-scoped (removed %s)",
                issue_id,
                ", ".join(str(r) for r in issue.location.reference),
            )
            issue.location.reference = []
            self.write_issue(issue)
        return issue

    def relocate_issue(self, issue_id: str, new_filepath: str) -> Issue:
        """Point an issue at a different source file, keeping its references."""
        issue = self.read_issue(issue_id)
        issue.location.filepath = new_filepath
        self.write_issue(issue)
        return issue

    def set_block(self, issue_id: str, label: str, content: str) -> Issue:
        """Create or replace a body block."""
        issue = self.read_issue(issue_id)
        issue.set_block(label, content)
        self.write_issue(issue)
        return issue

    def remove_block(self, issue_id: str, label: str) -> Issue:
        """Remove a body block if present."""
        issue = self.read_issue(issue_id)
        if issue.blocks.pop(label, None) is not None:
            self.write_issue(issue)
        return issue

    def delete_issue(self, issue_id: str) -> bool:
        """Delete Issue.md and its directory if nothing else is in it.

        Returns True when the directory was removed, False when user files
        were left behind.
        """
        path = self.issue_path(issue_id)
        try:
            path.unlink()
        except FileNotFoundError:
            raise IssueNotFoundError(issue_id) from None
        except OSError as e:
            raise StorageIOError(f"Failed to delete {path}: {e}") from e
        self._cache.pop(issue_id, None)
        return self._release_dir(path.parent)

    def _release_dir(self, directory: Path) -> bool:
        try:
            directory.rmdir()
        except FileNotFoundError:
            return True
        except OSError:
            leftovers = sorted(p.name for p in directory.iterdir()) if directory.is_dir() else []
            logger.warning(
                "Issue directory not empty after deletion, leaving %s (%s)",
                directory,
                ", ".join(leftovers),
            )
            return False
        return True
