"""Tests for scopemark.storage."""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from scopemark.errors import InvalidFormatError, InvalidStatusError, IssueNotFoundError
from scopemark.models import (
    DESCRIPTION_BLOCK,
    RESOLUTION_BLOCK,
    Issue,
    Location,
    ScopeReference,
    Status,
)
from scopemark.storage import (
    CURRENT_VERSION,
    IssueStorage,
    deserialize_issue,
    serialize_issue,
)

NOW = datetime(2026, 1, 9, 14, 32, 56, tzinfo=timezone.utc)
CALC = ScopeReference("function_declaration", "calculate")
HELPER = ScopeReference("function_declaration", "helper")


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def issue_dir(tmp_path: Path) -> Path:
    return tmp_path / "issues"


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def storage(issue_dir: Path, clock: FrozenClock) -> IssueStorage:
    storage = IssueStorage(issue_dir, clock=clock)
    storage.ensure_initialized()
    return storage


RECORD = """# 20260109_143256

## Version
1

## Status
OPEN

## Location
[location]
filepath = src/a.lua
reference[] = function_declaration|calculate

## Issue Description
Off by one in the loop.
"""


class TestSerialization:
    def test_serialize_record_layout(self):
        issue = Issue(
            id="20260109_143256",
            location=Location("src/a.lua", [CALC]),
            blocks={DESCRIPTION_BLOCK: "Off by one in the loop."},
        )
        assert serialize_issue(issue) == RECORD

    def test_deserialize_record(self):
        issue = deserialize_issue(RECORD)
        assert issue.id == "20260109_143256"
        assert issue.version == 1
        assert issue.status == Status.OPEN
        assert issue.location == Location("src/a.lua", [CALC])
        assert issue.description == "Off by one in the loop."

    def test_description_and_resolution_come_first(self):
        issue = Issue(id="20260109_143256", location=Location("a.py"))
        issue.set_block("Notes", "extra")
        issue.set_block(RESOLUTION_BLOCK, "fixed")
        issue.set_block(DESCRIPTION_BLOCK, "broken")
        text = serialize_issue(issue)
        labels = [line[3:] for line in text.splitlines() if line.startswith("## ")]
        assert labels == ["Version", "Status", "Location", DESCRIPTION_BLOCK, RESOLUTION_BLOCK, "Notes"]

    def test_roundtrip_multiline_blocks(self):
        issue = Issue(
            id="20260109_143256",
            location=Location("src/x.py", [CALC, HELPER]),
            status=Status.CLOSED,
            blocks={DESCRIPTION_BLOCK: "line one\n\nline three", "Notes": "- a\n- b"},
        )
        loaded = deserialize_issue(serialize_issue(issue))
        assert loaded.location == issue.location
        assert loaded.status == Status.CLOSED
        assert loaded.blocks == issue.blocks

    def test_blocks_are_trimmed(self):
        text = RECORD.replace("Off by one in the loop.\n", "\n\nOff by one.\n\n\n")
        assert deserialize_issue(text).description == "Off by one."

    def test_heading_lines_inside_a_block_are_escaped(self):
        issue = Issue(
            id="20260109_143256",
            location=Location("src/x.py"),
            blocks={DESCRIPTION_BLOCK: "Steps:\n## Expected\n\\## literal\nno crash"},
        )
        text = serialize_issue(issue)
        assert "\n\\## Expected\n" in text
        assert "\n\\\\## literal\n" in text
        assert deserialize_issue(text).blocks == issue.blocks

    def test_missing_h1_recovered_from_directory(self):
        text = RECORD.replace("# 20260109_143256\n", "")
        assert deserialize_issue(text, dir_name="20260109_143256").id == "20260109_143256"

    def test_missing_h1_without_valid_directory_fails(self):
        text = RECORD.replace("# 20260109_143256\n", "")
        with pytest.raises(InvalidFormatError):
            deserialize_issue(text, dir_name="not-an-id")

    def test_unknown_status_is_open(self, caplog: pytest.LogCaptureFixture):
        issue = deserialize_issue(RECORD.replace("OPEN", "MAYBE"))
        assert issue.status == Status.OPEN
        assert "MAYBE" in caplog.text

    def test_missing_location_fails(self):
        text = RECORD.split("## Location")[0]
        with pytest.raises(InvalidFormatError):
            deserialize_issue(text)

    def test_location_without_filepath_fails(self):
        with pytest.raises(InvalidFormatError):
            deserialize_issue(RECORD.replace("filepath = src/a.lua\n", ""))

    def test_malformed_reference_dropped(self, caplog: pytest.LogCaptureFixture):
        text = RECORD.replace(
            "reference[] = function_declaration|calculate",
            "reference[] = garbage\nreference[] = function_declaration|calculate",
        )
        issue = deserialize_issue(text)
        assert issue.location.reference == [CALC]
        assert "garbage" in caplog.text

    def test_duplicate_block_last_wins(self, caplog: pytest.LogCaptureFixture):
        text = RECORD + "\n## Issue Description\nSecond version.\n"
        assert deserialize_issue(text).description == "Second version."
        assert "Duplicate" in caplog.text

    def test_newer_version_is_read_with_warning(self, caplog: pytest.LogCaptureFixture):
        issue = deserialize_issue(RECORD.replace("## Version\n1", "## Version\n7"))
        assert issue.version == 7
        assert "newer" in caplog.text


class TestIssueStorage:
    def test_ensure_initialized_creates_directory(self, tmp_path: Path):
        storage = IssueStorage(tmp_path / "nested" / "issues")
        storage.ensure_initialized()
        assert (tmp_path / "nested" / "issues").is_dir()

    def test_issue_path_layout(self, storage: IssueStorage, issue_dir: Path):
        path = storage.issue_path("20260109_143256")
        assert path == issue_dir / "2026" / "01" / "20260109_143256" / "Issue.md"

    def test_create_writes_immediately(self, storage: IssueStorage):
        issue = storage.create_issue(Location("src/a.lua", [CALC]), "Off by one.")
        assert issue.id == "20260109_143256"
        assert storage.issue_path(issue.id).is_file()
        loaded = storage.read_issue(issue.id)
        assert loaded.location == Location("src/a.lua", [CALC])
        assert loaded.description == "Off by one."
        assert loaded.version == CURRENT_VERSION

    def test_create_then_read_returns_same_blocks(self, storage: IssueStorage):
        created = storage.create_issue(Location("a.py"), "text read from a file\n")
        assert created.description == "text read from a file"
        assert storage.read_issue(created.id).blocks == created.blocks

    def test_create_with_heading_line_in_description(self, storage: IssueStorage):
        created = storage.create_issue(Location("a.py"), "Steps:\n## Expected\nno crash")
        loaded = storage.read_issue(created.id)
        assert loaded.blocks == {DESCRIPTION_BLOCK: "Steps:\n## Expected\nno crash"}

    def test_create_without_description_omits_block(self, storage: IssueStorage):
        issue = storage.create_issue(Location("src/a.lua"))
        assert DESCRIPTION_BLOCK not in storage.issue_path(issue.id).read_text()

    def test_same_second_ids_bump_forward(self, storage: IssueStorage):
        first = storage.create_issue(Location("a.py"))
        second = storage.create_issue(Location("a.py"))
        third = storage.create_issue(Location("a.py"))
        assert [first.id, second.id, third.id] == [
            "20260109_143256",
            "20260109_143257",
            "20260109_143258",
        ]

    def test_ids_keep_calendar_layout_across_month_boundary(self, issue_dir: Path):
        clock = FrozenClock(datetime(2026, 1, 31, 23, 59, 59, tzinfo=timezone.utc))
        storage = IssueStorage(issue_dir, clock=clock)
        storage.create_issue(Location("a.py"))
        bumped = storage.create_issue(Location("a.py"))
        assert bumped.id == "20260201_000000"
        assert storage.issue_path(bumped.id).parent.parent.name == "02"

    def test_read_missing_raises(self, storage: IssueStorage):
        with pytest.raises(IssueNotFoundError) as exc:
            storage.read_issue("20260109_000000")
        assert exc.value.issue_id == "20260109_000000"

    def test_read_invalid_id_raises_not_found(self, storage: IssueStorage):
        with pytest.raises(IssueNotFoundError):
            storage.read_issue("../etc/passwd")

    def test_read_returns_copies(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"))
        first = storage.read_issue(issue.id)
        first.location.filepath = "mutated.py"
        assert storage.read_issue(issue.id).location.filepath == "a.py"

    def test_read_sees_external_edits(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"), "before")
        storage.read_issue(issue.id)
        path = storage.issue_path(issue.id)
        path.write_text(path.read_text().replace("before", "after"))
        # Force a distinct mtime in case the edit lands in the same tick
        stat = path.stat()
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000))
        assert storage.read_issue(issue.id).description == "after"

    def test_list_issue_ids_sorted(self, storage: IssueStorage, clock: FrozenClock):
        clock.now = NOW + timedelta(days=40)
        later = storage.create_issue(Location("a.py"))
        clock.now = NOW
        earlier = storage.create_issue(Location("a.py"))
        assert storage.list_issue_ids() == [earlier.id, later.id]

    def test_list_ignores_index_and_stray_dirs(self, storage: IssueStorage, issue_dir: Path):
        storage.create_issue(Location("a.py"))
        (issue_dir / ".index").mkdir()
        (issue_dir / ".index" / "abcdef0123456789").write_text("[a.py]\n")
        (issue_dir / "2026" / "01" / "not_an_id").mkdir()
        (issue_dir / "2026" / "01" / "not_an_id" / "Issue.md").write_text(RECORD)
        assert storage.list_issue_ids() == ["20260109_143256"]

    def test_read_all_skips_unreadable(self, storage: IssueStorage, clock: FrozenClock):
        good = storage.create_issue(Location("a.py"))
        clock.now = NOW + timedelta(hours=1)
        bad = storage.create_issue(Location("b.py"))
        storage.issue_path(bad.id).write_text(f"# {bad.id}\n\n## Status\nOPEN\n")
        assert [i.id for i in storage.read_all_issues()] == [good.id]

    def test_exists(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"))
        assert storage.exists(issue.id)
        assert not storage.exists("20200101_000000")
        assert not storage.exists("garbage")


class TestTransitions:
    def test_resolve(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"))
        resolved = storage.resolve_issue(issue.id, "Fixed the bound.")
        assert resolved.status == Status.CLOSED
        assert resolved.resolution == "2026-01-09 14:32:56 UTC\nFixed the bound."
        assert storage.read_issue(issue.id).status == Status.CLOSED

    def test_resolve_closed_issue_fails(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"))
        storage.resolve_issue(issue.id, "done")
        with pytest.raises(InvalidStatusError):
            storage.resolve_issue(issue.id, "again")

    def test_reopen_keeps_resolution(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"))
        storage.resolve_issue(issue.id, "done")
        reopened = storage.reopen_issue(issue.id)
        assert reopened.status == Status.OPEN
        assert "done" in storage.read_issue(issue.id).resolution

    def test_reopen_open_issue_fails(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"))
        with pytest.raises(InvalidStatusError):
            storage.reopen_issue(issue.id)

    def test_transition_rereads_disk(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"), "original")
        path = storage.issue_path(issue.id)
        path.write_text(path.read_text().replace("original", "edited elsewhere"))
        storage.resolve_issue(issue.id, "done")
        assert storage.read_issue(issue.id).description == "edited elsewhere"


class TestReferences:
    def test_add_reference_is_idempotent(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.lua", [CALC]))
        storage.add_reference(issue.id, HELPER)
        storage.add_reference(issue.id, HELPER)
        assert storage.read_issue(issue.id).location.reference == [CALC, HELPER]

    def test_remove_last_reference_makes_file_scoped(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.lua", [CALC]))
        storage.remove_reference(issue.id, CALC)
        loaded = storage.read_issue(issue.id)
        assert loaded.location.is_file_scoped
        assert "reference[]" not in storage.issue_path(issue.id).read_text()

    def test_remove_absent_reference_is_noop(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.lua", [CALC]))
        result = storage.remove_reference(issue.id, HELPER)
        assert result.location.reference == [CALC]

    def test_clear_references(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.lua", [CALC, HELPER]))
        assert storage.clear_references(issue.id).location.is_file_scoped

    def test_relocate_keeps_references(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.lua", [CALC]))
        moved = storage.relocate_issue(issue.id, "b.lua")
        assert moved.location == Location("b.lua", [CALC])


class TestBlocks:
    def test_set_and_remove_block(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"))
        storage.set_block(issue.id, "Notes", "remember this")
        assert storage.read_issue(issue.id).blocks["Notes"] == "remember this"
        storage.remove_block(issue.id, "Notes")
        assert "Notes" not in storage.read_issue(issue.id).blocks

    def test_set_reserved_block_fails(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"))
        with pytest.raises(ValueError):
            storage.set_block(issue.id, "Status", "CLOSED")


class TestDelete:
    def test_delete_removes_directory(self, storage: IssueStorage):
        issue = storage.create_issue(Location("a.py"))
        leaf = storage.issue_dir_for(issue.id)
        assert storage.delete_issue(issue.id) is True
        assert not leaf.exists()
        assert not storage.exists(issue.id)

    def test_delete_keeps_directory_with_user_files(self, storage: IssueStorage, caplog: pytest.LogCaptureFixture):
        issue = storage.create_issue(Location("a.py"))
        leaf = storage.issue_dir_for(issue.id)
        (leaf / "screenshot.png").write_bytes(b"png")
        assert storage.delete_issue(issue.id) is False
        assert (leaf / "screenshot.png").exists()
        assert not (leaf / "Issue.md").exists()
        assert "screenshot.png" in caplog.text

    def test_delete_missing_raises(self, storage: IssueStorage):
        with pytest.raises(IssueNotFoundError):
            storage.delete_issue("20260109_000000")
