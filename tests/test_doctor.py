"""Tests for scopemark.doctor."""

from pathlib import Path

import pytest

from scopemark import doctor
from scopemark.config import CONFIG_FILENAME, generate_default_file
from scopemark.context import ProjectContext
from scopemark.doctor import DELETE, FILE_SCOPE, RELOCATE, SKIP
from scopemark.models import Location, ScopeReference, Status
from scopemark.prompt import ScriptedPrompter
from scopemark.service import IssueService

GREET = ScopeReference("function_definition", "greet")
WAVE = ScopeReference("function_definition", "wave")
GONE = ScopeReference("function_definition", "gone")

GREETER_SOURCE = '''\
class Greeter:
    def greet(self, name):
        return name

    def wave(self):
        pass
'''

OTHER_SOURCE = '''\
def unrelated():
    return 1
'''


@pytest.fixture
def project(tmp_path: Path) -> ProjectContext:
    (tmp_path / CONFIG_FILENAME).write_text(generate_default_file())
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "g.py").write_text(GREETER_SOURCE)
    (tmp_path / "src" / "other.py").write_text(OTHER_SOURCE)
    ctx = ProjectContext.load(tmp_path)
    ctx.storage.ensure_initialized()
    return ctx


@pytest.fixture
def service(project: ProjectContext) -> IssueService:
    return IssueService(project.storage, project.index)


def _ids(findings: list[doctor.Finding]) -> list[str]:
    return [f.issue_id for f in findings]


class TestScan:
    def test_healthy(self, project: ProjectContext, service: IssueService):
        scoped = service.create_issue(Location("src/g.py", [GREET]))
        file_scoped = service.create_issue(Location("src/g.py"))
        results = doctor.scan(project)
        assert results.total == 2
        assert _ids(results.healthy) == [scoped.id, file_scoped.id]
        assert results.problem_count == 0

    def test_categories(self, project: ProjectContext, service: IssueService):
        missing_file = service.create_issue(Location("src/deleted.py", [GREET]))
        broken = service.create_issue(Location("src/g.py", [GONE]))
        unindexed = project.storage.create_issue(Location("src/g.py", [WAVE]))

        results = doctor.scan(project)
        assert _ids(results.missing_file) == [missing_file.id]
        assert _ids(results.broken_refs) == [broken.id]
        assert results.broken_refs[0].broken_refs == [GONE]
        assert _ids(results.missing_index) == [unindexed.id]

    def test_missing_file_takes_priority(self, project: ProjectContext):
        # Not indexed either, but the missing file is reported
        issue = project.storage.create_issue(Location("src/deleted.py"))
        results = doctor.scan(project)
        assert _ids(results.missing_file) == [issue.id]
        assert results.missing_index == []

    def test_partially_resolved_chain_is_not_broken(self, project: ProjectContext, service: IssueService):
        service.create_issue(Location("src/g.py", [GONE, GREET]))
        assert doctor.scan(project).broken_refs == []

    def test_unsupported_language_counts_as_healthy(self, project: ProjectContext, service: IssueService):
        (project.root / "notes.txt").write_text("plain text")
        issue = service.create_issue(Location("notes.txt", [GREET]))
        assert _ids(doctor.scan(project).healthy) == [issue.id]

    def test_unreadable_record_reported(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/g.py"))
        project.storage.issue_path(issue.id).write_text(f"# {issue.id}\n\n## Status\nOPEN\n")
        results = doctor.scan(project)
        assert results.total == 1
        assert [issue_id for issue_id, _ in results.errors] == [issue.id]

    def test_finds_issues_the_index_lost(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/g.py"))
        project.index.clear()
        assert _ids(doctor.scan(project).missing_index) == [issue.id]


class TestRepair:
    def test_missing_index_fixed_without_prompting(self, project: ProjectContext):
        issue = project.storage.create_issue(Location("src/g.py", [GREET]))
        prompter = ScriptedPrompter()
        report = doctor.repair(project, doctor.scan(project), prompter)
        assert report.reindexed == [issue.id]
        assert prompter.asked == []
        assert project.index.get("src/g.py").issues == {issue.id: Status.OPEN}
        assert doctor.scan(project).problem_count == 0

    def test_unindexed_issue_with_missing_file_is_reindexed(self, project: ProjectContext):
        issue = project.storage.create_issue(Location("src/deleted.py"))
        report = doctor.repair(project, doctor.scan(project), ScriptedPrompter([None]))
        assert report.reindexed == [issue.id]
        assert report.skipped == [issue.id]
        assert project.index.get("src/deleted.py").has(issue.id)

    def test_unindexed_issue_with_broken_refs_is_reindexed(self, project: ProjectContext):
        issue = project.storage.create_issue(Location("src/g.py", [GONE]))
        report = doctor.repair(project, doctor.scan(project), ScriptedPrompter([SKIP]))
        assert report.reindexed == [issue.id]
        assert project.index.get("src/g.py").has(issue.id)

    def test_relocate_missing_file(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/renamed.py", [GREET]))
        prompter = ScriptedPrompter([RELOCATE, "src/g.py"])
        report = doctor.repair(project, doctor.scan(project), prompter)
        assert report.relocated == [issue.id]
        assert service.get_issue(issue.id).location == Location("src/g.py", [GREET])
        assert project.index.get("src/renamed.py") is None
        assert project.index.get("src/g.py").has(issue.id)
        assert doctor.scan(project).problem_count == 0

    def test_relocate_then_fix_references(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/renamed.py", [GREET]))
        prompter = ScriptedPrompter([RELOCATE, "src/other.py", "function_definition|unrelated"])
        report = doctor.repair(project, doctor.scan(project), prompter)
        assert report.relocated == [issue.id]
        assert report.references_replaced == [issue.id]
        assert service.get_issue(issue.id).location == Location(
            "src/other.py", [ScopeReference("function_definition", "unrelated")]
        )

    def test_relocate_picker_lists_project_files(self, project: ProjectContext, service: IssueService):
        service.create_issue(Location("src/renamed.py"))
        prompter = ScriptedPrompter([RELOCATE, None])
        report = doctor.repair(project, doctor.scan(project), prompter)
        assert len(report.skipped) == 1
        assert doctor.project_files(project) == ["src/g.py", "src/other.py"]

    def test_delete_missing_file_issue(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/deleted.py"))
        report = doctor.repair(project, doctor.scan(project), ScriptedPrompter([DELETE, True]))
        assert report.deleted == [issue.id]
        assert not project.storage.exists(issue.id)
        assert project.index.get("src/deleted.py") is None

    def test_declined_delete_is_skipped(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/deleted.py"))
        report = doctor.repair(project, doctor.scan(project), ScriptedPrompter([DELETE, False]))
        assert report.skipped == [issue.id]
        assert project.storage.exists(issue.id)

    def test_cancelled_prompt_is_skip(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/deleted.py"))
        report = doctor.repair(project, doctor.scan(project), ScriptedPrompter([None]))
        assert report.skipped == [issue.id]
        assert service.get_issue(issue.id).location.filepath == "src/deleted.py"

    def test_replace_broken_reference(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/g.py", [GONE]))
        prompter = ScriptedPrompter([str(WAVE)])
        report = doctor.repair(project, doctor.scan(project), prompter)
        assert report.references_replaced == [issue.id]
        assert service.get_issue(issue.id).location.reference == [WAVE]
        assert doctor.scan(project).problem_count == 0

    def test_broken_reference_to_file_scope(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/g.py", [GONE]))
        report = doctor.repair(project, doctor.scan(project), ScriptedPrompter([FILE_SCOPE]))
        assert report.file_scoped == [issue.id]
        assert service.get_issue(issue.id).location.is_file_scoped

    def test_broken_reference_skip(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/g.py", [GONE]))
        report = doctor.repair(project, doctor.scan(project), ScriptedPrompter([SKIP]))
        assert report.skipped == [issue.id]
        assert service.get_issue(issue.id).location.reference == [GONE]

    def test_issue_deleted_since_scan_is_ignored(self, project: ProjectContext, service: IssueService):
        issue = service.create_issue(Location("src/deleted.py"))
        results = doctor.scan(project)
        service.delete_issue(issue.id)
        prompter = ScriptedPrompter()
        report = doctor.repair(project, results, prompter)
        assert prompter.asked == []
        assert report.skipped == []


class TestEvict:
    def test_evicts_ids_without_records(self, project: ProjectContext, service: IssueService):
        kept = service.create_issue(Location("src/g.py"))
        project.index.add("src/g.py", "20200101_000000")
        project.index.add("src/old.py", "20200101_000001")

        report = doctor.evict_stale_index(project)
        assert report.checked == 3
        assert sorted(report.evicted) == ["20200101_000000", "20200101_000001"]
        assert project.index.get("src/g.py").ids() == [kept.id]
        assert project.index.get("src/old.py") is None

    def test_nothing_to_evict(self, project: ProjectContext, service: IssueService):
        service.create_issue(Location("src/g.py"))
        assert doctor.evict_stale_index(project).evicted == []
