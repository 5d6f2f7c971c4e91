"""Integrity scanner: find and repair drift between issues, the index and source files."""

import logging
from dataclasses import dataclass, field
from enum import Enum

from scopemark import scope, syntax
from scopemark.context import ProjectContext
from scopemark.errors import (
    InvalidFormatError,
    IssueNotFoundError,
    StorageIOError,
    UnresolvableError,
)
from scopemark.models import Issue, ScopeReference
from scopemark.prompt import Prompter
from scopemark.service import IssueService

logger = logging.getLogger(__name__)

RELOCATE = "Relocate to another file"
FILE_SCOPE = "Make file-scoped"
DELETE = "Delete issue"
SKIP = "Skip"


class Category(Enum):
    HEALTHY = "healthy"
    MISSING_FILE = "missing_file"
    BROKEN_REFS = "broken_refs"
    MISSING_INDEX = "missing_index"


@dataclass
class Finding:
    issue_id: str
    issue: Issue
    category: Category
    broken_refs: list[ScopeReference] = field(default_factory=list)

    @property
    def filepath(self) -> str:
        return self.issue.location.filepath


@dataclass
class ScanResults:
    total: int = 0
    healthy: list[Finding] = field(default_factory=list)
    missing_file: list[Finding] = field(default_factory=list)
    broken_refs: list[Finding] = field(default_factory=list)
    missing_index: list[Finding] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def problem_count(self) -> int:
        return len(self.missing_file) + len(self.broken_refs) + len(self.missing_index)

    def add(self, finding: Finding) -> None:
        getattr(self, finding.category.value).append(finding)


@dataclass
class RepairReport:
    reindexed: list[str] = field(default_factory=list)
    relocated: list[str] = field(default_factory=list)
    references_replaced: list[str] = field(default_factory=list)
    file_scoped: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class EvictionReport:
    checked: int = 0
    evicted: list[str] = field(default_factory=list)


def _unresolved(ctx: ProjectContext, issue: Issue) -> list[ScopeReference] | None:
    """References to report as broken, or None when the chain resolves or cannot be checked."""
    if issue.location.is_file_scoped:
        return None
    path = ctx.absolute_path(issue.location.filepath)
    try:
        tree = syntax.parse_file(path)
    except UnresolvableError as e:
        logger.debug("Cannot verify references of %s: %s", issue.id, e)
        return None
    resolution = scope.resolve(tree, issue.location.reference)
    if resolution.usable:
        return None
    return resolution.not_found


def classify(ctx: ProjectContext, issue: Issue) -> Finding:
    """Health of a single issue against the file system and the index."""
    if not ctx.absolute_path(issue.location.filepath).is_file():
        return Finding(issue.id, issue, Category.MISSING_FILE)

    broken = _unresolved(ctx, issue)
    if broken:
        return Finding(issue.id, issue, Category.BROKEN_REFS, broken_refs=broken)

    entry = ctx.index.get(issue.location.filepath)
    if entry is None or not entry.has(issue.id):
        return Finding(issue.id, issue, Category.MISSING_INDEX)

    return Finding(issue.id, issue, Category.HEALTHY)


def scan(ctx: ProjectContext) -> ScanResults:
    """Classify every issue in the store.

    Issues are enumerated from the store's directory tree rather than the
    index, so issues the index has lost are still found.
    """
    ctx.index.full_scan()
    results = ScanResults()
    for issue_id in ctx.storage.list_issue_ids():
        results.total += 1
        try:
            issue = ctx.storage.read_issue(issue_id)
        except (IssueNotFoundError, InvalidFormatError, StorageIOError) as e:
            results.errors.append((issue_id, str(e)))
            continue
        try:
            results.add(classify(ctx, issue))
        except StorageIOError as e:
            results.errors.append((issue_id, str(e)))
    logger.info(
        "Scanned %d issue(s): %d problem(s), %d error(s)",
        results.total,
        results.problem_count,
        len(results.errors),
    )
    return results


def project_files(ctx: ProjectContext) -> list[str]:
    """Relative paths of candidate source files, skipping hidden entries and the issue directory."""
    files = []
    issue_dir = ctx.issue_dir.resolve()
    for path in sorted(ctx.root.rglob("*")):
        rel = path.relative_to(ctx.root)
        if any(part.startswith(".") for part in rel.parts):
            continue
        if path.resolve() == issue_dir or issue_dir in path.resolve().parents:
            continue
        if path.is_file():
            files.append(rel.as_posix())
    return files


def _current(service: IssueService, issue_id: str) -> Issue | None:
    try:
        return service.get_issue(issue_id)
    except IssueNotFoundError:
        logger.info("Issue %s no longer exists, skipping", issue_id)
        return None


def _confirm_delete(service: IssueService, prompter: Prompter, issue_id: str, report: RepairReport) -> bool:
    answer = prompter.confirm(f"Delete issue {issue_id}?")
    if answer.is_cancelled or not answer.value:
        report.skipped.append(issue_id)
        return False
    service.delete_issue(issue_id)
    report.deleted.append(issue_id)
    return True


def _reindex(service: IssueService, findings: list[Finding], report: RepairReport) -> None:
    """Re-add index entries that are missing, whatever else is wrong with the issue."""
    for finding in findings:
        issue = _current(service, finding.issue_id)
        if issue is None:
            continue
        entry = service.index.get(issue.location.filepath)
        if entry is not None and entry.has(issue.id):
            continue
        service.index.add(issue.location.filepath, issue.id, issue.status)
        report.reindexed.append(issue.id)
        logger.info("Re-indexed %s under %s", issue.id, issue.location.filepath)


def _repair_broken_refs(
    ctx: ProjectContext,
    service: IssueService,
    prompter: Prompter,
    finding: Finding,
    report: RepairReport,
) -> None:
    issue = _current(service, finding.issue_id)
    if issue is None:
        return
    try:
        tree = syntax.parse_file(ctx.absolute_path(issue.location.filepath))
    except (UnresolvableError, StorageIOError) as e:
        logger.warning("Cannot list scopes for %s: %s", issue.location.filepath, e)
        report.skipped.append(issue.id)
        return

    live = [str(ref) for ref in scope.all_scope_references(tree)]
    for old in finding.broken_refs:
        if old not in service.get_issue(issue.id).location.reference:
            continue
        answer = prompter.select(
            f"Replace broken reference '{old}' in issue {issue.id} ({issue.location.filepath})",
            [*live, FILE_SCOPE, DELETE, SKIP],
        )
        if answer.is_cancelled or answer.value == SKIP:
            report.skipped.append(issue.id)
            continue
        if answer.value == FILE_SCOPE:
            service.make_file_scoped(issue.id)
            report.file_scoped.append(issue.id)
            return
        if answer.value == DELETE:
            if _confirm_delete(service, prompter, issue.id, report):
                return
            continue
        new = ScopeReference.parse(answer.value)
        service.replace_reference(issue.id, old, new)
        report.references_replaced.append(issue.id)
        logger.info("Replaced reference in %s: %s -> %s", issue.id, old, new)


def _repair_missing_file(
    ctx: ProjectContext,
    service: IssueService,
    prompter: Prompter,
    finding: Finding,
    files: list[str],
    report: RepairReport,
) -> None:
    issue = _current(service, finding.issue_id)
    if issue is None:
        return
    if ctx.absolute_path(issue.location.filepath).is_file():
        return

    action = prompter.select(
        f"Issue {issue.id}: {issue.location.filepath} no longer exists",
        [RELOCATE, FILE_SCOPE, DELETE, SKIP],
    )
    if action.is_cancelled or action.value == SKIP:
        report.skipped.append(issue.id)
        return
    if action.value == FILE_SCOPE:
        service.make_file_scoped(issue.id)
        report.file_scoped.append(issue.id)
        return
    if action.value == DELETE:
        _confirm_delete(service, prompter, issue.id, report)
        return

    target = prompter.select(f"Relocate issue {issue.id} (was: {issue.location.filepath})", files)
    if target.is_cancelled or target.value is None:
        report.skipped.append(issue.id)
        return
    relocated = service.relocate_issue(issue.id, target.value)
    report.relocated.append(issue.id)

    # The new file may not contain the old scopes
    broken = _unresolved(ctx, relocated)
    if broken:
        follow_up = Finding(relocated.id, relocated, Category.BROKEN_REFS, broken_refs=broken)
        _repair_broken_refs(ctx, service, prompter, follow_up, report)


def repair(ctx: ProjectContext, results: ScanResults, prompter: Prompter) -> RepairReport:
    """Fix scan findings one at a time.

    Missing index entries are re-added without asking, also for issues whose
    file or references need attention. Missing files and broken references
    need a decision from the prompter; a dismissed prompt skips that problem.
    """
    service = IssueService(ctx.storage, ctx.index)
    report = RepairReport()

    _reindex(service, [*results.missing_index, *results.missing_file, *results.broken_refs], report)

    if results.missing_file:
        files = project_files(ctx)
        for finding in results.missing_file:
            _repair_missing_file(ctx, service, prompter, finding, files, report)

    for finding in results.broken_refs:
        _repair_broken_refs(ctx, service, prompter, finding, report)

    return report


def evict_stale_index(ctx: ProjectContext) -> EvictionReport:
    """Drop index entries whose issue no longer exists in the store."""
    report = EvictionReport()
    for path, entries in ctx.index.shards():
        stale: dict[str, set[str]] = {}
        for filepath, entry in entries.items():
            for issue_id in entry.ids():
                report.checked += 1
                if not ctx.storage.exists(issue_id):
                    stale.setdefault(filepath, set()).add(issue_id)
        if stale:
            ctx.index.rewrite_shard_without(path, stale)
            for ids in stale.values():
                report.evicted.extend(sorted(ids))
    ctx.index.full_scan()
    if report.evicted:
        logger.info("Evicted %d stale index entr(ies)", len(report.evicted))
    return report

