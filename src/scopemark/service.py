"""Business logic service for scopemark issues.

The issue store and the path index are updated in a fixed order so the index
never points at a record that normal operation has removed:

* create: write the record, then add the index entry
* delete: remove the index entry, then delete the record
"""

import logging
from dataclasses import dataclass

from scopemark import scope
from scopemark.errors import InvalidFormatError, IssueNotFoundError, StorageIOError
from scopemark.index import IndexEntry, PathIndex
from scopemark.models import Issue, Location, ScopeReference, Status
from scopemark.storage import IssueStorage
from scopemark.syntax import SyntaxTree

logger = logging.getLogger(__name__)


@dataclass
class Annotation:
    """Where an issue currently lands in a file."""

    issue: Issue
    line: int
    column: int
    resolved: bool


class IssueService:
    """Business logic layer for issue operations."""

    def __init__(self, storage: IssueStorage, index: PathIndex):
        self.storage = storage
        self.index = index

    def create_issue(self, location: Location, description: str = "") -> Issue:
        """Create a new issue and index it under its filepath."""
        issue = self.storage.create_issue(location, description)
        self.index.add(issue.location.filepath, issue.id, issue.status)
        return issue

    def get_issue(self, issue_id: str) -> Issue:
        return self.storage.read_issue(issue_id)

    def resolve_issue(self, issue_id: str, resolution: str) -> Issue:
        """Close an issue with a resolution note."""
        issue = self.storage.resolve_issue(issue_id, resolution)
        self.index.update_status(issue.location.filepath, issue.id, issue.status)
        return issue

    def reopen_issue(self, issue_id: str) -> Issue:
        """Reopen a closed issue; its resolution note is kept."""
        issue = self.storage.reopen_issue(issue_id)
        self.index.update_status(issue.location.filepath, issue.id, issue.status)
        return issue

    def delete_issue(self, issue_id: str) -> bool:
        """Remove an issue from the index, then from disk.

        Returns False when the issue directory held other files and was kept.
        """
        issue = self.storage.read_issue(issue_id)
        self.index.remove(issue.location.filepath, issue_id)
        removed_dir = self.storage.delete_issue(issue_id)
        logger.info("Deleted issue %s", issue_id)
        return removed_dir

    def relocate_issue(self, issue_id: str, new_filepath: str) -> Issue:
        """Move an issue to another source file, keeping its references."""
        current = self.storage.read_issue(issue_id)
        self.index.remove(current.location.filepath, issue_id)
        issue = self.storage.relocate_issue(issue_id, new_filepath)
        self.index.add(new_filepath, issue_id, issue.status)
        logger.info("Relocated %s: %s -> %s", issue_id, current.location.filepath, new_filepath)
        return issue

    def add_reference(self, issue_id: str, reference: ScopeReference) -> Issue:
        return self.storage.add_reference(issue_id, reference)

    def remove_reference(self, issue_id: str, reference: ScopeReference) -> Issue:
        return self.storage.remove_reference(issue_id, reference)

    def replace_reference(self, issue_id: str, old: ScopeReference, new: ScopeReference) -> Issue:
        """Swap one reference for another (repair of a broken reference)."""
        self.storage.remove_reference(issue_id, old)
        return self.storage.add_reference(issue_id, new)

    def make_file_scoped(self, issue_id: str) -> Issue:
        return self.storage.clear_references(issue_id)

    def set_block(self, issue_id: str, label: str, content: str) -> Issue:
        return self.storage.set_block(issue_id, label, content)

    def remove_block(self, issue_id: str, label: str) -> Issue:
        return self.storage.remove_block(issue_id, label)

    def index_entry(self, filepath: str) -> IndexEntry | None:
        return self.index.get(filepath)

    def issues_for_file(self, filepath: str, status: Status | None = None) -> list[Issue]:
        """Issues indexed under a filepath, optionally filtered by the index's cached status."""
        entry = self.index.get(filepath)
        if entry is None:
            return []
        issues = []
        for issue_id in entry.ids(status):
            try:
                issues.append(self.storage.read_issue(issue_id))
            except IssueNotFoundError:
                logger.warning("Index lists %s under %s but the issue does not exist", issue_id, filepath)
            except (InvalidFormatError, StorageIOError) as e:
                logger.warning("Skipping unreadable issue %s: %s", issue_id, e)
        return issues

    def list_issues(self, status: Status | None = None) -> list[Issue]:
        """All issues in the store, in ID order, optionally filtered by status."""
        issues = self.storage.read_all_issues()
        if status is not None:
            issues = [i for i in issues if i.status == status]
        return issues

    def rebuild_index(self) -> int:
        """Throw away every shard and re-index all readable issues. Returns the count indexed."""
        self.index.clear()
        issues = self.storage.read_all_issues()
        for issue in issues:
            self.index.add(issue.location.filepath, issue.id, issue.status)
        logger.info("Rebuilt index from %d issue(s)", len(issues))
        return len(issues)

    def annotations(self, filepath: str, tree: SyntaxTree) -> list[Annotation]:
        """Current position of every issue indexed under filepath.

        File-scoped issues, and scoped issues none of whose references resolve,
        land on the top of the file; the latter are marked unresolved.
        """
        result = []
        for issue in self.issues_for_file(filepath):
            if issue.location.is_file_scoped:
                result.append(Annotation(issue=issue, line=0, column=0, resolved=True))
                continue
            resolution = scope.resolve(tree, issue.location.reference)
            line, column = scope.anchor(resolution)
            result.append(Annotation(issue=issue, line=line, column=column, resolved=resolution.usable))
        result.sort(key=lambda a: (a.line, a.column, a.issue.id))
        return result
