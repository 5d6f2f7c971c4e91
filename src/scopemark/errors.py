"""Error types raised by the scopemark core."""


class ScopemarkError(Exception):
    """Base class for all scopemark errors."""

    pass


class IssueNotFoundError(ScopemarkError):
    """Raised when an issue is not found."""

    def __init__(self, issue_id: str):
        self.issue_id = issue_id
        super().__init__(f"Issue not found: {issue_id}")


class StorageIOError(ScopemarkError):
    """Raised when reading, writing or deleting a file fails."""

    pass


class InvalidFormatError(ScopemarkError):
    """Raised when an issue record or index shard cannot be parsed."""

    pass


class UnresolvableError(ScopemarkError):
    """Raised when a file cannot be parsed into a syntax tree or a scope chain has no live position."""

    pass


class InvalidStatusError(ScopemarkError):
    """Raised when a status transition does not apply to the issue's current status."""

    pass


class ProjectNotFoundError(ScopemarkError):
    """Raised when no .scopemark file exists above the working directory."""

    pass
