"""Project context: root directory, config snapshot, and the stores built from it."""

import os
from dataclasses import dataclass
from pathlib import Path

from scopemark.config import CONFIG_FILENAME, Config, load_config
from scopemark.errors import ProjectNotFoundError
from scopemark.index import PathIndex
from scopemark.storage import IssueStorage


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from start (default cwd) to the directory holding .scopemark."""
    path = (start or Path.cwd()).resolve()
    if path.is_file():
        path = path.parent
    for candidate in (path, *path.parents):
        if (candidate / CONFIG_FILENAME).is_file():
            return candidate
    return None


def normalize_relative(path: str) -> str:
    """Forward-slash, dot-free form of a relative path."""
    parts: list[str] = []
    for part in path.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == ".." and parts and parts[-1] != "..":
            parts.pop()
        else:
            parts.append(part)
    return "/".join(parts) or "."


@dataclass
class ProjectContext:
    """Everything an operation needs, built once and passed explicitly."""

    root: Path
    config: Config
    storage: IssueStorage
    index: PathIndex

    @classmethod
    def load(cls, root: Path, config: Config | None = None) -> "ProjectContext":
        root = root.resolve()
        config = config or load_config(root)
        issue_dir = root / config.issue_dir
        return cls(
            root=root,
            config=config,
            storage=IssueStorage(issue_dir),
            index=PathIndex(issue_dir, config.key_length),
        )

    @classmethod
    def discover(cls, start: Path | None = None) -> "ProjectContext":
        root = find_project_root(start)
        if root is None:
            raise ProjectNotFoundError(f"Not in a scopemark project (no {CONFIG_FILENAME} found)")
        return cls.load(root)

    @property
    def issue_dir(self) -> Path:
        return self.storage.issue_dir

    def relative_path(self, path: str | Path) -> str:
        """Project-relative, forward-slash path. Paths outside the project stay absolute."""
        path = Path(path)
        if not path.is_absolute():
            return normalize_relative(path.as_posix())
        absolute = Path(os.path.normpath(path))
        try:
            return absolute.relative_to(self.root).as_posix()
        except ValueError:
            return absolute.as_posix()

    def absolute_path(self, relative: str) -> Path:
        return self.root / relative
