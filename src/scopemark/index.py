"""Hash-sharded reverse index from source filepath to issue IDs.

Each shard lives at ``<issue_dir>/.index/<prefix>`` where ``prefix`` is the
first ``key_length`` hex characters of ``sha256(filepath)``. Truncation makes
collisions possible, so a shard is an INI file with one section per filepath:

    [src/alpha.lua]
    20260109_143256 = open

    [src/beta.lua]
    20260110_090000 = closed

The index is derived data. ``full_scan`` rebuilds the cache from the shard
files, and the integrity scanner can rebuild the shards from the issue store.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from scopemark import codec
from scopemark.errors import StorageIOError
from scopemark.models import Status
from scopemark.storage import atomic_write

logger = logging.getLogger(__name__)

INDEX_DIRNAME = ".index"
MIN_KEY_LENGTH = 16
MAX_KEY_LENGTH = 64
DEFAULT_KEY_LENGTH = 16

_SHARD_NAME_RE = re.compile(r"^[0-9a-f]+$")


@dataclass
class IndexEntry:
    """Issue IDs (and cached status) recorded for one filepath."""

    filepath: str
    issues: dict[str, Status] = field(default_factory=dict)

    def set(self, issue_id: str, status: Status) -> None:
        self.issues[issue_id] = status

    def remove(self, issue_id: str) -> bool:
        return self.issues.pop(issue_id, None) is not None

    def has(self, issue_id: str) -> bool:
        return issue_id in self.issues

    def is_empty(self) -> bool:
        return not self.issues

    def ids(self, status: Status | None = None) -> list[str]:
        """Sorted issue IDs, optionally only those with the given status."""
        return sorted(i for i, s in self.issues.items() if status is None or s == status)

    def copy(self) -> "IndexEntry":
        return IndexEntry(filepath=self.filepath, issues=dict(self.issues))


Shard = dict[str, IndexEntry]


def clamp_key_length(key_length: int) -> int:
    return max(MIN_KEY_LENGTH, min(MAX_KEY_LENGTH, int(key_length)))


def shard_key(filepath: str, key_length: int = DEFAULT_KEY_LENGTH) -> str:
    """Truncated hex SHA-256 of a relative filepath."""
    digest = hashlib.sha256(filepath.encode("utf-8")).hexdigest()
    return digest[: clamp_key_length(key_length)]


def parse_shard(text: str) -> Shard:
    """Parse shard text into filepath -> IndexEntry."""
    entries: Shard = {}
    for section, values in codec.parse(text).items():
        entry = IndexEntry(filepath=section)
        for issue_id, raw_status in values.items():
            status = Status.from_index_value(str(raw_status))
            if status is None:
                logger.warning("Ignoring index value %r for %s in %s", raw_status, issue_id, section)
                continue
            entry.set(issue_id, status)
        if not entry.is_empty():
            entries[section] = entry
    return entries


def serialize_shard(entries: Shard) -> str:
    """Serialize a shard, omitting empty entries."""
    data = {
        fp: {issue_id: status.index_value for issue_id, status in entry.issues.items()}
        for fp, entry in entries.items()
        if not entry.is_empty()
    }
    return codec.serialize(data)


class PathIndex:
    """In-memory cache over the shard files, with write-through mutations."""

    def __init__(self, issue_dir: Path, key_length: int = DEFAULT_KEY_LENGTH):
        self.issue_dir = issue_dir
        self.key_length = clamp_key_length(key_length)
        self.index_dir = issue_dir / INDEX_DIRNAME
        # shard key -> filepath -> entry
        self._cache: dict[str, Shard] = {}
        self._collision_warned = False

    def shard_path(self, key: str) -> Path:
        return self.index_dir / key

    def _key(self, filepath: str) -> str:
        return shard_key(filepath, self.key_length)

    def _read_shard(self, path: Path) -> Shard:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageIOError(f"Failed to read index shard {path}: {e}") from e
        return parse_shard(text)

    def _write_shard(self, key: str, entries: Shard) -> None:
        path = self.shard_path(key)
        live = {fp: e for fp, e in entries.items() if not e.is_empty()}
        if not live:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageIOError(f"Failed to delete index shard {path}: {e}") from e
            self._cache.pop(key, None)
            return

        self._ensure_gitignore()
        atomic_write(path, serialize_shard(live))
        self._cache[key] = {fp: e.copy() for fp, e in live.items()}
        if len(live) > 1:
            self._warn_collision(key)

    def _ensure_gitignore(self) -> None:
        gitignore = self.index_dir / ".gitignore"
        if not gitignore.exists():
            atomic_write(gitignore, "*\n")

    def _warn_collision(self, key: str) -> None:
        if self._collision_warned:
            return
        self._collision_warned = True
        logger.warning(
            "Hash collision in index shard %s. Consider increasing [index] key_length (currently %d).",
            key,
            self.key_length,
        )

    def _shard_files(self) -> list[Path]:
        if not self.index_dir.is_dir():
            return []
        return sorted(
            p for p in self.index_dir.iterdir() if p.is_file() and _SHARD_NAME_RE.match(p.name)
        )

    def full_scan(self) -> int:
        """Clear the cache and reload every shard. Returns the number of entries loaded."""
        self._cache = {}
        count = 0
        for path in self._shard_files():
            entries = self._read_shard(path)
            if entries:
                self._cache[path.name] = entries
                count += len(entries)
        logger.debug("Index scan loaded %d entries from %s", count, self.index_dir)
        return count

    def get(self, filepath: str) -> IndexEntry | None:
        """Look up the entry for a filepath, loading its shard on a cache miss."""
        key = self._key(filepath)
        if key not in self._cache:
            entries = self._read_shard(self.shard_path(key))
            if not entries:
                return None
            self._cache[key] = entries
        entry = self._cache[key].get(filepath)
        return entry.copy() if entry else None

    def _load_for_update(self, filepath: str) -> tuple[str, Shard, IndexEntry]:
        """Re-read filepath's shard from disk so collided sections written since are kept."""
        key = self._key(filepath)
        entries = self._read_shard(self.shard_path(key))
        entry = entries.setdefault(filepath, IndexEntry(filepath=filepath))
        return key, entries, entry

    def add(self, filepath: str, issue_id: str, status: Status = Status.OPEN) -> IndexEntry:
        """Record issue_id under filepath and rewrite its shard."""
        key, entries, entry = self._load_for_update(filepath)
        entry.set(issue_id, status)
        self._write_shard(key, entries)
        return entry.copy()

    def update_status(self, filepath: str, issue_id: str, status: Status) -> IndexEntry:
        """Refresh the cached status of issue_id, adding it if the entry is missing."""
        key, entries, entry = self._load_for_update(filepath)
        if not entry.has(issue_id):
            logger.debug("Index had no entry for %s under %s, adding it", issue_id, filepath)
        entry.set(issue_id, status)
        self._write_shard(key, entries)
        return entry.copy()

    def remove(self, filepath: str, issue_id: str) -> IndexEntry | None:
        """Drop issue_id from filepath's entry. Removing an absent ID is a no-op.

        Returns what is left of the entry, or None when it became empty.
        """
        key, entries, entry = self._load_for_update(filepath)
        if entry.remove(issue_id):
            self._write_shard(key, entries)
        else:
            self._cache[key] = {fp: e for fp, e in entries.items() if not e.is_empty()}
        return None if entry.is_empty() else entry.copy()

    def all_entries(self) -> dict[str, IndexEntry]:
        """Every cached entry keyed by filepath. The result is a copy."""
        result: dict[str, IndexEntry] = {}
        for entries in self._cache.values():
            for fp, entry in entries.items():
                result[fp] = entry.copy()
        return result

    def clear(self) -> int:
        """Delete every shard file and empty the cache. Returns the number of shards removed."""
        files = self._shard_files()
        for path in files:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageIOError(f"Failed to delete index shard {path}: {e}") from e
        self._cache = {}
        return len(files)

    def rewrite_shard_without(self, path: Path, stale: dict[str, set[str]]) -> int:
        """Remove the given filepath -> IDs from one shard file. Returns the number removed."""
        entries = self._read_shard(path)
        removed = 0
        for fp, ids in stale.items():
            entry = entries.get(fp)
            if entry is None:
                continue
            for issue_id in ids:
                if entry.remove(issue_id):
                    removed += 1
        if removed:
            self._write_shard(path.name, entries)
        return removed

    def shards(self) -> list[tuple[Path, Shard]]:
        """Read every shard file from disk (bypassing the cache)."""
        return [(path, self._read_shard(path)) for path in self._shard_files()]

    def migrate_key_length(self, new_key_length: int) -> bool:
        """Re-shard all entries under a new key length.

        Returns True if any of the new shards holds colliding filepaths.
        """
        new_key_length = clamp_key_length(new_key_length)
        old_files = self._shard_files()
        merged: dict[str, Shard] = {}
        for path in old_files:
            for fp, entry in self._read_shard(path).items():
                target = merged.setdefault(shard_key(fp, new_key_length), {})
                if fp in target:
                    target[fp].issues.update(entry.issues)
                else:
                    target[fp] = entry

        self.key_length = new_key_length
        for key, entries in merged.items():
            self._write_shard(key, entries)

        new_paths = {self.shard_path(key) for key in merged}
        for path in old_files:
            if path not in new_paths:
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    raise StorageIOError(f"Failed to delete old index shard {path}: {e}") from e

        self.full_scan()
        had_collision = any(len(entries) > 1 for entries in merged.values())
        logger.info(
            "Migrated %d index shard(s) to key length %d", len(old_files), new_key_length
        )
        return had_collision
