"""Syntax tree provider backed by tree-sitter grammars."""

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from tree_sitter import Node, Parser, Tree
from tree_sitter_language_pack import get_parser

from scopemark.errors import StorageIOError, UnresolvableError

logger = logging.getLogger(__name__)

# File extension -> tree-sitter-language-pack grammar name
EXTENSION_LANGUAGES = {
    ".py": "python",
    ".pyi": "python",
    ".lua": "lua",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".go": "go",
    ".rs": "rust",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".swift": "swift",
    ".scala": "scala",
    ".sh": "bash",
    ".bash": "bash",
}


def language_for_path(path: str | Path) -> str | None:
    """Grammar name for a file, based on its extension."""
    return EXTENSION_LANGUAGES.get(Path(path).suffix.lower())


@lru_cache(maxsize=None)
def _parser_for(language: str) -> Parser:
    try:
        return get_parser(language)
    except Exception as e:
        raise UnresolvableError(f"No tree-sitter grammar available for {language}: {e}") from e


@dataclass
class SyntaxTree:
    """A parsed source buffer plus the bytes it was parsed from."""

    tree: Tree
    source: bytes
    language: str

    @property
    def root(self) -> Node:
        return self.tree.root_node

    def text(self, node: Node) -> str:
        return self.source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")

    def node_at(self, line: int, column: int = 0) -> Node:
        """Smallest node enclosing a 0-indexed (line, column) position."""
        point = (max(line, 0), max(column, 0))
        node = self.root.descendant_for_point_range(point, point)
        return node if node is not None else self.root

    def ancestors(self, node: Node) -> Iterator[Node]:
        """Yield node and then each of its parents up to the root."""
        current: Node | None = node
        while current is not None:
            yield current
            current = current.parent

    def walk(self) -> Iterator[Node]:
        """Every node in document order."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


def parse_source(source: bytes | str, language: str) -> SyntaxTree:
    """Parse a source buffer with the named grammar."""
    if isinstance(source, str):
        source = source.encode("utf-8")
    parser = _parser_for(language)
    tree = parser.parse(source)
    return SyntaxTree(tree=tree, source=source, language=language)


def parse_file(path: Path, language: str | None = None) -> SyntaxTree:
    """Read and parse a file, picking the grammar from its extension when not given."""
    language = language or language_for_path(path)
    if language is None:
        raise UnresolvableError(f"No tree-sitter grammar known for {path.name}")
    try:
        source = path.read_bytes()
    except OSError as e:
        raise StorageIOError(f"Failed to read {path}: {e}") from e
    logger.debug("Parsing %s as %s", path, language)
    return parse_source(source, language)
