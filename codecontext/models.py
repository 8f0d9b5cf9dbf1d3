"""
Models module for code context selection.

This module contains the data models used throughout the indexing and selection pipeline.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Tuple
import hashlib

import numpy as np


# Boundary kinds produced by parsers
FUNCTION = "function"
CLASS = "class"
METHOD = "method"
CONSTANT = "constant"
BLOCK = "block"
TOKEN_BLOCK = "token-block"


@dataclass(frozen=True)
class SourceConfig:
    """
    A configured source tree.

    Attributes:
        id: Unique source identifier
        path: Root of the source, relative to the project base directory
        include: Glob patterns selecting files to index
        exclude: Glob patterns removing files from the selection
    """
    id: str
    path: str
    include: Tuple[str, ...] = ("**/*",)
    exclude: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Settings:
    """Chunking and embedding settings shared by all sources."""
    chunk_size: int = 500
    chunk_overlap: int = 50
    max_unit_tokens: Optional[int] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    use_structural_parsing: bool = True


@dataclass(frozen=True)
class DiscoveredFile:
    """
    A file found while walking a source.

    Attributes:
        source_id: Source the file belongs to
        relative_path: Project-relative path with forward slashes
        content: Decoded file content
        content_hash: SHA-256 of the raw bytes
        absolute_path: Location on disk
    """
    source_id: str
    relative_path: str
    content: str
    content_hash: str
    absolute_path: str = ""

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()


@dataclass
class ChangeSet:
    """Result of comparing discovered files with the stored file ledger."""
    new: List[DiscoveredFile] = field(default_factory=list)
    changed: List[DiscoveredFile] = field(default_factory=list)
    unchanged: List[DiscoveredFile] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def to_process(self) -> List[DiscoveredFile]:
        return self.new + self.changed


@dataclass(frozen=True)
class CodeBoundary:
    """A structural unit found by a parser. Lines are 1-based and inclusive."""
    kind: str
    name: str
    start_line: int
    end_line: int
    exported: bool = False


@dataclass
class ParseResult:
    success: bool
    boundaries: List[CodeBoundary] = field(default_factory=list)
    error: Optional[str] = None


def make_chunk_id(source_id: str, file_path: str, start_line: int, end_line: int) -> str:
    """
    Build the content-addressed identifier of a chunk.

    Re-chunking identical boundaries always reproduces identical IDs.

    Args:
        source_id: Source the chunk belongs to
        file_path: Project-relative file path
        start_line: First line of the chunk
        end_line: Last line of the chunk

    Returns:
        A string of the form ``chunk_<16 hex chars>``
    """
    base = f"{source_id}:{file_path}:{start_line}:{end_line}"
    return "chunk_" + hashlib.sha256(base.encode("utf-8")).hexdigest()[:16]


@dataclass
class Chunk:
    """
    A content-addressed slice of a file selected for embedding and retrieval.

    Attributes:
        id: Deterministic hash of (source_id, file_path, start_line, end_line)
        source_id: Source the chunk belongs to
        file_path: Project-relative file path
        content: Exact text of the line range
        start_line: First line (1-based)
        end_line: Last line (inclusive)
        tokens: Token count of the content
        kind: Boundary kind, ``block`` or ``token-block``
        unit_name: Name of the structural unit, if any
        exported: Whether the unit is exported
        embedding: Float32 vector, once embedded
        created_at: ISO timestamp set when the chunk is stored
    """
    id: str
    source_id: str
    file_path: str
    content: str
    start_line: int
    end_line: int
    tokens: int
    kind: str = TOKEN_BLOCK
    unit_name: Optional[str] = None
    exported: Optional[bool] = None
    embedding: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    created_at: Optional[str] = None

    def get_content_hash(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class FileRecord:
    """One row of the incremental-diffing ledger."""
    source_id: str
    file_path: str
    content_hash: str
    indexed_at: str


@dataclass
class CacheEntry:
    """
    A cached selection.

    Attributes:
        cache_key: Hash of the request parameters
        result: Decoded payload (rendered text and structured data)
        index_version: Index version the entry was computed against
        created_at: ISO timestamp of the write
        hit_count: Number of times the entry has been served, this hit included
    """
    cache_key: str
    result: Dict
    index_version: str
    created_at: Optional[str] = None
    hit_count: int = 0


@dataclass
class IndexStats:
    """Counters reported by an indexing run."""
    files: int = 0
    chunks: int = 0
    files_changed: int = 0
    files_unchanged: int = 0
    files_removed: int = 0
    skipped: int = 0
    files_failed: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    time_ms: int = 0

    def merge(self, other: "IndexStats") -> "IndexStats":
        return IndexStats(
            files=self.files + other.files,
            chunks=self.chunks + other.chunks,
            files_changed=self.files_changed + other.files_changed,
            files_unchanged=self.files_unchanged + other.files_unchanged,
            files_removed=self.files_removed + other.files_removed,
            skipped=self.skipped + other.skipped,
            files_failed=self.files_failed + other.files_failed,
            errors=self.errors + other.errors,
            cancelled=self.cancelled or other.cancelled,
            time_ms=self.time_ms + other.time_ms,
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class ScoreBreakdown:
    similarity: float = 0.0
    path_match: float = 0.0
    content_match: float = 0.0
    symbol_match: float = 0.0
    file_type_boost: float = 1.0
    import_boost: float = 0.0


@dataclass
class ScoredChunk:
    """A chunk returned by similarity search with its raw cosine score."""
    chunk: Chunk
    similarity: float

    @property
    def file_path(self) -> str:
        return self.chunk.file_path


@dataclass
class RankedChunk:
    """A chunk with its combined score and the signals that produced it."""
    chunk: Chunk
    score: float
    breakdown: ScoreBreakdown

    @property
    def file_path(self) -> str:
        return self.chunk.file_path

    @property
    def tokens(self) -> int:
        return self.chunk.tokens


@dataclass
class BudgetResult:
    chunks: List[RankedChunk] = field(default_factory=list)
    total_tokens: int = 0
    excluded: int = 0


@dataclass
class ImportGraph:
    """File-level adjacency: what each file imports, and who imports it."""
    imports: Dict[str, List[str]] = field(default_factory=dict)
    imported_by: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class SelectionResult:
    """
    Outcome of a context selection.

    Attributes:
        context: Rendered output in the requested format
        chunks: Per-chunk info (file, lines, tokens, score)
        tokens_used: Total tokens of the included chunks
        files_included: Number of distinct files in the output
        cache_hit: Whether the result was served from the query cache
        is_empty: True when nothing has been indexed yet
        data: Structured payload shared by every output format
        time_ms: Wall time of the selection
    """
    context: str
    chunks: List[Dict] = field(default_factory=list)
    tokens_used: int = 0
    files_included: int = 0
    cache_hit: bool = False
    is_empty: bool = False
    data: Dict = field(default_factory=dict)
    time_ms: int = 0


@dataclass(frozen=True)
class SymbolMatch:
    name: str
    kind: str
    file_path: str
    line: int
    end_line: int
    signature: str
    exported: bool = False


@dataclass(frozen=True)
class CallSite:
    name: str
    file_path: str
    line: int


@dataclass
class CallGraphResult:
    """Callers and callees of a function, found lexically."""
    target: Optional[CallSite]
    callers: List[CallSite] = field(default_factory=list)
    callees: List[CallSite] = field(default_factory=list)


@dataclass(frozen=True)
class HistoryEntry:
    id: int
    query: str
    budget: int
    format: str
    mode: str
    sources: Optional[List[str]]
    tokens_used: Optional[int]
    chunks_found: Optional[int]
    created_at: str
