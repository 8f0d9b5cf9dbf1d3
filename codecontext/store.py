"""
Store module for code context selection.

This module owns the sqlite database: the file ledger used for incremental
indexing, the chunk table with embedding blobs, the version-keyed query cache
and the query history.
"""

import os
import json
import sqlite3
import hashlib
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from codecontext.embedding import from_blob, to_blob
from codecontext.errors import CacheCorruptionError, DatabaseError, StorageTransactionError
from codecontext.models import CacheEntry, Chunk, DiscoveredFile, FileRecord, HistoryEntry, SourceConfig

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sources (
    id TEXT PRIMARY KEY,
    path TEXT NOT NULL,
    config TEXT,
    file_count INTEGER DEFAULT 0,
    chunk_count INTEGER DEFAULT 0,
    indexed_at TEXT
);

CREATE TABLE IF NOT EXISTS files (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    file_path TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    indexed_at TEXT,
    UNIQUE(source_id, file_path)
);

CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    file_path TEXT NOT NULL,
    content TEXT NOT NULL,
    start_line INTEGER,
    end_line INTEGER,
    tokens INTEGER NOT NULL,
    kind TEXT,
    unit_name TEXT,
    exported INTEGER,
    embedding BLOB,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS query_cache (
    cache_key TEXT PRIMARY KEY,
    result TEXT NOT NULL,
    index_version TEXT NOT NULL,
    created_at TEXT,
    hit_count INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS query_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    query TEXT NOT NULL,
    budget INTEGER NOT NULL,
    format TEXT NOT NULL,
    mode TEXT DEFAULT 'full',
    sources TEXT,
    tokens_used INTEGER,
    chunks_found INTEGER,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source_id);
CREATE INDEX IF NOT EXISTS idx_chunks_file ON chunks(file_path);
CREATE INDEX IF NOT EXISTS idx_files_source ON files(source_id);
CREATE INDEX IF NOT EXISTS idx_files_path ON files(source_id, file_path);
CREATE INDEX IF NOT EXISTS idx_cache_created ON query_cache(created_at);
CREATE INDEX IF NOT EXISTS idx_history_created ON query_history(created_at);
"""

CHUNK_COLUMNS = ("id, source_id, file_path, content, start_line, end_line, tokens, kind, unit_name, "
                 "exported, embedding, created_at")


def now_iso() -> str:
    """UTC timestamp with microsecond resolution."""
    return datetime.now(timezone.utc).isoformat(timespec='microseconds')


def generate_cache_key(query: str, budget: int, sources: Optional[Iterable[str]] = None,
                       format: str = "markdown", mode: str = "full", include_imports: bool = False) -> str:
    """
    Build the cache key of a selection request.

    Sources are sorted so their order does not matter; an empty list means all
    sources, same as None.

    Returns:
        Hex sha256 of the canonical JSON of the request
    """
    payload = {
        "query": query.strip(),
        "budget": budget,
        "sources": sorted(sources) if sources else [],
        "format": format,
        "mode": mode,
        "include_imports": bool(include_imports),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


class IndexStore:
    """
    SQLite-backed storage for chunks, the file ledger, the query cache and history.

    One connection is shared and guarded by a lock. Writes for a source go through
    ``transaction()`` so a batch is committed or rolled back as a whole, and
    ``writer(source_id)`` keeps two indexers from writing the same source at once.
    """

    def __init__(self, db_path: str = ":memory:"):
        """
        Open (and create if needed) the database.

        Args:
            db_path: Path of the sqlite file, or ``:memory:``
        """
        self.db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        try:
            self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise DatabaseError(f"Cannot open index database {db_path}: {e}")
        self._lock = threading.RLock()
        self._writers: Dict[str, threading.Lock] = {}
        self._writers_lock = threading.Lock()

    def close(self):
        with self._lock:
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextmanager
    def writer(self, source_id: str):
        """Hold the single-writer lock of a source."""
        with self._writers_lock:
            lock = self._writers.setdefault(source_id, threading.Lock())
        with lock:
            yield

    @contextmanager
    def transaction(self, source_id: Optional[str] = None):
        """
        Run a block inside one immediate transaction.

        Raises:
            StorageTransactionError: if anything fails; the transaction is rolled back
        """
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except Exception as e:
                self.conn.execute("ROLLBACK")
                logger.error("Rolled back transaction for source %s: %s", source_id, e)
                if isinstance(e, StorageTransactionError):
                    raise
                raise StorageTransactionError(f"Transaction failed: {e}", source_id=source_id) from e
            else:
                self.conn.execute("COMMIT")

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _execute(self, sql: str, params=()) -> int:
        with self._lock:
            return self.conn.execute(sql, params).rowcount

    # Index

    def get_file_records(self, source_id: str) -> Dict[str, FileRecord]:
        rows = self._query(
            "SELECT source_id, file_path, content_hash, indexed_at FROM files WHERE source_id = ?",
            (source_id,))
        return {row['file_path']: FileRecord(row['source_id'], row['file_path'], row['content_hash'],
                                             row['indexed_at'])
                for row in rows}

    def apply_source_batch(self, source: SourceConfig, processed: List[DiscoveredFile], chunks: List[Chunk],
                           removed: Iterable[str] = ()) -> str:
        """
        Commit one indexing batch for a source atomically.

        Chunks of removed and processed files are replaced; file rows of removed
        files are dropped; processed files get fresh ledger rows.

        Args:
            source: The source being indexed
            processed: Files whose chunks are in ``chunks``
            chunks: New chunks, with embeddings
            removed: Paths that no longer exist

        Returns:
            The ``created_at`` timestamp stamped on the new chunks
        """
        removed = list(removed)
        stamp = now_iso()
        config = json.dumps({"include": list(source.include), "exclude": list(source.exclude)})

        with self.transaction(source.id) as conn:
            conn.execute("INSERT OR IGNORE INTO sources (id, path, config) VALUES (?, ?, ?)",
                         (source.id, source.path, config))
            conn.execute("UPDATE sources SET path = ?, config = ? WHERE id = ?", (source.path, config, source.id))

            for path in removed + [f.relative_path for f in processed]:
                conn.execute("DELETE FROM chunks WHERE source_id = ? AND file_path = ?", (source.id, path))
            for path in removed:
                conn.execute("DELETE FROM files WHERE source_id = ? AND file_path = ?", (source.id, path))

            for file in processed:
                conn.execute(
                    "INSERT OR REPLACE INTO files (id, source_id, file_path, content_hash, indexed_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (f"{source.id}:{file.relative_path}", source.id, file.relative_path, file.content_hash, stamp))

            conn.executemany(
                f"INSERT OR REPLACE INTO chunks ({CHUNK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [(c.id, c.source_id, c.file_path, c.content, c.start_line, c.end_line, c.tokens, c.kind,
                  c.unit_name, None if c.exported is None else int(c.exported),
                  None if c.embedding is None else to_blob(c.embedding), stamp)
                 for c in chunks])

            conn.execute(
                "UPDATE sources SET "
                "file_count = (SELECT COUNT(*) FROM files WHERE source_id = ?), "
                "chunk_count = (SELECT COUNT(*) FROM chunks WHERE source_id = ?), "
                "indexed_at = ? WHERE id = ?",
                (source.id, source.id, stamp, source.id))

        for chunk in chunks:
            chunk.created_at = stamp
        return stamp

    def remove_source(self, source_id: str) -> int:
        """Drop a source with its files and chunks. Returns the number of chunks removed."""
        with self.transaction(source_id) as conn:
            removed = conn.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,)).rowcount
            conn.execute("DELETE FROM files WHERE source_id = ?", (source_id,))
            conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        return removed

    def chunk_count(self) -> int:
        return self._query("SELECT COUNT(*) AS n FROM chunks")[0]['n']

    def source_count(self) -> int:
        return self._query("SELECT COUNT(*) AS n FROM sources")[0]['n']

    def get_source_ids(self) -> List[str]:
        return [row['id'] for row in self._query("SELECT id FROM sources ORDER BY id")]

    def compute_index_version(self) -> str:
        """
        Fingerprint of the current index contents.

        Any insert or delete of chunks or sources changes the result.
        """
        row = self._query("SELECT (SELECT COUNT(*) FROM chunks) AS chunks, "
                          "(SELECT COUNT(*) FROM sources) AS sources, "
                          "(SELECT MAX(created_at) FROM chunks) AS last")[0]
        base = f"{row['chunks']}:{row['sources']}:{row['last'] or ''}"
        return hashlib.sha256(base.encode('utf-8')).hexdigest()[:16]

    def get_chunks(self, source_ids: Optional[Iterable[str]] = None, with_embeddings: bool = True) -> List[Chunk]:
        """
        Load stored chunks, optionally restricted to some sources.

        Chunks come back ordered by file path and start line.
        """
        sql = f"SELECT {CHUNK_COLUMNS} FROM chunks"
        params: List = []
        source_ids = list(source_ids or [])
        if source_ids:
            sql += f" WHERE source_id IN ({', '.join('?' for _ in source_ids)})"
            params.extend(source_ids)
        sql += " ORDER BY file_path, start_line"
        return [self._row_to_chunk(row, with_embeddings) for row in self._query(sql, params)]

    def get_chunks_for_file(self, file_path: str) -> List[Chunk]:
        rows = self._query(f"SELECT {CHUNK_COLUMNS} FROM chunks WHERE file_path = ? ORDER BY start_line",
                           (file_path,))
        return [self._row_to_chunk(row, True) for row in rows]

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row, with_embeddings: bool) -> Chunk:
        return Chunk(
            id=row['id'],
            source_id=row['source_id'],
            file_path=row['file_path'],
            content=row['content'],
            start_line=row['start_line'],
            end_line=row['end_line'],
            tokens=row['tokens'],
            kind=row['kind'],
            unit_name=row['unit_name'],
            exported=None if row['exported'] is None else bool(row['exported']),
            embedding=from_blob(row['embedding']) if with_embeddings else None,
            created_at=row['created_at'],
        )

    def get_index_stats(self) -> Dict:
        row = self._query(
            "SELECT (SELECT COUNT(*) FROM files) AS file_count, "
            "(SELECT COUNT(*) FROM chunks) AS chunk_count, "
            "(SELECT COUNT(*) FROM chunks WHERE embedding IS NOT NULL) AS embedded_count, "
            "(SELECT MAX(created_at) FROM chunks) AS last_indexed")[0]
        db_size = 0
        if self.db_path != ":memory:" and os.path.exists(self.db_path):
            db_size = os.path.getsize(self.db_path)
        return {
            "file_count": row['file_count'],
            "chunk_count": row['chunk_count'],
            "embedded_count": row['embedded_count'],
            "db_size": db_size,
            "last_indexed": row['last_indexed'],
        }

    # Query cache

    def get_cached_result(self, cache_key: str, index_version: str) -> Optional[CacheEntry]:
        """
        Look up a cached selection.

        An entry written under another index version, or one that cannot be
        decoded, is deleted and reported as a miss.

        Returns:
            The CacheEntry, or None on a miss
        """
        rows = self._query("SELECT result, index_version, created_at, hit_count FROM query_cache WHERE cache_key = ?",
                           (cache_key,))
        if not rows:
            return None
        row = rows[0]

        if row['index_version'] != index_version:
            self._execute("DELETE FROM query_cache WHERE cache_key = ?", (cache_key,))
            return None

        try:
            result = self._decode_cached(row['result'])
        except CacheCorruptionError as e:
            logger.warning("Dropping cache entry %s: %s", cache_key[:12], e)
            self._execute("DELETE FROM query_cache WHERE cache_key = ?", (cache_key,))
            return None

        self._execute("UPDATE query_cache SET hit_count = hit_count + 1 WHERE cache_key = ?", (cache_key,))
        return CacheEntry(
            cache_key=cache_key,
            result=result,
            index_version=row['index_version'],
            created_at=row['created_at'],
            hit_count=(row['hit_count'] or 0) + 1,
        )

    @staticmethod
    def _decode_cached(payload: str) -> Dict:
        try:
            result = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise CacheCorruptionError(f"undecodable payload: {e}")
        if not isinstance(result, dict):
            raise CacheCorruptionError("payload is not an object")
        return result

    def set_cached_result(self, cache_key: str, result: Dict, index_version: str):
        self._execute(
            "INSERT OR REPLACE INTO query_cache (cache_key, result, index_version, created_at, hit_count) "
            "VALUES (?, ?, ?, ?, 0)",
            (cache_key, json.dumps(result), index_version, now_iso()))

    def clear_cache(self) -> int:
        return self._execute("DELETE FROM query_cache")

    def get_cache_stats(self) -> Dict:
        row = self._query("SELECT COUNT(*) AS entry_count, COALESCE(SUM(hit_count), 0) AS total_hits, "
                          "MIN(created_at) AS oldest_entry, MAX(created_at) AS newest_entry FROM query_cache")[0]
        return dict(row)

    # Query history

    def record_query(self, query: str, budget: int, format: str, mode: str = "full",
                     sources: Optional[List[str]] = None, tokens_used: Optional[int] = None,
                     chunks_found: Optional[int] = None) -> int:
        with self._lock:
            cursor = self.conn.execute(
                "INSERT INTO query_history (query, budget, format, mode, sources, tokens_used, chunks_found, "
                "created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (query, budget, format, mode or "full", ','.join(sources) if sources else None,
                 tokens_used, chunks_found, now_iso()))
            return cursor.lastrowid

    def get_query_history(self, limit: int = 20) -> List[HistoryEntry]:
        rows = self._query("SELECT * FROM query_history ORDER BY created_at DESC, id DESC LIMIT ?", (limit,))
        return [self._row_to_history(row) for row in rows]

    def get_history_entry(self, entry_id: int) -> Optional[HistoryEntry]:
        rows = self._query("SELECT * FROM query_history WHERE id = ?", (entry_id,))
        return self._row_to_history(rows[0]) if rows else None

    def clear_history(self) -> int:
        return self._execute("DELETE FROM query_history")

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> HistoryEntry:
        return HistoryEntry(
            id=row['id'],
            query=row['query'],
            budget=row['budget'],
            format=row['format'],
            mode=row['mode'],
            sources=row['sources'].split(',') if row['sources'] else None,
            tokens_used=row['tokens_used'],
            chunks_found=row['chunks_found'],
            created_at=row['created_at'],
        )
