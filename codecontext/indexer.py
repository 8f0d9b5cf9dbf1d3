"""
Indexer module for code context selection.

This module runs the incremental indexing pipeline for each configured source:
discover, classify against the stored ledger, chunk what changed, embed in
file-aligned batches, and commit the batch in one store transaction.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple

from codecontext.chunker import ChunkOptions, chunk_file
from codecontext.discovery import classify_changes, discover_files
from codecontext.embedding import CodeEmbedder
from codecontext.errors import EmbeddingError, IndexCancelledError, NoSourcesError
from codecontext.models import Chunk, DiscoveredFile, IndexStats, Settings, SourceConfig
from codecontext.parsers import ParserRegistry
from codecontext.store import IndexStore

logger = logging.getLogger(__name__)

# (source_id, files done, files to process)
ProgressCallback = Callable[[str, int, int], None]


def _check_cancelled(cancel_event: Optional[threading.Event]):
    if cancel_event is not None and cancel_event.is_set():
        raise IndexCancelledError("Indexing cancelled")


class SourceIndexer:
    """
    Indexes a single source into the store.

    Files are chunked one at a time and grouped into embedding batches that never
    split a file, so a failed batch leaves only its own files unindexed.
    """

    def __init__(self, source: SourceConfig, base_dir: str, store: IndexStore, embedder: CodeEmbedder,
                 registry: Optional[ParserRegistry], options: ChunkOptions,
                 parse_lock: Optional[threading.Lock] = None):
        self.source = source
        self.base_dir = base_dir
        self.store = store
        self.embedder = embedder
        self.registry = registry
        self.options = options
        self.parse_lock = parse_lock
        self.stats = IndexStats()
        self.committed_files: List[DiscoveredFile] = []
        self.committed_chunks: List[Chunk] = []

    def run(self, force: bool = False, cancel_event: Optional[threading.Event] = None,
            progress: Optional[ProgressCallback] = None) -> IndexStats:
        """
        Index the source.

        Args:
            force: Re-chunk and re-embed every file
            cancel_event: Checked between files and between embedding batches
            progress: Optional callback reporting processed files

        Returns:
            IndexStats for this source

        Raises:
            PathNotFoundError: if the source root does not exist
            StorageTransactionError: if the final commit fails (nothing is written)
        """
        start_time = time.time()

        with self.store.writer(self.source.id):
            files, skipped = discover_files(self.source, self.base_dir)
            changes = classify_changes(files, self.store.get_file_records(self.source.id), force, skipped)
            to_process = changes.to_process

            self.stats.files = len(files)
            self.stats.files_unchanged = len(changes.unchanged)
            self.stats.skipped = len(skipped)
            logger.info("Source %s: %d new, %d changed, %d unchanged, %d removed",
                        self.source.id, len(changes.new), len(changes.changed),
                        len(changes.unchanged), len(changes.removed))

            try:
                self._process(to_process, cancel_event, progress)
            except IndexCancelledError:
                logger.warning("Indexing of source %s cancelled after %d of %d files",
                               self.source.id, len(self.committed_files), len(to_process))
                self.stats.cancelled = True

            if self.committed_files or changes.removed or not self._source_known():
                self.store.apply_source_batch(self.source, self.committed_files, self.committed_chunks,
                                              changes.removed)

        self.stats.files_changed = len(self.committed_files)
        self.stats.files_removed = len(changes.removed)
        self.stats.chunks = len(self.committed_chunks)
        self.stats.time_ms = int((time.time() - start_time) * 1000)
        logger.info("Indexed source %s: %d files, %d chunks in %.2f seconds",
                    self.source.id, self.stats.files_changed, self.stats.chunks, time.time() - start_time)
        return self.stats

    def _source_known(self) -> bool:
        return self.source.id in self.store.get_source_ids()

    def _chunk(self, file: DiscoveredFile) -> List[Chunk]:
        if self.parse_lock is None:
            return chunk_file(file, self.options, self.registry)
        with self.parse_lock:
            return chunk_file(file, self.options, self.registry)

    def _process(self, files: Sequence[DiscoveredFile], cancel_event: Optional[threading.Event],
                 progress: Optional[ProgressCallback]):
        batch: List[Tuple[DiscoveredFile, List[Chunk]]] = []
        batch_size = 0
        done = 0

        for file in files:
            _check_cancelled(cancel_event)
            chunks = self._chunk(file)
            batch.append((file, chunks))
            batch_size += len(chunks)

            if batch_size >= self.embedder.batch_size:
                done += self._flush(batch)
                if progress:
                    progress(self.source.id, done, len(files))
                batch, batch_size = [], 0
                _check_cancelled(cancel_event)

        if batch:
            done += self._flush(batch)
            if progress:
                progress(self.source.id, done, len(files))

    def _flush(self, batch: List[Tuple[DiscoveredFile, List[Chunk]]]) -> int:
        chunks = [chunk for _, file_chunks in batch for chunk in file_chunks]
        try:
            vectors = self.embedder.embed_chunks(chunks)
        except EmbeddingError as e:
            paths = [file.relative_path for file, _ in batch]
            logger.warning("Embedding failed for %d files in source %s: %s", len(paths), self.source.id, e)
            self.stats.files_failed += len(paths)
            self.stats.errors.extend(f"{path}: {e.message}" for path in paths)
            return len(batch)

        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector
        for file, file_chunks in batch:
            self.committed_files.append(file)
            self.committed_chunks.extend(file_chunks)
        return len(batch)


def index_sources(sources: Sequence[SourceConfig], base_dir: str, store: IndexStore, embedder: CodeEmbedder,
                  registry: Optional[ParserRegistry] = None, settings: Optional[Settings] = None,
                  force: bool = False, cancel_event: Optional[threading.Event] = None, max_workers: int = 1,
                  progress: Optional[ProgressCallback] = None) -> IndexStats:
    """
    Incrementally index sources into the store.

    Args:
        sources: Sources to index
        base_dir: Project directory source paths are relative to
        store: Destination store
        embedder: Embedder for new chunks
        registry: Parser registry for structural chunking
        settings: Chunking settings (defaults when omitted)
        force: Re-index every file regardless of content hash
        cancel_event: Set it to stop between files
        max_workers: Number of sources indexed concurrently
        progress: Optional progress callback

    Returns:
        Stats merged over all sources

    Raises:
        NoSourcesError: if ``sources`` is empty
    """
    if not sources:
        raise NoSourcesError()

    start_time = time.time()
    options = ChunkOptions.from_settings(settings or Settings())
    parse_lock = threading.Lock() if max_workers > 1 and len(sources) > 1 else None

    def run(source: SourceConfig) -> IndexStats:
        if cancel_event is not None and cancel_event.is_set():
            return IndexStats(cancelled=True)
        indexer = SourceIndexer(source, base_dir, store, embedder, registry, options, parse_lock)
        return indexer.run(force=force, cancel_event=cancel_event, progress=progress)

    if parse_lock is not None:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(run, sources))
    else:
        results = [run(source) for source in sources]

    total = IndexStats()
    for stats in results:
        total = total.merge(stats)
    total.time_ms = int((time.time() - start_time) * 1000)
    return total
