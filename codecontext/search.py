"""
Search module for code context selection.

This module contains the search engine, the selection pipeline that turns a
query and a token budget into formatted context, and the ContextEngine facade
that ties configuration, storage, embedding and parsing together.
"""

import os
import time
import logging
import threading
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from codecontext.budget import merge_adjacent_chunks, pack
from codecontext.config import Config, get_api_key, get_db_path, load_config, validate_budget
from codecontext.embedding import CodeEmbedder, cosine_similarity
from codecontext.errors import (
    ConfigValidationError, IndexEmptyError, NoSourcesError, QueryError, SourceNotFoundError,
)
from codecontext.formatter import FORMATS, MODES, format_output
from codecontext.imports import build_dependency_graph, build_import_graph, get_related_imports
from codecontext.indexer import ProgressCallback, index_sources
from codecontext.indexing import VectorIndex, build_vector_index
from codecontext.models import (
    BudgetResult, CallGraphResult, Chunk, HistoryEntry, ImportGraph, IndexStats, ScoredChunk, SelectionResult,
    SymbolMatch,
)
from codecontext.parsers import ParserRegistry
from codecontext.scoring import rank_chunks
from codecontext.store import IndexStore, generate_cache_key
from codecontext import symbols

logger = logging.getLogger(__name__)

SIMILARITY_LIMIT = 50


class SearchEngine:
    """
    Search engine for similarity search over chunks.

    Combines an embedder and a vector index to perform semantic searches.
    """

    def __init__(self, embedder: CodeEmbedder, index: VectorIndex):
        """
        Initialize the search engine.

        Args:
            embedder: CodeEmbedder instance for embedding queries
            index: VectorIndex instance for searching
        """
        self.embedder = embedder
        self.index = index

    def search(self, query: str, top_k: int) -> List[Tuple[Chunk, float]]:
        """
        Search for chunks matching the query.

        Args:
            query: The search query
            top_k: The number of results to return

        Returns:
            List of tuples containing (Chunk, cosine similarity)
        """
        return self.search_vector(self.embedder.embed_query(query), top_k)

    def search_vector(self, query_vector: np.ndarray, top_k: int) -> List[Tuple[Chunk, float]]:
        return self.index.search(query_vector, top_k)


def _engine_for(store: IndexStore, embedder: CodeEmbedder, sources: Optional[Sequence[str]]) -> SearchEngine:
    chunks = store.get_chunks(sources)
    return SearchEngine(embedder, build_vector_index(chunks, embedder.dimensions))


def search_similar(store: IndexStore, embedder: CodeEmbedder, query: str, limit: int = SIMILARITY_LIMIT,
                   sources: Optional[Sequence[str]] = None) -> List[ScoredChunk]:
    """
    Return the stored chunks most similar to a query.

    Args:
        store: Index store
        embedder: Embedder for the query
        query: Natural-language query
        limit: Maximum number of chunks
        sources: Optional source filter

    Returns:
        Scored chunks, most similar first
    """
    engine = _engine_for(store, embedder, sources)
    return [ScoredChunk(chunk=chunk, similarity=score) for chunk, score in engine.search(query, limit)]


def build_import_graph_from_store(store: IndexStore, base_path: str) -> ImportGraph:
    """Reassemble file contents from stored chunks and build the import graph over them."""
    contents: Dict[str, List[str]] = {}
    for chunk in store.get_chunks(with_embeddings=False):
        contents.setdefault(chunk.file_path, []).append(chunk.content)
    files = {path: '\n'.join(parts) for path, parts in contents.items()}
    return build_import_graph(build_dependency_graph(files, base_path))


def _related_candidates(store: IndexStore, related_files: Sequence[str], similar: Sequence[ScoredChunk],
                        query_vector: np.ndarray, excluded_files: set) -> List[ScoredChunk]:
    candidates = [c for c in similar if c.file_path in related_files and c.file_path not in excluded_files]
    seen = {c.chunk.id for c in candidates}
    for path in related_files:
        if path in excluded_files:
            continue
        for chunk in store.get_chunks_for_file(path):
            if chunk.id in seen or chunk.embedding is None:
                continue
            seen.add(chunk.id)
            candidates.append(ScoredChunk(chunk=chunk, similarity=cosine_similarity(query_vector, chunk.embedding)))
    return candidates


def _empty_result(query: str) -> SelectionResult:
    data = {
        "query": query,
        "context": "",
        "chunks": [],
        "stats": {"totalTokens": 0, "chunksConsidered": 0, "chunksIncluded": 0, "filesIncluded": 0},
    }
    return SelectionResult(context="", is_empty=True, data=data)


def _to_result(text: str, data: Dict, cache_hit: bool, start_time: float) -> SelectionResult:
    return SelectionResult(
        context=text,
        chunks=data["chunks"],
        tokens_used=data["stats"]["totalTokens"],
        files_included=data["stats"]["filesIncluded"],
        cache_hit=cache_hit,
        data=data,
        time_ms=int((time.time() - start_time) * 1000),
    )


def _validate_request(store: IndexStore, query: str, budget: int, mode: str, format: str,
                      sources: Optional[Sequence[str]]):
    issues = validate_budget(budget)
    if issues:
        raise ConfigValidationError(issues)
    if not query or not query.strip():
        raise QueryError("Query must not be empty")
    if format not in FORMATS:
        raise QueryError(f"Unknown format '{format}' (expected one of {', '.join(FORMATS)})")
    if mode not in MODES:
        raise QueryError(f"Unknown mode '{mode}' (expected one of {', '.join(MODES)})")
    if sources:
        known = set(store.get_source_ids())
        for source_id in sources:
            if source_id not in known:
                raise SourceNotFoundError(source_id)


def select_context(store: IndexStore, embedder: CodeEmbedder, query: str, budget: int, mode: str = "full",
                   format: str = "markdown", sources: Optional[Sequence[str]] = None,
                   include_imports: bool = False, base_path: Optional[str] = None, use_cache: bool = True,
                   diversity_penalty: bool = False, explain: bool = False,
                   require_index: bool = False) -> SelectionResult:
    """
    Select the most relevant context for a query within a token budget.

    The pipeline is: cache lookup, similarity search, optional import graph,
    ranking, packing, related-import expansion with the remaining budget,
    merging of adjacent chunks, formatting, cache store and history.

    Args:
        store: Index store
        embedder: Embedder for the query
        query: Natural-language query
        budget: Maximum number of tokens in the result
        mode: ``full`` or ``map`` (signatures only)
        format: ``markdown``, ``xml``, ``json`` or ``plain``
        sources: Restrict the search to these sources (None or empty means all)
        include_imports: Boost and add files imported by the selection
        base_path: Project directory used to resolve imports
        use_cache: Read and write the query cache
        diversity_penalty: Penalize many chunks from the same file
        explain: Append score breakdowns (bypasses the cache)
        require_index: Raise instead of returning an empty result when nothing is indexed

    Returns:
        SelectionResult; ``is_empty`` is set when nothing has been indexed

    Raises:
        ConfigValidationError: if the budget is invalid
        QueryError: if the query, format or mode is invalid
        SourceNotFoundError: if a requested source is not in the index
        IndexEmptyError: if ``require_index`` is set and the index is empty
    """
    start_time = time.time()
    _validate_request(store, query, budget, mode, format, sources)
    sources = sorted(set(sources)) if sources else None

    if store.chunk_count() == 0:
        if require_index:
            raise IndexEmptyError()
        return _empty_result(query)

    use_cache = use_cache and not explain and not diversity_penalty
    cache_key = index_version = None
    if use_cache:
        cache_key = generate_cache_key(query, budget, sources, format, mode, include_imports)
        index_version = store.compute_index_version()
        entry = store.get_cached_result(cache_key, index_version)
        cached = entry.result if entry is not None else {}
        if "text" in cached and "data" in cached:
            logger.debug("Cache hit for query %r", query)
            store.record_query(query, budget, format, mode, sources, cached["data"]["stats"]["totalTokens"],
                               cached["data"]["stats"]["chunksIncluded"])
            return _to_result(cached["text"], cached["data"], True, start_time)

    engine = _engine_for(store, embedder, sources)
    query_vector = embedder.embed_query(query)
    similar = [ScoredChunk(chunk=chunk, similarity=score)
               for chunk, score in engine.search_vector(query_vector, SIMILARITY_LIMIT)]

    import_graph = None
    if include_imports:
        import_graph = build_import_graph_from_store(store, base_path or os.getcwd())

    ranked = rank_chunks(similar, query, import_graph=import_graph, diversity_penalty=diversity_penalty)
    packed = pack(ranked, budget)

    if import_graph is not None and packed.total_tokens < budget:
        included_files = {item.file_path for item in packed.chunks}
        related_files = get_related_imports(list(dict.fromkeys(item.file_path for item in packed.chunks)),
                                            import_graph)
        candidates = _related_candidates(store, related_files, similar, query_vector, included_files)
        if candidates:
            related = pack(rank_chunks(candidates, query, import_graph=import_graph), budget - packed.total_tokens)
            packed = BudgetResult(
                chunks=packed.chunks + related.chunks,
                total_tokens=packed.total_tokens + related.total_tokens,
                excluded=packed.excluded + related.excluded,
            )

    merged = merge_adjacent_chunks(packed.chunks)
    result = BudgetResult(chunks=merged, total_tokens=sum(item.tokens for item in merged), excluded=packed.excluded)
    text, data = format_output(format, query, result, len(similar), mode=mode, explain=explain)

    if use_cache:
        store.set_cached_result(cache_key, {"text": text, "data": data}, index_version)

    store.record_query(query, budget, format, mode, sources, data["stats"]["totalTokens"],
                       data["stats"]["chunksIncluded"])
    logger.info("Selected %d chunks (%d tokens) from %d candidates in %.2f seconds",
                data["stats"]["chunksIncluded"], data["stats"]["totalTokens"], len(similar),
                time.time() - start_time)
    return _to_result(text, data, False, start_time)


class ContextEngine:
    """
    Facade over configuration, the index store, the embedder and the parser registry.

    Use as a context manager, or call close() when done.
    """

    def __init__(self, config: Config, store: Optional[IndexStore] = None,
                 embedder: Optional[CodeEmbedder] = None, registry: Optional[ParserRegistry] = None):
        """
        Initialize the engine.

        Args:
            config: Validated project configuration
            store: Index store (defaults to ``.codecontext/index.db`` under the project)
            embedder: Embedder (defaults to the configured OpenAI model)
            registry: Parser registry (defaults to all built-in parsers)
        """
        self.config = config
        self.store = store or IndexStore(get_db_path(config.base_dir))
        self.embedder = embedder or CodeEmbedder(
            model_name=config.settings.embedding_model,
            dimensions=config.settings.embedding_dimensions,
            api_key=get_api_key(),
        )
        self.registry = registry or ParserRegistry()

    @classmethod
    def from_config_dir(cls, project_dir: str, **kwargs) -> "ContextEngine":
        """Load ``.codecontext/config.yaml`` from a project directory and build an engine."""
        return cls(load_config(project_dir), **kwargs)

    def index_sources(self, source_ids: Optional[Sequence[str]] = None, force: bool = False,
                      cancel_event: Optional[threading.Event] = None, max_workers: int = 1,
                      progress: Optional[ProgressCallback] = None) -> IndexStats:
        """
        Index configured sources (all of them unless ``source_ids`` is given).

        Raises:
            NoSourcesError: if nothing is configured
            SourceNotFoundError: if a requested source is not configured
        """
        if source_ids:
            sources = [self.config.get_source(source_id) for source_id in source_ids]
        else:
            sources = list(self.config.sources)
        if not sources:
            raise NoSourcesError()
        return index_sources(sources, self.config.base_dir, self.store, self.embedder, self.registry,
                             self.config.settings, force=force, cancel_event=cancel_event,
                             max_workers=max_workers, progress=progress)

    def remove_source(self, source_id: str) -> int:
        return self.store.remove_source(source_id)

    def select_context(self, query: str, budget: int, mode: str = "full", format: str = "markdown",
                       sources: Optional[Sequence[str]] = None, include_imports: bool = False,
                       use_cache: bool = True, diversity_penalty: bool = False,
                       explain: bool = False, require_index: bool = False) -> SelectionResult:
        return select_context(self.store, self.embedder, query, budget, mode=mode, format=format, sources=sources,
                              include_imports=include_imports, base_path=self.config.base_dir,
                              use_cache=use_cache, diversity_penalty=diversity_penalty, explain=explain,
                              require_index=require_index)

    def search_symbols(self, query: str, exact: bool = False, limit: int = 20,
                       sources: Optional[Sequence[str]] = None) -> List[SymbolMatch]:
        return symbols.search_symbols(self.store, query, exact=exact, limit=limit, sources=sources)

    def build_call_graph(self, symbol: str, sources: Optional[Sequence[str]] = None) -> CallGraphResult:
        return symbols.build_call_graph(self.store, symbol, sources=sources)

    def clear_cache(self) -> int:
        return self.store.clear_cache()

    def get_query_history(self, limit: int = 20) -> List[HistoryEntry]:
        return self.store.get_query_history(limit)

    def get_index_stats(self) -> Dict:
        return self.store.get_index_stats()

    def close(self):
        self.registry.close()
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
