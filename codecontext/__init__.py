# This file re-exports the public API

from codecontext.models import (
    CacheEntry, Chunk, CodeBoundary, IndexStats, ParseResult, SelectionResult, Settings, SourceConfig, SymbolMatch,
    CallGraphResult,
)
from codecontext.errors import (
    ContextError, ConfigValidationError, EmbeddingError, IndexEmptyError, StorageTransactionError,
    is_recoverable,
)
from codecontext.config import Config, init_project, load_config, parse_config, validate_config
from codecontext.parsers import ParserRegistry
from codecontext.chunker import ChunkOptions, chunk_file
from codecontext.embedding import CodeEmbedder, cosine_similarity
from codecontext.indexing import VectorIndex
from codecontext.store import IndexStore
from codecontext.indexer import index_sources
from codecontext.scoring import rank_chunks
from codecontext.budget import pack, merge_adjacent_chunks
from codecontext.symbols import search_symbols, build_call_graph
from codecontext.search import ContextEngine, SearchEngine, search_similar, select_context

# Version information
__version__ = '0.1.0'
