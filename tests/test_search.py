"""
Tests for the search module.
"""

import os
import shutil
import tempfile
import unittest

import numpy as np

from codecontext.config import init_project, parse_config
from codecontext.embedding import CodeEmbedder, HashingEmbeddingClient
from codecontext.errors import (
    ConfigValidationError, IndexEmptyError, NoSourcesError, QueryError, SourceNotFoundError,
)
from codecontext.indexing import VectorIndex
from codecontext.models import Chunk
from codecontext.search import (
    ContextEngine, SearchEngine, build_import_graph_from_store, search_similar, select_context,
)
from codecontext.store import IndexStore
from codecontext.symbols import search_symbols

AUTH_TS = """import { createSession, destroySession } from './session';
import { checkPassword } from './password';
import type { User } from './types';

export function login(user: string, password: string): boolean {
  if (!checkPassword(user, password)) {
    return false;
  }
  createSession(user);
  return true;
}
"""

SESSION_TS = """export function createSession(user: string) {
  return { user, createdAt: Date.now() };
}
"""

MATH_PY = """def add(a, b):
    return a + b


def multiply(a, b):
    return a * b
"""

GUIDE_MD = """# Guide

Call login with a user name and password to start a session.
"""


class TestSearchEngine(unittest.TestCase):
    """Tests for the SearchEngine class."""

    def setUp(self):
        """Set up test fixtures."""
        self.embedder = CodeEmbedder(dimensions=4, client=HashingEmbeddingClient(4))
        self.index = VectorIndex(dimensions=4)
        self.chunk1 = Chunk(id="chunk_1", source_id="s", file_path="a.py", content="def hello(): pass",
                            start_line=1, end_line=1, tokens=5, embedding=np.array([1, 0, 0, 0], dtype=np.float32))
        self.chunk2 = Chunk(id="chunk_2", source_id="s", file_path="b.py", content="def world(): pass",
                            start_line=1, end_line=1, tokens=5, embedding=np.array([0, 1, 0, 0], dtype=np.float32))
        self.index.build_index([self.chunk1, self.chunk2])
        self.search_engine = SearchEngine(self.embedder, self.index)

    def test_search_vector(self):
        """Test search_vector method."""
        results = self.search_engine.search_vector(np.array([0.9, 0.1, 0, 0], dtype=np.float32), top_k=2)

        # Check the results
        self.assertEqual([chunk.id for chunk, _ in results], ["chunk_1", "chunk_2"])
        self.assertGreater(results[0][1], results[1][1])

    def test_search(self):
        """Test that search embeds the query before searching."""
        results = self.search_engine.search("hello", top_k=1)
        self.assertEqual(len(results), 1)


class TestSelectContext(unittest.TestCase):
    """End-to-end tests for indexing and context selection."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.write("src/auth.ts", AUTH_TS)
        self.write("src/session.ts", SESSION_TS)
        self.write("src/math.py", MATH_PY)
        self.write("docs/guide.md", GUIDE_MD)

        raw = {
            "version": 1,
            "sources": [
                {"id": "src", "path": "src",
                 "patterns": {"include": ["**/*.ts", "**/*.py"], "exclude": ["**/node_modules/**"]}},
                {"id": "docs", "path": "docs",
                 "patterns": {"include": ["**/*.md"], "exclude": ["**/node_modules/**"]}},
            ],
        }
        self.config = parse_config(raw, self.temp_dir)
        self.engine = ContextEngine(self.config, store=IndexStore(),
                                    embedder=CodeEmbedder(dimensions=512, client=HashingEmbeddingClient(512)))

    def tearDown(self):
        """Tear down test fixtures."""
        self.engine.close()
        shutil.rmtree(self.temp_dir)

    def write(self, rel_path, content):
        path = os.path.join(self.temp_dir, rel_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)

    def test_empty_index(self):
        """Test that querying before indexing returns an empty result."""
        result = self.engine.select_context("how does login work", 2000)

        self.assertTrue(result.is_empty)
        self.assertEqual(result.context, "")
        self.assertEqual(result.chunks, [])

    def test_empty_index_required(self):
        with self.assertRaises(IndexEmptyError):
            self.engine.select_context("how does login work", 2000, require_index=True)

    def test_select_and_cache(self):
        """Test selection, then a cache hit for the same request."""
        self.engine.index_sources()

        first = self.engine.select_context("how does login work", 2000)
        second = self.engine.select_context("how does login work", 2000)

        self.assertFalse(first.cache_hit)
        self.assertTrue(second.cache_hit)
        self.assertEqual(first.context, second.context)
        self.assertEqual(first.data, second.data)
        self.assertEqual(first.chunks[0]["file"], "src/auth.ts")
        self.assertIn("export function login", first.context)
        self.assertLessEqual(first.tokens_used, 2000)
        self.assertEqual(len(self.engine.get_query_history()), 2)

    def test_cache_invalidated_by_reindex(self):
        """Test that changing the index invalidates cached selections."""
        self.engine.index_sources()
        self.engine.select_context("how does login work", 2000)

        self.write("src/math.py", MATH_PY + "\n\ndef subtract(a, b):\n    return a - b\n")
        self.engine.index_sources()
        result = self.engine.select_context("how does login work", 2000)

        self.assertFalse(result.cache_hit)

    def test_cache_key_covers_format(self):
        self.engine.index_sources()
        self.engine.select_context("login", 2000)
        result = self.engine.select_context("login", 2000, format="xml")
        self.assertFalse(result.cache_hit)
        self.assertTrue(result.context.startswith("<context>"))

    def test_explain_bypasses_cache(self):
        self.engine.index_sources()
        first = self.engine.select_context("login", 2000, explain=True)
        second = self.engine.select_context("login", 2000, explain=True)
        self.assertFalse(second.cache_hit)
        self.assertIn("## Scoring Details", first.context)

    def test_budget_respected(self):
        """Test that a tiny budget selects nothing rather than overflowing."""
        self.engine.index_sources()
        result = self.engine.select_context("login", 1)
        self.assertEqual(result.tokens_used, 0)
        self.assertEqual(result.chunks, [])
        self.assertFalse(result.is_empty)

    def test_source_filter(self):
        self.engine.index_sources()
        result = self.engine.select_context("login session", 5000, sources=["docs"])
        self.assertEqual({c["file"] for c in result.chunks}, {"docs/guide.md"})

    def test_include_imports(self):
        """Test that files imported by the selection are graphed and included."""
        self.engine.index_sources()

        graph = build_import_graph_from_store(self.engine.store, self.temp_dir)
        self.assertEqual(graph.imports["src/auth.ts"], ["src/session.ts"])

        result = self.engine.select_context("login password", 5000, include_imports=True)
        self.assertIn("src/session.ts", {c["file"] for c in result.chunks})

    def test_map_mode(self):
        self.engine.index_sources()
        result = self.engine.select_context("login", 5000, mode="map")
        self.assertIn("export function login(user: string, password: string): boolean", result.context)
        self.assertNotIn("createSession(user);", result.context)

    def test_invalid_requests(self):
        """Test request validation."""
        self.engine.index_sources()
        with self.assertRaises(ConfigValidationError):
            self.engine.select_context("login", 0)
        with self.assertRaises(QueryError):
            self.engine.select_context("   ", 1000)
        with self.assertRaises(QueryError):
            self.engine.select_context("login", 1000, format="html")
        with self.assertRaises(QueryError):
            self.engine.select_context("login", 1000, mode="outline")
        with self.assertRaises(SourceNotFoundError):
            self.engine.select_context("login", 1000, sources=["nope"])

    def test_search_similar(self):
        self.engine.index_sources()
        results = search_similar(self.engine.store, self.engine.embedder, "multiply", limit=3)
        self.assertLessEqual(len(results), 3)
        self.assertEqual(results[0].file_path, "src/math.py")
        similarities = [r.similarity for r in results]
        self.assertEqual(similarities, sorted(similarities, reverse=True))

    def test_select_context_function(self):
        """Test the module-level pipeline without the facade."""
        self.engine.index_sources()
        result = select_context(self.engine.store, self.engine.embedder, "login", 2000, use_cache=False)
        self.assertFalse(result.cache_hit)
        self.assertEqual(self.engine.store.get_cache_stats()["entry_count"], 0)

    def test_facade_operations(self):
        """Test symbol search, call graph, stats and source removal through the facade."""
        self.engine.index_sources()

        matches = self.engine.search_symbols("login", exact=True)
        self.assertEqual([(m.file_path, m.line) for m in matches], [("src/auth.ts", 5)])

        graph = self.engine.build_call_graph("login")
        self.assertIn("createSession", [c.name for c in graph.callees])

        self.assertGreater(self.engine.get_index_stats()["chunk_count"], 0)
        self.engine.select_context("login", 2000)
        self.assertEqual(self.engine.clear_cache(), 1)

        self.assertGreater(self.engine.remove_source("docs"), 0)
        self.assertEqual(self.engine.store.get_source_ids(), ["src"])

    def test_index_unknown_source(self):
        with self.assertRaises(SourceNotFoundError):
            self.engine.index_sources(["nope"])


class TestLoginScenario(unittest.TestCase):
    """Index two small files and select context for a login query."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        os.makedirs(os.path.join(self.temp_dir, "src"))
        for name, content in (("a.ts", "export function login(user) { return user; }\n"),
                              ("b.ts", "function helper() {}\n")):
            with open(os.path.join(self.temp_dir, "src", name), "w", encoding="utf-8") as f:
                f.write(content)

        raw = {
            "version": 1,
            "sources": [{"id": "src", "path": "src",
                         "patterns": {"include": ["**/*.ts"], "exclude": ["**/node_modules/**"]}}],
        }
        self.engine = ContextEngine(parse_config(raw, self.temp_dir), store=IndexStore(),
                                    embedder=CodeEmbedder(dimensions=512, client=HashingEmbeddingClient(512)))
        self.engine.index_sources()

    def tearDown(self):
        """Tear down test fixtures."""
        self.engine.close()
        shutil.rmtree(self.temp_dir)

    def test_login_file_ranks_first(self):
        result = self.engine.select_context("login", 2000)

        files = [c["file"] for c in result.chunks]
        self.assertEqual(files, ["src/a.ts", "src/b.ts"])
        self.assertGreater(result.chunks[0]["score"], result.chunks[1]["score"])
        self.assertIn("export function login(user)", result.context)

    def test_exact_symbol_search(self):
        matches = search_symbols(self.engine.store, "login", exact=True)

        self.assertEqual(len(matches), 1)
        self.assertEqual((matches[0].file_path, matches[0].line), ("src/a.ts", 1))


class TestContextEngineFromConfigDir(unittest.TestCase):
    """Tests for building an engine from a project directory."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Tear down test fixtures."""
        shutil.rmtree(self.temp_dir)

    def test_default_store_location(self):
        init_project(self.temp_dir)
        embedder = CodeEmbedder(dimensions=8, client=HashingEmbeddingClient(8))
        with ContextEngine.from_config_dir(self.temp_dir, embedder=embedder) as engine:
            self.assertTrue(os.path.exists(os.path.join(self.temp_dir, ".codecontext", "index.db")))
            with self.assertRaises(NoSourcesError):
                engine.index_sources()


if __name__ == "__main__":
    unittest.main()
