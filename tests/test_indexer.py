"""
Tests for the indexer module.
"""

import os
import shutil
import tempfile
import threading
import unittest
from unittest.mock import patch

from codecontext.embedding import CodeEmbedder, HashingEmbeddingClient
from codecontext.errors import EmbeddingError, NoSourcesError
from codecontext.indexer import index_sources
from codecontext.models import Settings, SourceConfig
from codecontext.parsers import ParserRegistry
from codecontext.store import IndexStore

AUTH_TS = """export function login(user: string, password: string): boolean {
  return validateUser(user) && password.length > 0;
}

export function validateUser(user: string): boolean {
  return user.length > 0;
}
"""

UTILS_PY = """def slugify(text):
    return text.lower().replace(" ", "-")


def truncate(text, size):
    return text[:size]
"""


class TestIndexSources(unittest.TestCase):
    """Tests for index_sources."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.write("src/auth.ts", AUTH_TS)
        self.write("src/utils.py", UTILS_PY)
        self.source = SourceConfig(id="src", path="src", include=("**/*.ts", "**/*.py"),
                                   exclude=("**/node_modules/**",))
        self.store = IndexStore()
        self.embedder = CodeEmbedder(dimensions=32, client=HashingEmbeddingClient(32))
        self.registry = ParserRegistry()

    def tearDown(self):
        """Tear down test fixtures."""
        self.registry.close()
        self.store.close()
        shutil.rmtree(self.temp_dir)

    def write(self, rel_path, content):
        path = os.path.join(self.temp_dir, rel_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)

    def index(self, **kwargs):
        return index_sources([self.source], self.temp_dir, self.store, self.embedder, self.registry,
                             Settings(), **kwargs)

    def test_first_run(self):
        """Test that every file is chunked, embedded and stored."""
        stats = self.index()

        self.assertEqual(stats.files, 2)
        self.assertEqual(stats.files_changed, 2)
        self.assertGreater(stats.chunks, 0)
        self.assertEqual(self.store.chunk_count(), stats.chunks)
        self.assertEqual(self.store.get_index_stats()["embedded_count"], stats.chunks)
        names = {c.unit_name for c in self.store.get_chunks()}
        self.assertTrue({"login", "validateUser", "slugify", "truncate"} <= names)

    def test_second_run_is_a_no_op(self):
        """Test that indexing an unchanged tree writes nothing."""
        self.index()
        ids = [c.id for c in self.store.get_chunks()]
        version = self.store.compute_index_version()

        stats = self.index()

        self.assertEqual(stats.files_changed, 0)
        self.assertEqual(stats.files_unchanged, 2)
        self.assertEqual(stats.chunks, 0)
        self.assertEqual([c.id for c in self.store.get_chunks()], ids)
        self.assertEqual(self.store.compute_index_version(), version)

    def test_only_changed_files_reindexed(self):
        """Test that an edit re-chunks only the edited file."""
        self.index()
        before = {c.id: c.created_at for c in self.store.get_chunks() if c.file_path == "src/utils.py"}

        self.write("src/auth.ts", AUTH_TS + "\nexport const VERSION = 2;\n")
        stats = self.index()

        self.assertEqual(stats.files_changed, 1)
        after = {c.id: c.created_at for c in self.store.get_chunks() if c.file_path == "src/utils.py"}
        self.assertEqual(before, after)
        self.assertIn("VERSION", {c.unit_name for c in self.store.get_chunks_for_file("src/auth.ts")})

    def test_removed_file(self):
        """Test that deleted files lose their chunks and ledger rows."""
        self.index()
        os.remove(os.path.join(self.temp_dir, "src", "utils.py"))

        stats = self.index()

        self.assertEqual(stats.files_removed, 1)
        self.assertEqual(self.store.get_chunks_for_file("src/utils.py"), [])
        self.assertNotIn("src/utils.py", self.store.get_file_records("src"))

    def test_force(self):
        self.index()
        stats = self.index(force=True)
        self.assertEqual(stats.files_changed, 2)
        self.assertEqual(self.store.chunk_count(), stats.chunks)

    @patch.object(CodeEmbedder, "embed_chunks")
    def test_embedding_failure(self, mock_embed_chunks):
        """Test that failed batches are reported and left for the next run."""
        mock_embed_chunks.side_effect = EmbeddingError("provider down", attempts=4)

        stats = self.index()

        self.assertEqual(stats.files_failed, 2)
        self.assertEqual(len(stats.errors), 2)
        self.assertIn("provider down", stats.errors[0])
        self.assertEqual(self.store.chunk_count(), 0)
        self.assertEqual(self.store.get_file_records("src"), {})
        # The source is still registered
        self.assertEqual(self.store.get_source_ids(), ["src"])

    def test_failure_then_recovery(self):
        with patch.object(CodeEmbedder, "embed_chunks", side_effect=EmbeddingError("down")):
            self.index()
        stats = self.index()
        self.assertEqual(stats.files_changed, 2)
        self.assertEqual(stats.files_failed, 0)

    def test_cancellation_keeps_committed_files(self):
        """Test that cancelling mid-run keeps the batches already embedded."""
        self.embedder.batch_size = 1
        cancel_event = threading.Event()
        calls = []

        def progress(source_id, done, total):
            calls.append((source_id, done, total))
            cancel_event.set()

        stats = self.index(cancel_event=cancel_event, progress=progress)

        self.assertTrue(stats.cancelled)
        self.assertEqual(stats.files_changed, 1)
        self.assertEqual(calls, [("src", 1, 2)])
        self.assertEqual(len(self.store.get_file_records("src")), 1)

    def test_cancelled_before_start(self):
        cancel_event = threading.Event()
        cancel_event.set()
        stats = self.index(cancel_event=cancel_event)
        self.assertTrue(stats.cancelled)
        self.assertEqual(self.store.chunk_count(), 0)

    def test_progress(self):
        calls = []
        self.index(progress=lambda *args: calls.append(args))
        self.assertEqual(calls[-1], ("src", 2, 2))

    def test_no_sources(self):
        with self.assertRaises(NoSourcesError):
            index_sources([], self.temp_dir, self.store, self.embedder)

    def test_parallel_sources(self):
        """Test that several sources can be indexed concurrently."""
        self.write("docs/guide.md", "# Guide\n\nHow to log in.\n")
        docs = SourceConfig(id="docs", path="docs", include=("**/*.md",))

        stats = index_sources([self.source, docs], self.temp_dir, self.store, self.embedder, self.registry,
                              max_workers=2)

        self.assertEqual(stats.files_changed, 3)
        self.assertEqual(self.store.get_source_ids(), ["docs", "src"])
        self.assertEqual(self.store.chunk_count(), stats.chunks)


if __name__ == "__main__":
    unittest.main()
