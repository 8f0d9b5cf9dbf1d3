"""
Tests for the models module.
"""

import unittest
import hashlib
from codecontext.chunker import ChunkOptions
from codecontext.models import (
    ChangeSet, Chunk, DiscoveredFile, IndexStats, Settings, SourceConfig, make_chunk_id,
)


class TestChunkId(unittest.TestCase):
    """Tests for make_chunk_id."""

    def test_format(self):
        """Test that IDs are 'chunk_' plus 16 hex characters of the sha256."""
        expected = hashlib.sha256("src:src/a.ts:1:10".encode("utf-8")).hexdigest()[:16]
        self.assertEqual(make_chunk_id("src", "src/a.ts", 1, 10), "chunk_" + expected)

    def test_deterministic(self):
        """Test that the same inputs always give the same ID."""
        self.assertEqual(make_chunk_id("s", "a.py", 3, 4), make_chunk_id("s", "a.py", 3, 4))
        self.assertNotEqual(make_chunk_id("s", "a.py", 3, 4), make_chunk_id("s", "a.py", 3, 5))


class TestChunk(unittest.TestCase):
    """Tests for the Chunk class."""

    def test_get_content_hash(self):
        """Test get_content_hash method."""
        content = "def hello(): pass"
        chunk = Chunk(id="chunk_1", source_id="s", file_path="a.py", content=content,
                      start_line=1, end_line=1, tokens=5)
        self.assertEqual(chunk.get_content_hash(), hashlib.sha256(content.encode("utf-8")).hexdigest())

    def test_defaults(self):
        """Test default kind and optional fields."""
        chunk = Chunk(id="chunk_1", source_id="s", file_path="a.py", content="x", start_line=1, end_line=1,
                      tokens=1)
        self.assertEqual(chunk.kind, "token-block")
        self.assertIsNone(chunk.unit_name)
        self.assertIsNone(chunk.embedding)


class TestSettings(unittest.TestCase):
    """Tests for the Settings class."""

    def test_unit_token_limit_defaults_to_twice_chunk_size(self):
        self.assertEqual(ChunkOptions.from_settings(Settings(chunk_size=300)).unit_token_limit, 600)

    def test_unit_token_limit_explicit(self):
        options = ChunkOptions.from_settings(Settings(chunk_size=300, max_unit_tokens=400))
        self.assertEqual(options.unit_token_limit, 400)


class TestIndexStats(unittest.TestCase):
    """Tests for IndexStats."""

    def test_merge(self):
        """Test that merge sums counters and concatenates errors."""
        a = IndexStats(files=2, chunks=5, files_failed=1, errors=["a.ts: boom"])
        b = IndexStats(files=3, chunks=1, cancelled=True)
        merged = a.merge(b)
        self.assertEqual(merged.files, 5)
        self.assertEqual(merged.chunks, 6)
        self.assertEqual(merged.files_failed, 1)
        self.assertEqual(merged.errors, ["a.ts: boom"])
        self.assertTrue(merged.cancelled)

    def test_to_dict(self):
        self.assertEqual(IndexStats(files=1).to_dict()["files"], 1)


class TestChangeSet(unittest.TestCase):
    """Tests for ChangeSet."""

    def test_to_process(self):
        new = DiscoveredFile("s", "a.py", "x", "h1")
        changed = DiscoveredFile("s", "b.py", "y", "h2")
        unchanged = DiscoveredFile("s", "c.py", "z", "h3")
        changes = ChangeSet(new=[new], changed=[changed], unchanged=[unchanged])
        self.assertEqual(changes.to_process, [new, changed])

    def test_source_config_is_immutable(self):
        source = SourceConfig(id="s", path=".")
        with self.assertRaises(Exception):
            source.id = "other"


if __name__ == "__main__":
    unittest.main()
