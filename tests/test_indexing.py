"""
Tests for the indexing module.
"""

import unittest
import numpy as np

from codecontext.indexing import VectorIndex, build_vector_index
from codecontext.models import Chunk


def make_chunk(name, embedding):
    return Chunk(id=f"chunk_{name}", source_id="s", file_path=f"path/to/{name}.py",
                 content=f"def {name}(): pass", start_line=1, end_line=1, tokens=5, embedding=embedding)


class TestVectorIndex(unittest.TestCase):
    """Tests for the VectorIndex class."""

    def setUp(self):
        """Set up test fixtures."""
        self.index = VectorIndex(dimensions=4)
        self.chunk1 = make_chunk("hello", np.array([0.1, 0.2, 0.3, 0.4], dtype=np.float32))
        self.chunk2 = make_chunk("world", np.array([0.5, 0.6, 0.7, 0.8], dtype=np.float32))
        self.chunk3 = make_chunk("other", np.array([-0.4, 0.0, 0.1, -0.9], dtype=np.float32))

    def test_build_index(self):
        """Test build_index method."""
        self.index.build_index([self.chunk1, self.chunk2])

        # Check that the index was created
        self.assertIsNotNone(self.index.index)
        self.assertEqual(len(self.index), 2)
        self.assertEqual(sorted(c.id for c in self.index.id_to_chunk.values()), ["chunk_hello", "chunk_world"])

    def test_build_index_skips_missing_embeddings(self):
        unembedded = make_chunk("none", None)
        self.index.build_index([self.chunk1, unembedded])
        self.assertEqual(len(self.index), 1)

    def test_search(self):
        """Test that search returns cosine similarities, best first."""
        self.index.build_index([self.chunk1, self.chunk2, self.chunk3])

        results = self.index.search(np.array([0.1, 0.2, 0.3, 0.4], dtype=np.float32), top_k=2)

        self.assertEqual(len(results), 2)
        self.assertEqual(results[0][0], self.chunk1)
        self.assertAlmostEqual(results[0][1], 1.0, places=5)
        self.assertGreaterEqual(results[0][1], results[1][1])

    def test_search_empty(self):
        """Test that an empty index returns no results."""
        self.assertEqual(self.index.search(np.ones(4, dtype=np.float32), top_k=5), [])
        self.index.build_index([])
        self.assertEqual(self.index.search(np.ones(4, dtype=np.float32), top_k=5), [])

    def test_top_k_larger_than_index(self):
        self.index.build_index([self.chunk1])
        self.assertEqual(len(self.index.search(np.ones(4, dtype=np.float32), top_k=10)), 1)

    def test_dimension_mismatch_fitted(self):
        """Test that query vectors of another width are padded or truncated."""
        self.index.build_index([self.chunk1])
        results = self.index.search(np.array([0.1, 0.2], dtype=np.float32), top_k=1)
        self.assertEqual(results[0][0], self.chunk1)

    def test_build_vector_index(self):
        index = build_vector_index([self.chunk1, self.chunk2])
        self.assertEqual(index.dimensions, 4)
        self.assertEqual(len(index), 2)


if __name__ == "__main__":
    unittest.main()
