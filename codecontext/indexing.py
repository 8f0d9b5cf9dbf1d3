"""
Indexing module for code context selection.

This module contains the in-memory vector index used for similarity search over
stored chunk embeddings.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import faiss

from codecontext.models import Chunk

logger = logging.getLogger(__name__)


class VectorIndex:
    """
    Vector index for similarity search using FAISS.

    Vectors are L2-normalized and stored in an inner-product index, so the scores
    returned by ``search`` are cosine similarities.
    """

    def __init__(self, dimensions=1536):
        """
        Initialize the vector index.

        Args:
            dimensions: The dimensions of the embedding vectors
        """
        self.dimensions = dimensions
        self.index = None
        self.id_to_chunk = {}

    def build_index(self, chunks: Sequence[Chunk]):
        """
        Build the vector index from chunks that carry embeddings.

        Chunks without an embedding are ignored.

        Args:
            chunks: Chunks whose ``embedding`` is set
        """
        vectors = []
        indexed = []

        for chunk in chunks:
            if chunk.embedding is None:
                continue
            vectors.append(self._fit(chunk.embedding))
            indexed.append(chunk)

        self.index = faiss.IndexFlatIP(self.dimensions)
        self.id_to_chunk = {}
        if vectors:
            vectors_array = np.array(vectors).astype('float32')
            faiss.normalize_L2(vectors_array)
            self.index.add(vectors_array)
            self.id_to_chunk = {i: chunk for i, chunk in enumerate(indexed)}

    def _fit(self, vector) -> np.ndarray:
        vector = np.asarray(vector, dtype=np.float32)
        if len(vector) != self.dimensions:
            logger.warning("Vector dimension mismatch. Expected %d, got %d.", self.dimensions, len(vector))
            if len(vector) > self.dimensions:
                vector = vector[:self.dimensions]
            else:
                padded = np.zeros(self.dimensions, dtype=np.float32)
                padded[:len(vector)] = vector
                vector = padded
        return vector

    def __len__(self):
        return 0 if self.index is None else self.index.ntotal

    def search(self, query_vector: np.ndarray, top_k: int) -> List[Tuple[Chunk, float]]:
        """
        Search the index for the most similar vectors to the query vector.

        Args:
            query_vector: The query vector to search for
            top_k: The number of results to return

        Returns:
            List of tuples containing (Chunk, cosine similarity), best first
        """
        if not len(self) or top_k <= 0:
            return []

        query = self._fit(query_vector).reshape(1, -1).astype('float32').copy()
        faiss.normalize_L2(query)
        similarities, indices = self.index.search(query, min(top_k, len(self)))

        results = []
        for i, idx in enumerate(indices[0]):
            if idx < 0:  # FAISS may return -1 for no results
                continue
            results.append((self.id_to_chunk[int(idx)], float(similarities[0][i])))

        return results


def build_vector_index(chunks: Sequence[Chunk], dimensions: Optional[int] = None) -> VectorIndex:
    """Build a VectorIndex sized to the first embedding found (or ``dimensions``)."""
    if dimensions is None:
        first = next((c.embedding for c in chunks if c.embedding is not None), None)
        dimensions = len(first) if first is not None else 1536
    index = VectorIndex(dimensions=dimensions)
    index.build_index(chunks)
    return index
