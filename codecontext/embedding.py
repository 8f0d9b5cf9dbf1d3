"""
Embedding module for code context selection.

This module turns chunk and query text into fixed-width vectors using OpenAI's
embedding API, and provides the similarity helpers used at query time.
"""

import re
import os
import time
import hashlib
import logging
from types import SimpleNamespace
from typing import List, Optional, Sequence

import numpy as np
import openai

from codecontext.errors import EmbeddingError
from codecontext.models import Chunk
from codecontext.tokens import count_tokens, get_encoder

logger = logging.getLogger(__name__)

# Errors worth retrying: the request may succeed later
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)

MAX_INPUT_TOKENS = 8000

IDENTIFIER_PATTERN = re.compile(r'[A-Za-z_][A-Za-z0-9_]*|\d+')
CAMEL_PATTERN = re.compile(r'[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+')


class HashingEmbeddingClient:
    """
    Offline stand-in for the OpenAI client, used when no API key is configured.

    Produces deterministic bag-of-identifiers vectors via feature hashing, exposing
    the same ``client.embeddings.create(model=..., input=[...])`` shape.
    """

    class Embeddings:
        def __init__(self, dimensions: int):
            self.dimensions = dimensions

        def create(self, model=None, input=None, **kwargs):
            texts = input if isinstance(input, list) else [input]
            return SimpleNamespace(data=[SimpleNamespace(embedding=self.vectorize(t).tolist()) for t in texts])

        def vectorize(self, text: str) -> np.ndarray:
            vector = np.zeros(self.dimensions, dtype=np.float32)
            for token in tokenize_identifiers(text or ""):
                digest = hashlib.sha1(token.encode('utf-8')).digest()
                index = int.from_bytes(digest[:4], 'little') % self.dimensions
                sign = 1.0 if digest[4] & 1 else -1.0
                vector[index] += sign
            norm = np.linalg.norm(vector)
            return vector / norm if norm > 0 else vector

    def __init__(self, dimensions: int = 1536):
        self.embeddings = self.Embeddings(dimensions)


def tokenize_identifiers(text: str) -> List[str]:
    """Lower-cased identifiers plus their camelCase/snake_case parts."""
    tokens = []
    for word in IDENTIFIER_PATTERN.findall(text):
        lowered = word.lower()
        tokens.append(lowered)
        parts = [p.lower() for piece in word.split('_') for p in CAMEL_PATTERN.findall(piece)]
        if len(parts) > 1:
            tokens.extend(parts)
    return tokens


class CodeEmbedder:
    """
    Embeds chunks and queries into vectors using OpenAI's embedding API.

    This class handles batching, caching by content hash, input truncation, and
    bounded retry with exponential backoff for transient provider failures.
    """

    def __init__(self, model_name="text-embedding-3-small", cache=None, dimensions=1536, api_key=None,
                 batch_size=100, timeout=60.0, max_retries=3, backoff=1.0, client=None):
        """
        Initialize the CodeEmbedder.

        Args:
            model_name: The name of the OpenAI embedding model to use
            cache: Optional dictionary to cache embeddings by content hash
            dimensions: The dimensions of the embedding vectors
            api_key: Optional OpenAI API key. If not provided, will use the key from environment variables.
            batch_size: Number of texts sent per request
            timeout: Request timeout in seconds
            max_retries: Retries after the first attempt for transient errors
            backoff: Base delay in seconds, doubled on every retry
            client: Pre-built client (mainly for tests)
        """
        self.model_name = model_name
        self.cache = cache if cache is not None else {}
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff = backoff
        self.sleep = time.sleep

        if client is not None:
            self.client = client
        elif api_key or os.environ.get("OPENAI_API_KEY"):
            # Retries are handled here so the backoff policy is ours
            self.client = openai.OpenAI(api_key=api_key or os.environ["OPENAI_API_KEY"],
                                        timeout=timeout, max_retries=0)
        else:
            logger.warning("OPENAI_API_KEY is not set; using offline hashing embeddings")
            self.client = HashingEmbeddingClient(dimensions)

    @property
    def is_offline(self) -> bool:
        return isinstance(self.client, HashingEmbeddingClient)

    def embed_chunks(self, chunks: List[Chunk]) -> List[np.ndarray]:
        """
        Embed chunk contents, using the cache when available.

        Args:
            chunks: Chunks to embed

        Returns:
            One float32 vector per chunk, in input order
        """
        start_time = time.time()
        results: List[Optional[np.ndarray]] = [None] * len(chunks)
        pending_idx = []
        pending_texts = []

        for i, chunk in enumerate(chunks):
            content_hash = chunk.get_content_hash()
            if content_hash in self.cache:
                results[i] = self.cache[content_hash]
            else:
                pending_idx.append(i)
                pending_texts.append(chunk.content)

        if pending_texts:
            vectors = self.embed_texts(pending_texts)
            for i, vector in zip(pending_idx, vectors):
                results[i] = vector
                self.cache[chunks[i].get_content_hash()] = vector

        logger.debug("Embedded %d chunks in %.2f seconds (cache hits: %d)",
                     len(chunks), time.time() - start_time, len(chunks) - len(pending_texts))
        return results

    def embed_query(self, query: str) -> np.ndarray:
        """
        Embed a search query.

        Args:
            query: The search query to embed

        Returns:
            Embedding vector for the query
        """
        return self.embed_texts([query])[0]

    def embed_texts(self, texts: Sequence[str]) -> List[np.ndarray]:
        """
        Embed texts in batches.

        Args:
            texts: Texts to embed

        Returns:
            List of float32 vectors of length ``dimensions``

        Raises:
            EmbeddingError: when a batch still fails after all retries
        """
        cleaned = [self._prepare_text(text) for text in texts]
        vectors = []
        total_batches = (len(cleaned) + self.batch_size - 1) // self.batch_size
        for i in range(0, len(cleaned), self.batch_size):
            batch = cleaned[i:i + self.batch_size]
            logger.debug("Embedding batch %d/%d", i // self.batch_size + 1, total_batches)
            vectors.extend(self._request_batch(batch))
        return vectors

    def _request_batch(self, batch: List[str]) -> List[np.ndarray]:
        attempt = 0
        sanitized = False
        while True:
            try:
                response = self.client.embeddings.create(model=self.model_name, input=batch)
                return [self._fit_dimensions(item.embedding) for item in response.data]
            except TRANSIENT_ERRORS as e:
                if attempt >= self.max_retries:
                    raise EmbeddingError(f"Embedding request failed after {attempt + 1} attempts: {e}",
                                         attempts=attempt + 1)
                delay = self.backoff * (2 ** attempt)
                logger.warning("Embedding request failed (%s); retrying in %.1fs", e, delay)
                self.sleep(delay)
                attempt += 1
            except openai.BadRequestError as e:
                if sanitized:
                    raise EmbeddingError(f"Embedding request rejected: {e}", attempts=attempt + 1)
                logger.warning("Embedding input rejected (%s); retrying with aggressive sanitization", e)
                batch = [self._sanitize_text(text, aggressive=True) for text in batch]
                sanitized = True
            except openai.OpenAIError as e:
                raise EmbeddingError(f"Embedding request failed: {e}", attempts=attempt + 1)

    def _fit_dimensions(self, embedding) -> np.ndarray:
        vector = np.asarray(embedding, dtype=np.float32)
        if len(vector) > self.dimensions:
            return vector[:self.dimensions]
        if len(vector) < self.dimensions:
            padded = np.zeros(self.dimensions, dtype=np.float32)
            padded[:len(vector)] = vector
            return padded
        return vector

    def _prepare_text(self, text) -> str:
        if text is None:
            return ""
        if not isinstance(text, str):
            text = str(text)
        text = self._sanitize_text(text)
        if not text.strip():
            return "empty_content"
        if count_tokens(text) > MAX_INPUT_TOKENS:
            encoder = get_encoder()
            text = encoder.decode(encoder.encode(text, disallowed_special=())[:MAX_INPUT_TOKENS])
        return text

    def _sanitize_text(self, text, aggressive=False):
        """
        Sanitize text to ensure it's valid for the OpenAI API.

        Args:
            text: The text to sanitize
            aggressive: Whether to apply more aggressive sanitization

        Returns:
            Sanitized text
        """
        if not text:
            return ""

        # Replace null bytes and other control characters
        text = ''.join(ch if ord(ch) >= 32 or ch in '\n\r\t' else ' ' for ch in text)

        # Remove unpaired surrogates and zero-width formatting characters
        text = re.sub(r'[\uD800-\uDFFF]', ' ', text)
        text = re.sub(r'[​-‏‪-‮﻿]', '', text)

        if aggressive:
            text = ''.join(ch if ord(ch) < 128 else ' ' for ch in text)
            text = re.sub(r'\s+', ' ', text)
            text = re.sub(r'[\\"\'\x00-\x1F\x7F-\x9F]', ' ', text)
            if not text.strip():
                return "empty_content"

        return text


def cosine_similarity(a, b) -> float:
    """
    Cosine similarity of two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        A value in [-1, 1]; 0.0 when either vector is all zeros
    """
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))


def to_blob(vector) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def from_blob(blob: Optional[bytes]) -> Optional[np.ndarray]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).copy()
