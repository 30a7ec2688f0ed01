"""
Embedding providers for catalog documents and queries.

Two providers share one async interface:
- SentenceTransformerProvider: local transformer model (all-MiniLM-L6-v2 by default)
- HashingEmbeddingProvider: dependency-free term-frequency vectors hashed
  into a fixed dimension

Both are deterministic for a fixed model version and input. Provider
failures surface as UpstreamError(provider="embedding") so callers can
degrade to lexical search.
"""

import asyncio
import hashlib
import math
import re
from abc import ABC, abstractmethod
from collections import Counter
from typing import Optional

from loguru import logger

from ..config import Config
from ..errors import UpstreamError


class EmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    model_id: str
    model_version: str

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Generate a fixed-dimension embedding vector for text."""

    async def warm_up(self) -> None:
        """Load any model state ahead of the first embed() call."""


class HashingEmbeddingProvider(EmbeddingProvider):
    """
    Term-frequency embeddings hashed into a fixed-size vector.

    Simple, dependency-free approach:
    1. Tokenize text into lowercase words
    2. Hash each word into one of `dimension` buckets with a sign bit
    3. Accumulate term frequencies
    4. Normalize to unit length for cosine similarity

    Unlike a corpus TF-IDF vocabulary the dimension never changes, so
    vectors stay comparable across index rebuilds.
    """

    def __init__(self, dimension: int = 384, model_version: str = "1"):
        if dimension <= 0:
            raise ValueError(f"dimension must be > 0, got {dimension}")
        self.dimension = dimension
        self.model_id = f"hashing-tf-{dimension}"
        self.model_version = model_version

    def _tokenize(self, text: str) -> list[str]:
        """
        Tokenize text into lowercase words.

        Args:
            text: Input text to tokenize

        Returns:
            List of lowercase word tokens
        """
        # Underscores split too, so SERVICE_ID parts match query words
        return re.findall(r"[a-z0-9]+", text.lower())

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "big")
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self.dimension, sign

    def _normalize_vector(self, vector: list[float]) -> list[float]:
        magnitude = math.sqrt(sum(x * x for x in vector))
        if magnitude == 0:
            return vector
        return [x / magnitude for x in vector]

    def embed_sync(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        words = self._tokenize(text or "")
        if not words:
            return vector

        total_words = len(words)
        for word, count in Counter(words).items():
            index, sign = self._bucket(word)
            vector[index] += sign * (count / total_words)

        return self._normalize_vector(vector)

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)


class SentenceTransformerProvider(EmbeddingProvider):
    """
    Sentence transformers embedding provider using a pre-trained model.

    The model is loaded lazily in a worker thread; inference also runs
    off the event loop. Vectors are L2-normalized.
    """

    def __init__(self, model_name: str, model_version: str = "1.0"):
        self.model_id = model_name
        self.model_version = model_version
        self._model = None
        self._load_lock = asyncio.Lock()

    def _load(self):
        from sentence_transformers import SentenceTransformer

        return SentenceTransformer(self.model_id)

    async def _get_model(self):
        if self._model is not None:
            return self._model
        async with self._load_lock:
            if self._model is None:
                logger.info(f"Loading embedding model {self.model_id}...")
                try:
                    self._model = await asyncio.to_thread(self._load)
                except Exception as e:
                    raise UpstreamError("embedding", self.model_id, f"model load failed: {e}") from e
                logger.info(f"Embedding model {self.model_id} loaded")
        return self._model

    async def warm_up(self) -> None:
        await self._get_model()

    async def embed(self, text: str) -> list[float]:
        model = await self._get_model()
        try:
            embedding = await asyncio.to_thread(
                model.encode, text, convert_to_numpy=True, normalize_embeddings=True
            )
        except Exception as e:
            raise UpstreamError("embedding", self.model_id, str(e)) from e
        return [float(x) for x in embedding.tolist()]


def create_embedding_provider(provider_name: Optional[str] = None) -> EmbeddingProvider:
    """
    Build the configured embedding provider.

    Args:
        provider_name: Override for Config.EMBEDDING_PROVIDER

    Returns:
        EmbeddingProvider instance (model not loaded yet)
    """
    name = provider_name or Config.EMBEDDING_PROVIDER
    if name == "hashing":
        return HashingEmbeddingProvider(
            dimension=Config.EMBEDDING_DIMENSION,
            model_version=Config.EMBEDDING_MODEL_VERSION,
        )
    if name == "sentence-transformers":
        return SentenceTransformerProvider(
            Config.EMBEDDING_MODEL, model_version=Config.EMBEDDING_MODEL_VERSION
        )
    raise ValueError(f"Unknown embedding provider: {name}")
