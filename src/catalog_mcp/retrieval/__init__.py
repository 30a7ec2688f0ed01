"""Semantic and lexical retrieval over the service catalog."""

from .documents import (
    IndexCandidate,
    build_entity_documents,
    build_service_document,
    entity_key,
)
from .embedder import (
    EmbeddingProvider,
    HashingEmbeddingProvider,
    SentenceTransformerProvider,
    create_embedding_provider,
)
from .index import CorpusFingerprint, EmbeddingDocument, EmbeddingIndex, IndexHit
from .lexical import lexical_search
from .search import HybridSearchEngine, SearchOutcome, rerank

__all__ = [
    "CorpusFingerprint",
    "EmbeddingDocument",
    "EmbeddingIndex",
    "EmbeddingProvider",
    "HashingEmbeddingProvider",
    "HybridSearchEngine",
    "IndexCandidate",
    "IndexHit",
    "SearchOutcome",
    "SentenceTransformerProvider",
    "build_entity_documents",
    "build_service_document",
    "create_embedding_provider",
    "entity_key",
    "lexical_search",
    "rerank",
]
