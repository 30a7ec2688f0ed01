"""
In-memory vector index with a versioned JSON snapshot.

The index maps document keys (service id or "<service id>::<entity>")
to embedding vectors and answers cosine nearest-neighbour queries.

Writers build a new entry map and swap it in, so a query running during
a rebuild sees a stale but internally consistent index.
"""

import asyncio
import hashlib
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import numpy as np
from loguru import logger

from ..errors import UpstreamError
from ..registry.models import ServiceRecord
from .documents import ENTITY_KEY_SEPARATOR, IndexCandidate
from .embedder import EmbeddingProvider

SNAPSHOT_FORMAT = 1
PROGRESS_LOG_EVERY = 100


@dataclass(frozen=True)
class EmbeddingDocument:
    """Embedded document. Immutable once stored."""

    key: str
    text: str
    vector: tuple[float, ...]
    metadata: dict[str, Any]


@dataclass(frozen=True)
class IndexHit:
    key: str
    score: float
    metadata: dict[str, Any]


@dataclass(frozen=True)
class CorpusFingerprint:
    """
    Identity of the indexed corpus.

    signature: sha256 over sorted service ids plus per-service entity counts
    service_ids: sorted ids, kept so drift can be measured on load
    """

    signature: str
    service_ids: tuple[str, ...]

    @classmethod
    def from_records(cls, records: Iterable[ServiceRecord]) -> "CorpusFingerprint":
        counts = {
            record.service_id: len(record.schema) if record.schema else 0
            for record in records
        }
        service_ids = tuple(sorted(counts))
        payload = ",".join(service_ids) + "|" + ",".join(str(counts[sid]) for sid in service_ids)
        return cls(
            signature=hashlib.sha256(payload.encode("utf-8")).hexdigest(),
            service_ids=service_ids,
        )

    def drift_from(self, other_ids: Iterable[str]) -> float:
        """Fraction of ids added or removed relative to this corpus."""
        current = set(self.service_ids)
        changed = current.symmetric_difference(other_ids)
        return len(changed) / max(len(current), 1)


class EmbeddingIndex:
    """
    Embedding index over catalog documents.

    Features:
    - One vector dimensionality for the index lifetime
    - Per-candidate failures logged and skipped
    - Snapshot guarded by model id, model version and corpus signature
    - Corpus drift within tolerance reuses the snapshot and embeds only
      the missing candidates
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        snapshot_path: Optional[str] = None,
        drift_tolerance: float = 0.05,
    ):
        self.provider = provider
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self.drift_tolerance = drift_tolerance
        self._entries: dict[str, EmbeddingDocument] = {}
        self._dimension: Optional[int] = None
        self._matrix_cache: Optional[
            tuple[dict[str, EmbeddingDocument], list[str], np.ndarray, np.ndarray]
        ] = None
        self._write_lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return bool(self._entries)

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[EmbeddingDocument]:
        return self._entries.get(key)

    def _check_dimension(self, size: int) -> None:
        if size == 0:
            raise UpstreamError("embedding", self.provider.model_id, "provider returned an empty vector")
        if self._dimension is None:
            self._dimension = size
        elif size != self._dimension:
            raise UpstreamError(
                "embedding",
                self.provider.model_id,
                f"vector dimension {size} does not match index dimension {self._dimension}",
            )

    async def embed(self, text: str) -> list[float]:
        """Embed text through the provider, enforcing the index dimension."""
        vector = await self.provider.embed(text)
        self._check_dimension(len(vector))
        return vector

    async def index_all(
        self,
        candidates: Iterable[IndexCandidate],
        replace: bool = True,
        drop: Iterable[str] = (),
    ) -> int:
        """
        Embed and store candidates.

        Args:
            candidates: Documents to embed
            replace: Start from an empty index instead of appending
            drop: Keys removed once at least one candidate is indexed

        Returns:
            Number of candidates indexed
        """
        async with self._write_lock:
            started = datetime.now(timezone.utc)
            entries = {} if replace else dict(self._entries)
            indexed = 0
            failed = 0

            for candidate in candidates:
                try:
                    vector = await self.embed(candidate.text)
                except Exception as e:
                    failed += 1
                    logger.warning(f"Failed to embed {candidate.key}: {e}")
                    continue

                entries[candidate.key] = EmbeddingDocument(
                    key=candidate.key,
                    text=candidate.text,
                    vector=tuple(vector),
                    metadata=dict(candidate.metadata),
                )
                indexed += 1
                if indexed % PROGRESS_LOG_EVERY == 0:
                    logger.info(f"  Indexed {indexed} documents...")

            if indexed:
                for key in drop:
                    entries.pop(key, None)
            self._entries = entries

        elapsed_ms = (datetime.now(timezone.utc) - started).total_seconds() * 1000
        logger.info(f"Indexed {indexed} documents in {elapsed_ms:.0f}ms ({failed} failed)")
        return indexed

    def _matrix(self) -> tuple[dict[str, EmbeddingDocument], list[str], np.ndarray, np.ndarray]:
        entries = self._entries
        cache = self._matrix_cache
        if cache is not None and cache[0] is entries:
            return cache

        keys = list(entries)
        if keys:
            matrix = np.array([entries[key].vector for key in keys], dtype=float)
            norms = np.linalg.norm(matrix, axis=1)
        else:
            matrix = np.zeros((0, 0), dtype=float)
            norms = np.zeros(0, dtype=float)
        self._matrix_cache = (entries, keys, matrix, norms)
        return self._matrix_cache

    async def query(self, text: str, k: int, min_score: float = 0.0) -> list[IndexHit]:
        """
        Nearest-neighbour search by cosine similarity.

        Args:
            text: Query text
            k: Maximum number of hits
            min_score: Similarity floor

        Returns:
            Hits sorted by descending score
        """
        # Vectors and metadata come from one entry map even if a rebuild swaps it mid-query
        entries, keys, matrix, norms = self._matrix()
        if not keys or k <= 0:
            return []

        query_vector = np.asarray(await self.embed(text), dtype=float)
        query_norm = np.linalg.norm(query_vector)
        if query_norm == 0.0:
            return []

        denominators = norms * query_norm
        scores = np.divide(
            matrix @ query_vector,
            denominators,
            out=np.zeros(len(keys), dtype=float),
            where=denominators > 0,
        )

        order = np.argsort(-scores, kind="stable")
        hits = []
        for position in order:
            score = float(scores[position])
            if score < min_score:
                break
            key = keys[position]
            hits.append(IndexHit(key=key, score=score, metadata=dict(entries[key].metadata)))
            if len(hits) >= k:
                break
        return hits

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------

    def save_snapshot(self, corpus: CorpusFingerprint) -> bool:
        """Write the index atomically to the snapshot path."""
        if self.snapshot_path is None:
            return False

        snapshot = {
            "format": SNAPSHOT_FORMAT,
            "modelId": self.provider.model_id,
            "modelVersion": self.provider.model_version,
            "dimension": self._dimension,
            "corpusSignature": corpus.signature,
            "serviceIds": list(corpus.service_ids),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "entries": {
                key: {
                    "vector": list(document.vector),
                    "text": document.text,
                    "metadata": document.metadata,
                }
                for key, document in self._entries.items()
            },
        }

        tmp_path = self.snapshot_path.with_name(self.snapshot_path.name + ".tmp")
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(snapshot), encoding="utf-8")
            os.replace(tmp_path, self.snapshot_path)
        except OSError as e:
            logger.warning(f"Failed to save embedding snapshot: {e}")
            return False

        logger.info(f"Saved {len(self._entries)} embeddings to {self.snapshot_path}")
        return True

    def load_snapshot(self, corpus: CorpusFingerprint) -> bool:
        """
        Load the snapshot if it was built by the same model for this corpus.

        A model id/version mismatch is a hard miss. A corpus signature
        mismatch is tolerated when the fraction of added or removed
        service ids is within drift_tolerance.

        Returns:
            True if the snapshot was loaded
        """
        if self.snapshot_path is None or not self.snapshot_path.exists():
            logger.debug("No embedding snapshot found")
            return False

        try:
            snapshot = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read embedding snapshot: {e}")
            return False

        if not isinstance(snapshot, dict):
            logger.warning("Embedding snapshot is not a JSON object, reindexing")
            return False

        if snapshot.get("modelId") != self.provider.model_id:
            logger.info(
                f"Snapshot model mismatch ({snapshot.get('modelId')} vs {self.provider.model_id}), reindexing"
            )
            return False

        if snapshot.get("modelVersion") != self.provider.model_version:
            logger.info(
                f"Snapshot model version mismatch ({snapshot.get('modelVersion')} vs "
                f"{self.provider.model_version}), reindexing"
            )
            return False

        if snapshot.get("corpusSignature") != corpus.signature:
            drift = corpus.drift_from(snapshot.get("serviceIds") or [])
            if drift > self.drift_tolerance:
                logger.info(
                    f"Snapshot corpus drift {drift:.1%} exceeds {self.drift_tolerance:.1%}, reindexing"
                )
                return False
            logger.info(f"Snapshot corpus drift {drift:.1%} within tolerance, reusing snapshot")

        dimension = snapshot.get("dimension")
        entries: dict[str, EmbeddingDocument] = {}
        try:
            for key, item in (snapshot.get("entries") or {}).items():
                vector = tuple(float(x) for x in item["vector"])
                if len(vector) != dimension:
                    logger.info(f"Snapshot entry {key} has wrong dimension, reindexing")
                    return False
                entries[key] = EmbeddingDocument(
                    key=key,
                    text=item.get("text", ""),
                    vector=vector,
                    metadata=dict(item.get("metadata") or {}),
                )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed embedding snapshot: {e}")
            return False

        if not entries:
            return False

        self._entries = entries
        self._dimension = dimension
        logger.debug(f"Loaded embedding snapshot from {snapshot.get('timestamp')}")
        return True

    async def build(
        self,
        candidates: list[IndexCandidate],
        corpus: CorpusFingerprint,
        force: bool = False,
    ) -> str:
        """
        Load the snapshot or (re)index the candidates.

        Returns:
            "snapshot", "snapshot+delta" or "rebuilt"
        """
        if not force and self.load_snapshot(corpus):
            # A service whose entity documents are stored counts as present
            covered = {key.split(ENTITY_KEY_SEPARATOR, 1)[0] for key in self._entries}
            missing = [candidate for candidate in candidates if candidate.key not in covered]
            logger.info(f"Loaded {len(self._entries)} embeddings from snapshot")
            if not missing:
                return "snapshot"
            logger.info(f"Embedding {len(missing)} candidates missing from snapshot")
            await self.index_all(missing, replace=False)
            self.save_snapshot(corpus)
            return "snapshot+delta"

        logger.info(f"Indexing {len(candidates)} documents with {self.provider.model_id}...")
        await self.index_all(candidates, replace=True)
        self.save_snapshot(corpus)
        return "rebuilt"
