"""
Embedding-based similarity scoring for song signatures.

Signatures are embedded with a sentence-transformers model and compared
with cosine similarity. How the reference songs are combined is a
pluggable strategy:

- ``best_match``: highest cosine against any single reference
- ``centroid``: cosine against the normalised mean of the references
- ``mean``: average cosine over all references

Embeddings can be cached in Redis, keyed by the signature text.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import Counter
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import numpy as np
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sentence_transformers import SentenceTransformer

from songrec.errors import ScoringUnavailableError


logger = logging.getLogger(__name__)

# Model also used to embed song signatures offline.
MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"


class VectorIndex(Protocol):
    """Scores candidate signatures against a user's reference signatures."""

    async def score_similarity(
        self,
        candidate_signatures: Sequence[str],
        reference_signatures: Sequence[str],
    ) -> List[float]:
        """
        Return one score per candidate, in input order; higher is closer.

        Must raise ``ScoringUnavailableError`` on failure rather than
        returning placeholder scores.
        """
        ...


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalise each row; all-zero rows are left as zeros."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def cosine_matrix(candidates: np.ndarray, references: np.ndarray) -> np.ndarray:
    """Pairwise cosine similarity, shape (n_candidates, n_references)."""
    return normalize_rows(candidates) @ normalize_rows(references).T


def _best_match(candidates: np.ndarray, references: np.ndarray) -> np.ndarray:
    return cosine_matrix(candidates, references).max(axis=1)


def _centroid(candidates: np.ndarray, references: np.ndarray) -> np.ndarray:
    centroid = normalize_rows(references).mean(axis=0, keepdims=True)
    return cosine_matrix(candidates, centroid)[:, 0]


def _mean(candidates: np.ndarray, references: np.ndarray) -> np.ndarray:
    return cosine_matrix(candidates, references).mean(axis=1)


SCORING_STRATEGIES: Dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "best_match": _best_match,
    "centroid": _centroid,
    "mean": _mean,
}


def score_against_references(
    candidates: np.ndarray,
    references: np.ndarray,
    strategy: str = "best_match",
) -> np.ndarray:
    """
    Score every candidate embedding against the reference embeddings.
    """
    if strategy not in SCORING_STRATEGIES:
        raise ValueError(f"Unknown scoring strategy: {strategy!r}")
    if candidates.ndim != 2 or references.ndim != 2:
        raise ValueError("Embeddings must be 2D arrays")
    if references.shape[0] == 0:
        raise ValueError("At least one reference embedding is required")
    if candidates.shape[1] != references.shape[1]:
        raise ValueError("Candidate and reference embeddings differ in size")
    return SCORING_STRATEGIES[strategy](candidates, references)


class RedisEmbeddingCache:
    """
    Signature embeddings stored in Redis as float32 bytes.

    A Redis failure is logged and treated as a miss: the caller recomputes
    the embeddings and scoring carries on.
    """

    def __init__(
        self,
        client: Redis,
        model_name: str = MODEL_NAME,
        ttl_seconds: int = 86400,
        prefix: str = "songrec:embed:",
    ):
        self.client = client
        self.ttl = ttl_seconds
        # Embeddings from different models must never be mixed.
        self.prefix = f"{prefix}{model_name}:"

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisEmbeddingCache":
        client = Redis.from_url(url, decode_responses=False, socket_connect_timeout=2)
        return cls(client, **kwargs)

    def _make_key(self, text: str) -> str:
        text_hash = hashlib.md5(text.encode("utf-8")).hexdigest()
        return f"{self.prefix}{text_hash}"

    async def get_many(self, texts: Sequence[str]) -> Dict[str, np.ndarray]:
        if not texts:
            return {}
        try:
            values = await self.client.mget([self._make_key(t) for t in texts])
        except RedisError as exc:
            logger.warning("Embedding cache read failed: %s", exc)
            return {}

        found: Dict[str, np.ndarray] = {}
        for text, data in zip(texts, values):
            if not data:
                continue
            try:
                found[text] = np.frombuffer(data, dtype=np.float32)
            except ValueError:
                logger.warning("Ignoring undecodable cache entry %s", self._make_key(text))
        if not found:
            return found

        # Entries of a minority dimension are stale; treat them as misses.
        dims = Counter(vector.shape[0] for vector in found.values())
        dim = dims.most_common(1)[0][0]
        return {text: vector for text, vector in found.items() if vector.shape[0] == dim}

    async def set_many(self, embeddings: Dict[str, np.ndarray]) -> None:
        if not embeddings:
            return
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for text, vector in embeddings.items():
                    pipe.setex(
                        self._make_key(text),
                        self.ttl,
                        np.asarray(vector, dtype=np.float32).tobytes(),
                    )
                await pipe.execute()
        except RedisError as exc:
            logger.warning("Embedding cache write failed: %s", exc)

    async def close(self) -> None:
        await self.client.aclose()


class SentenceTransformerIndex:
    """
    ``VectorIndex`` that embeds signatures with sentence-transformers.

    The model is loaded on first use. Encoding runs in a worker thread so
    the event loop stays free, and all uncached texts of a call go through
    a single batched ``encode``. Cached vectors whose size no longer matches
    the model's are re-encoded in a second batch.
    """

    def __init__(
        self,
        model_name: str = MODEL_NAME,
        strategy: str = "best_match",
        cache: Optional[RedisEmbeddingCache] = None,
        model: Optional[SentenceTransformer] = None,
    ):
        if strategy not in SCORING_STRATEGIES:
            raise ValueError(f"Unknown scoring strategy: {strategy!r}")
        self.model_name = model_name
        self.strategy = strategy
        self.cache = cache
        self._model = model

    def _get_model(self) -> SentenceTransformer:
        if self._model is None:
            logger.info("Loading sentence transformer model: %s", self.model_name)
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def _encode(self, texts: List[str]) -> np.ndarray:
        return self._get_model().encode(texts, convert_to_numpy=True)

    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        """Embed ``texts`` (duplicates allowed), reusing cached vectors."""
        unique = list(dict.fromkeys(texts))
        vectors: Dict[str, np.ndarray] = {}
        if self.cache is not None:
            vectors.update(await self.cache.get_many(unique))

        missing = [text for text in unique if text not in vectors]
        if missing:
            fresh = await self._encode_batch(missing)
            dim = next(iter(fresh.values())).shape[0]
            # Cached vectors from another model revision are re-encoded.
            stale = [text for text, vec in vectors.items() if vec.shape[0] != dim]
            if stale:
                fresh.update(await self._encode_batch(stale))
            vectors.update(fresh)
            if self.cache is not None:
                await self.cache.set_many(fresh)

        try:
            return np.vstack([vectors[text] for text in texts])
        except ValueError as exc:
            raise ScoringUnavailableError(f"Inconsistent embeddings: {exc}") from exc

    async def _encode_batch(self, texts: List[str]) -> Dict[str, np.ndarray]:
        try:
            encoded = await asyncio.to_thread(self._encode, texts)
        except Exception as exc:  # model load/encode errors share no base class
            raise ScoringUnavailableError(f"Embedding failed: {exc}") from exc
        return {text: np.asarray(vec, dtype=np.float32) for text, vec in zip(texts, encoded)}

    async def score_similarity(
        self,
        candidate_signatures: Sequence[str],
        reference_signatures: Sequence[str],
    ) -> List[float]:
        if not candidate_signatures:
            return []
        if not reference_signatures:
            raise ScoringUnavailableError("No reference signatures to score against")

        matrix = await self.embed(list(candidate_signatures) + list(reference_signatures))
        split = len(candidate_signatures)
        try:
            scores = score_against_references(matrix[:split], matrix[split:], self.strategy)
        except ValueError as exc:
            raise ScoringUnavailableError(str(exc)) from exc
        return [float(score) for score in scores]
