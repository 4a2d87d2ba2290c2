"""
Unit tests for cosine scoring strategies and the sentence-transformers index.
"""

import asyncio

import numpy as np
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from songrec.embedding import (
    RedisEmbeddingCache,
    SentenceTransformerIndex,
    cosine_matrix,
    score_against_references,
)
from songrec.errors import ScoringUnavailableError
from songrec.recommendation import RecommendationPipeline


VECTORS = {
    "rock a": [1.0, 0.0],
    "rock b": [0.9, 0.1],
    "jazz": [0.0, 1.0],
    "blend": [1.0, 1.0],
}


class FakeModel:
    """Looks texts up in VECTORS and records every encode batch."""

    def __init__(self):
        self.batches = []

    def encode(self, texts, convert_to_numpy=True):
        self.batches.append(list(texts))
        return np.array([VECTORS[t] for t in texts], dtype=float)


class BrokenModel:
    def encode(self, texts, convert_to_numpy=True):
        raise RuntimeError("CUDA out of memory")


class FakePipeline:
    def __init__(self, store):
        self.store = store

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def setex(self, key, ttl, value):
        self.store[key] = value
        return self

    async def execute(self):
        return [True]


class FakeRedis:
    def __init__(self):
        self.store = {}

    async def mget(self, keys):
        return [self.store.get(k) for k in keys]

    def pipeline(self, transaction=True):
        return FakePipeline(self.store)


class DownRedis:
    async def mget(self, keys):
        raise RedisConnectionError("connection refused")

    def pipeline(self, transaction=True):
        raise RedisConnectionError("connection refused")


def test_cosine_matrix_shape_and_values():
    sims = cosine_matrix(np.array([[1.0, 0.0], [0.0, 2.0]]), np.array([[3.0, 0.0]]))
    assert sims.shape == (2, 1)
    assert np.isclose(sims[0, 0], 1.0)
    assert np.isclose(sims[1, 0], 0.0)


def test_cosine_matrix_zero_vector_scores_zero():
    sims = cosine_matrix(np.array([[0.0, 0.0]]), np.array([[1.0, 0.0]]))
    assert sims[0, 0] == 0.0


def test_scoring_strategies():
    candidates = np.array([[1.0, 0.0]])
    references = np.array([[1.0, 0.0], [0.0, 1.0]])
    best = score_against_references(candidates, references, "best_match")
    mean = score_against_references(candidates, references, "mean")
    centroid = score_against_references(candidates, references, "centroid")
    assert np.isclose(best[0], 1.0)
    assert np.isclose(mean[0], 0.5)
    assert np.isclose(centroid[0], np.sqrt(0.5))


def test_scoring_rejects_unknown_strategy_and_bad_shapes():
    with pytest.raises(ValueError):
        score_against_references(np.ones((1, 2)), np.ones((1, 2)), "median")
    with pytest.raises(ValueError):
        score_against_references(np.ones((1, 2)), np.ones((1, 3)))
    with pytest.raises(ValueError):
        score_against_references(np.ones((1, 2)), np.ones((0, 2)))


def test_index_rejects_unknown_strategy():
    with pytest.raises(ValueError):
        SentenceTransformerIndex(strategy="median", model=FakeModel())


def test_index_scores_in_candidate_order_with_one_batch():
    model = FakeModel()
    index = SentenceTransformerIndex(model=model)
    scores = asyncio.run(index.score_similarity(["jazz", "rock b"], ["rock a"]))
    assert len(scores) == 2
    assert scores[1] > scores[0]
    assert model.batches == [["jazz", "rock b", "rock a"]]


def test_index_embeds_duplicate_texts_once():
    model = FakeModel()
    index = SentenceTransformerIndex(model=model)
    scores = asyncio.run(index.score_similarity(["rock a", "rock a"], ["rock a"]))
    assert np.allclose(scores, [1.0, 1.0])
    assert model.batches == [["rock a"]]


def test_index_without_references_fails_explicitly():
    index = SentenceTransformerIndex(model=FakeModel())
    with pytest.raises(ScoringUnavailableError):
        asyncio.run(index.score_similarity(["jazz"], []))
    assert asyncio.run(index.score_similarity([], ["jazz"])) == []


def test_index_wraps_model_errors():
    index = SentenceTransformerIndex(model=BrokenModel())
    with pytest.raises(ScoringUnavailableError):
        asyncio.run(index.score_similarity(["jazz"], ["rock a"]))


def test_cached_embeddings_are_reused():
    model = FakeModel()
    cache = RedisEmbeddingCache(FakeRedis())
    index = SentenceTransformerIndex(model=model, cache=cache)
    first = asyncio.run(index.score_similarity(["blend"], ["rock a"]))
    second = asyncio.run(index.score_similarity(["blend", "jazz"], ["rock a"]))
    assert np.isclose(first[0], second[0], atol=1e-6)
    assert model.batches == [["blend", "rock a"], ["jazz"]]


def test_cache_keys_are_namespaced_by_model():
    cache_a = RedisEmbeddingCache(FakeRedis(), model_name="model-a")
    cache_b = RedisEmbeddingCache(FakeRedis(), model_name="model-b")
    assert cache_a._make_key("same text") != cache_b._make_key("same text")


def test_redis_outage_degrades_to_recomputing():
    model = FakeModel()
    index = SentenceTransformerIndex(model=model, cache=RedisEmbeddingCache(DownRedis()))
    scores = asyncio.run(index.score_similarity(["rock b"], ["rock a"]))
    assert scores[0] > 0.9
    assert model.batches == [["rock b", "rock a"]]


class TextLengthModel:
    """Four-dimensional embeddings for any text."""

    def __init__(self):
        self.batches = []

    def encode(self, texts, convert_to_numpy=True):
        self.batches.append(list(texts))
        return np.array([[len(t), 1.0, 0.0, 1.0] for t in texts], dtype=float)


class CorruptRedis(FakeRedis):
    """Serves ``payload`` for the first key of every read, misses the rest."""

    def __init__(self, payload):
        super().__init__()
        self.payload = payload

    async def mget(self, keys):
        return [self.payload] + [None] * (len(keys) - 1)


def recommend_with_cache(graph, payload):
    model = TextLengthModel()
    cache = RedisEmbeddingCache(CorruptRedis(payload))
    pipeline = RecommendationPipeline(graph, SentenceTransformerIndex(model=model, cache=cache))
    return asyncio.run(pipeline.recommend("U1")), model


def test_undecodable_cache_entry_is_a_miss(peer_graph):
    result, model = recommend_with_cache(peer_graph, b"\x00" * 7)
    assert [s.id for s in result.songs] == ["S3"]
    assert result.scored
    # Every signature, including the one with the broken entry, was encoded.
    assert sum(len(batch) for batch in model.batches) == 3


def test_cache_entry_of_another_dimension_is_reencoded(peer_graph):
    stale = np.zeros(3, dtype=np.float32).tobytes()
    result, model = recommend_with_cache(peer_graph, stale)
    assert [s.id for s in result.songs] == ["S3"]
    assert result.scored
    assert len(model.batches) == 2


def test_minority_dimension_dropped_on_read():
    client = FakeRedis()
    cache = RedisEmbeddingCache(client)
    client.store[cache._make_key("a")] = np.ones(4, dtype=np.float32).tobytes()
    client.store[cache._make_key("b")] = np.ones(4, dtype=np.float32).tobytes()
    client.store[cache._make_key("c")] = np.ones(3, dtype=np.float32).tobytes()
    found = asyncio.run(cache.get_many(["a", "b", "c"]))
    assert sorted(found) == ["a", "b"]


def test_close_releases_client():
    class ClosableRedis(FakeRedis):
        closed = False

        async def aclose(self):
            self.closed = True

    client = ClosableRedis()
    asyncio.run(RedisEmbeddingCache(client).close())
    assert client.closed
