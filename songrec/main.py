"""
FastAPI application exposing song recommendation endpoints.
"""

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from neo4j import AsyncSession

from songrec.config import get_settings
from songrec.db import close_driver, neo4j_session
from songrec.embedding import RedisEmbeddingCache, SentenceTransformerIndex
from songrec.errors import GraphStoreUnavailableError, UserNotFoundError
from songrec.graph import GraphStore, Neo4jGraphStore
from songrec.models import RecommendationResult, SongListResponse, Strategy, User
from songrec.recommendation import RecommendationPipeline


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    yield
    await close_driver()
    # Only close an index that was actually built during this process.
    if get_vector_index.cache_info().currsize:
        cache = get_vector_index().cache
        if cache is not None:
            await cache.close()


app = FastAPI(
    title="Social Song Recommendation API",
    description="Neo4j-backed song recommendations re-ranked with text embeddings.",
    version="0.1.0",
    lifespan=lifespan,
)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Dependency to inject a Neo4j session."""
    async with neo4j_session() as session:
        yield session


def get_graph_store(session: AsyncSession = Depends(get_session)) -> GraphStore:
    return Neo4jGraphStore(session)


@lru_cache(maxsize=1)
def get_vector_index() -> SentenceTransformerIndex:
    """One shared index so the model is loaded once per process."""
    settings = get_settings()
    cache = None
    if settings.redis_url:
        cache = RedisEmbeddingCache.from_url(
            settings.redis_url,
            model_name=settings.embedding_model,
            ttl_seconds=settings.embedding_cache_ttl,
        )
    return SentenceTransformerIndex(
        model_name=settings.embedding_model,
        strategy=settings.scoring_strategy,
        cache=cache,
    )


def get_pipeline(
    graph: GraphStore = Depends(get_graph_store),
    index: SentenceTransformerIndex = Depends(get_vector_index),
) -> RecommendationPipeline:
    return RecommendationPipeline(graph, index)


@app.get(
    "/api/users/{user_id}/recommendations/songs",
    response_model=RecommendationResult,
)
async def recommend_songs(
    user_id: str,
    strategy: Strategy = Strategy.PEER_OVERLAP,
    limit: Optional[int] = Query(None, ge=1),
    pipeline: RecommendationPipeline = Depends(get_pipeline),
) -> RecommendationResult:
    """
    Songs liked by listeners with overlapping taste (``peer_overlap``) or by
    followed users (``followed_users``), ordered by similarity to the
    user's liked songs.

    ``status`` is ``no_recommendations`` when the graph has no candidates.
    """
    if limit is None:
        limit = get_settings().default_limit
    try:
        return await pipeline.recommend(user_id, strategy, limit)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    except GraphStoreUnavailableError as exc:
        logger.error("Recommendation for user %s failed: %s", user_id, exc)
        raise HTTPException(
            status_code=503, detail="Graph store unavailable, try again later"
        ) from exc


@app.get("/api/users/search", response_model=List[User])
async def search_users(
    q: str = Query(..., description="User id or part of the username"),
    limit: int = 5,
    graph: GraphStore = Depends(get_graph_store),
) -> List[User]:
    """
    Search users by id or case-insensitive username substring.
    """
    try:
        return await graph.find_users(q, limit)
    except GraphStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Graph store unavailable") from exc


@app.get("/api/users/{user_id}/songs", response_model=SongListResponse)
async def liked_songs(
    user_id: str,
    pipeline: RecommendationPipeline = Depends(get_pipeline),
) -> SongListResponse:
    """Songs the user likes, with artist, album and genres."""
    try:
        songs = await pipeline.liked_songs(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    except GraphStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Graph store unavailable") from exc
    return SongListResponse(user=User(user_id=user_id), songs=songs)


@app.get("/health")
async def health() -> dict:
    """Simple health-check endpoint used by external probes."""
    return {"status": "ok"}
