"""
Recommendation pipeline: graph candidates, metadata hydration, similarity
re-ranking.

Candidate generation only touches ids so the traversal queries stay cheap;
artist/album/genre joins are paid for the surviving candidates alone.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from songrec.candidates import CandidateGenerator
from songrec.embedding import VectorIndex
from songrec.errors import ScoringUnavailableError, UserNotFoundError
from songrec.graph import GraphStore
from songrec.models import RecommendationResult, SongView, Strategy
from songrec.ranking import SimilarityRanker, dedupe


logger = logging.getLogger(__name__)


class RecommendationPipeline:
    """
    Turns a user id into ranked song recommendations.

    Holds no per-request state; one instance can serve concurrent requests
    as long as the graph store it wraps can.
    """

    def __init__(self, graph: GraphStore, index: VectorIndex):
        self.graph = graph
        self.candidates = CandidateGenerator(graph)
        self.ranker = SimilarityRanker(index)

    async def recommend(
        self,
        user_id: str,
        strategy: Strategy = Strategy.PEER_OVERLAP,
        limit: Optional[int] = None,
    ) -> RecommendationResult:
        """
        Recommend songs for ``user_id``.

        Raises ``UserNotFoundError`` for an unknown user and
        ``GraphStoreUnavailableError`` when a graph read fails. A vector
        index failure is not raised: the graph-derived order is returned
        with ``scored=False``.
        """
        strategy = Strategy(strategy)
        if not await self.graph.user_exists(user_id):
            raise UserNotFoundError(user_id)

        # Read once: candidate anchor, reference set and exclusion filter.
        liked_ids = await self.graph.find_liked_songs(user_id)
        if strategy is Strategy.FOLLOWED_USERS:
            candidate_ids = await self.candidates.generate_followed_user_candidates(
                user_id, liked_ids
            )
        else:
            candidate_ids = await self.candidates.generate_peer_overlap_candidates(
                user_id, liked_ids
            )

        if candidate_ids is None:
            logger.info("No %s candidates for user %s", strategy.value, user_id)
            return RecommendationResult.no_recommendations(user_id, strategy)

        candidates = await self.graph.hydrate_songs(sorted(candidate_ids))
        references = await self.graph.hydrate_songs(liked_ids)

        try:
            ranked = await self.ranker.rank(candidates, references)
            scored = bool(references)
        except ScoringUnavailableError as exc:
            logger.warning(
                "Similarity scoring unavailable for user %s, keeping graph order: %s",
                user_id,
                exc,
            )
            ranked = sorted(candidates, key=lambda song: song.id)
            scored = False

        liked = set(liked_ids)
        songs = [song for song in dedupe(ranked) if song.id not in liked]
        if limit is not None:
            songs = songs[:limit]

        return RecommendationResult(
            user_id=user_id,
            strategy=strategy,
            songs=songs,
            scored=scored,
        )

    async def liked_songs(self, user_id: str) -> List[SongView]:
        """The songs ``user_id`` likes, with artist, album and genres."""
        if not await self.graph.user_exists(user_id):
            raise UserNotFoundError(user_id)
        return await self.graph.hydrate_songs(await self.graph.find_liked_songs(user_id))
