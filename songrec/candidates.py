"""
Collaborative-filtering candidate pools over the like/follow graph.

Both generators return ``None`` instead of an empty set when there is
nothing to recommend, so callers can stop before hydrating or scoring.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Set

from songrec.graph import GraphStore


logger = logging.getLogger(__name__)


class CandidateGenerator:
    """
    Builds candidate song ids for a user.

    Callers that already hold the user's liked song ids pass them as
    ``liked`` so the graph is not asked for them again.
    """

    def __init__(self, graph: GraphStore):
        self.graph = graph

    async def generate_peer_overlap_candidates(
        self,
        user_id: str,
        liked: Optional[Sequence[str]] = None,
    ) -> Optional[Set[str]]:
        """
        Songs liked by users who share at least one liked song with
        ``user_id``, minus the songs ``user_id`` already likes.

        A user without likes has no common songs to anchor on and gets
        ``None``.
        """
        if liked is None:
            liked = await self.graph.find_liked_songs(user_id)
        common_songs = list(liked)
        if not common_songs:
            return None

        peers = [
            peer
            for peer in await self.graph.find_peer_users(common_songs, user_id)
            if peer != user_id
        ]
        if not peers:
            return None

        candidates = set(await self.graph.find_songs_liked_by_users(peers))
        candidates.difference_update(common_songs)
        logger.debug(
            "User %s: %d peers, %d peer-overlap candidates",
            user_id,
            len(peers),
            len(candidates),
        )
        return candidates or None

    async def generate_followed_user_candidates(
        self,
        user_id: str,
        liked: Optional[Sequence[str]] = None,
    ) -> Optional[Set[str]]:
        """
        Songs liked by users that ``user_id`` follows, minus the songs
        ``user_id`` already likes.

        Returns ``None`` when the user follows no one or has no peer-overlap
        candidates.
        """
        followed = [u for u in await self.graph.find_followed_users(user_id) if u != user_id]
        if not followed:
            return None

        if liked is None:
            liked = await self.graph.find_liked_songs(user_id)
        if await self.generate_peer_overlap_candidates(user_id, liked) is None:
            return None

        candidates = set(await self.graph.find_songs_liked_by_users(followed))
        candidates.difference_update(liked)
        logger.debug(
            "User %s: follows %d users, %d followed-user candidates",
            user_id,
            len(followed),
            len(candidates),
        )
        return candidates or None
