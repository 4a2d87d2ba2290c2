"""
Similarity re-ranking of hydrated candidate songs.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Sequence

from songrec.embedding import VectorIndex
from songrec.encoding import encode_all
from songrec.errors import ScoringUnavailableError
from songrec.models import SongView


class SimilarityRanker:
    """
    Orders candidates by similarity to the songs a user already likes.

    One batched ``score_similarity`` call per ``rank``; nothing is written
    anywhere.
    """

    def __init__(self, index: VectorIndex):
        self.index = index

    async def rank(
        self,
        candidates: Sequence[SongView],
        references: Sequence[SongView],
    ) -> List[SongView]:
        """
        Sort ``candidates`` by descending score, ties broken by song id.

        With no reference songs there is nothing to compare against, and the
        candidates come back in id order. Raises ``ScoringUnavailableError``
        when the index fails or returns unusable scores.
        """
        if not candidates:
            return []
        if not references:
            return sorted(candidates, key=lambda song: song.id)

        scores = await self.index.score_similarity(
            encode_all(candidates), encode_all(references)
        )
        if len(scores) != len(candidates):
            raise ScoringUnavailableError(
                f"Expected {len(candidates)} scores, got {len(scores)}"
            )
        if not all(math.isfinite(score) for score in scores):
            raise ScoringUnavailableError("Vector index returned a non-finite score")

        ranked = sorted(zip(candidates, scores), key=lambda x: (-x[1], x[0].id))
        return [song for song, _ in ranked]


def dedupe(songs: Iterable[SongView]) -> List[SongView]:
    """Drop repeated song ids, keeping the first (highest ranked) one."""
    seen = set()
    unique: List[SongView] = []
    for song in songs:
        if song.id in seen:
            continue
        seen.add(song.id)
        unique.append(song)
    return unique
