"""
Pydantic models for songs, recommendation results and API payloads.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, FrozenSet, List, Mapping, Optional

from pydantic import BaseModel

from songrec.errors import InvalidSongRecordError


class User(BaseModel):
    """Basic user representation."""

    user_id: str
    username: Optional[str] = None


class SongView(BaseModel):
    """
    Read-only projection of a :Song with its artist, album and genres.

    Built fresh from graph rows for every request and never persisted.
    """

    id: str
    name: str
    author: str
    album: Optional[str] = None
    genres: FrozenSet[str] = frozenset()

    model_config = {"frozen": True}

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "SongView":
        """
        Build a view from a row with ``id``, ``name``, ``author``, ``album``
        and ``genres`` columns.

        Raises ``InvalidSongRecordError`` when a required column is null or
        empty. A null album stays ``None``.
        """
        song_id = record.get("id")
        name = record.get("name")
        author = record.get("author")
        for field, value in (("id", song_id), ("name", name), ("author", author)):
            if value is None or str(value) == "":
                raise InvalidSongRecordError(
                    f"Song row is missing required field {field!r}: {dict(record)!r}"
                )

        album = record.get("album")
        genres = record.get("genres") or []
        return cls(
            id=str(song_id),
            name=str(name),
            author=str(author),
            album=str(album) if album else None,
            genres=frozenset(str(g) for g in genres if g),
        )


class Strategy(str, Enum):
    """Which candidate pool a recommendation is drawn from."""

    PEER_OVERLAP = "peer_overlap"
    FOLLOWED_USERS = "followed_users"


class RecommendationStatus(str, Enum):
    OK = "ok"
    NO_RECOMMENDATIONS = "no_recommendations"


class RecommendationResult(BaseModel):
    """
    Ordered recommendations for one user.

    ``status`` tells "the graph had nothing to offer" (``no_recommendations``)
    apart from a successful, possibly short, list. ``scored`` is False when
    the similarity ranking was skipped and ``songs`` keeps the graph order.
    """

    user_id: str
    strategy: Strategy
    status: RecommendationStatus = RecommendationStatus.OK
    songs: List[SongView] = []
    scored: bool = False

    @classmethod
    def no_recommendations(cls, user_id: str, strategy: Strategy) -> "RecommendationResult":
        return cls(
            user_id=user_id,
            strategy=strategy,
            status=RecommendationStatus.NO_RECOMMENDATIONS,
        )

    @property
    def has_recommendations(self) -> bool:
        return self.status is RecommendationStatus.OK


class SongListResponse(BaseModel):
    """A user's liked songs."""

    user: User
    songs: List[SongView]
