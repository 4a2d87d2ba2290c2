"""
In-memory stand-ins for the graph store and the vector index.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Set

import pytest

from songrec.errors import GraphStoreUnavailableError, ScoringUnavailableError
from songrec.models import SongView, User


class FakeGraphStore:
    """Dict-backed ``GraphStore`` with the same semantics as the Cypher queries."""

    def __init__(
        self,
        likes: Optional[Dict[str, Set[str]]] = None,
        follows: Optional[Dict[str, Set[str]]] = None,
        songs: Optional[Dict[str, SongView]] = None,
        users: Optional[Set[str]] = None,
    ):
        self.likes = likes or {}
        self.follows = follows or {}
        self.songs = songs or {}
        self.users = set(users or ()) | set(self.likes) | set(self.follows)
        self.fail = False
        self.calls: List[str] = []

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.fail:
            raise GraphStoreUnavailableError("graph down")

    async def user_exists(self, user_id: str) -> bool:
        self._record("user_exists")
        return user_id in self.users

    async def find_liked_songs(self, user_id: str) -> List[str]:
        self._record("find_liked_songs")
        return sorted(self.likes.get(user_id, set()))

    async def find_peer_users(self, song_ids: Sequence[str], exclude_user_id: str) -> List[str]:
        self._record("find_peer_users")
        wanted = set(song_ids)
        return sorted(
            user
            for user, liked in self.likes.items()
            if user != exclude_user_id and liked & wanted
        )

    async def find_songs_liked_by_users(self, user_ids: Sequence[str]) -> List[str]:
        self._record("find_songs_liked_by_users")
        found: Set[str] = set()
        for user in user_ids:
            found |= self.likes.get(user, set())
        return sorted(found)

    async def find_followed_users(self, user_id: str) -> List[str]:
        self._record("find_followed_users")
        return sorted(self.follows.get(user_id, set()))

    async def hydrate_songs(self, song_ids: Sequence[str]) -> List[SongView]:
        self._record("hydrate_songs")
        return [self.songs[s] for s in sorted(set(song_ids)) if s in self.songs]

    async def find_users(self, query: str, limit: int = 5) -> List[User]:
        self._record("find_users")
        return [User(user_id=u, username=u) for u in sorted(self.users) if query in u][:limit]


class FixedScoreIndex:
    """Scores each candidate by looking its song name up in ``scores``."""

    def __init__(self, scores: Dict[str, float], default: float = 0.0):
        self.scores = scores
        self.default = default
        self.calls: List[tuple] = []

    async def score_similarity(self, candidate_signatures, reference_signatures):
        self.calls.append((list(candidate_signatures), list(reference_signatures)))
        return [
            self.scores.get(signature.split(" ")[0], self.default)
            for signature in candidate_signatures
        ]


class FailingIndex:
    def __init__(self):
        self.calls = 0

    async def score_similarity(self, candidate_signatures, reference_signatures):
        self.calls += 1
        raise ScoringUnavailableError("vector index unreachable")


def make_song(song_id: str, album: Optional[str] = "Album", genres=("rock",)) -> SongView:
    # Name equals id so FixedScoreIndex can key on it.
    return SongView(
        id=song_id,
        name=song_id,
        author=f"Artist {song_id}",
        album=album,
        genres=frozenset(genres),
    )


def make_catalog(*song_ids: str) -> Dict[str, SongView]:
    return {song_id: make_song(song_id) for song_id in song_ids}


@pytest.fixture
def peer_graph() -> FakeGraphStore:
    """U1 likes S1, S2; U2 overlaps on S2 and adds S3; U3 shares nothing."""
    return FakeGraphStore(
        likes={"U1": {"S1", "S2"}, "U2": {"S2", "S3"}, "U3": {"S4"}},
        songs=make_catalog("S1", "S2", "S3", "S4"),
    )


@pytest.fixture
def follow_graph() -> FakeGraphStore:
    """U1 follows U4; U4 likes S5 and S6; U1 likes S6."""
    return FakeGraphStore(
        likes={"U1": {"S6"}, "U4": {"S5", "S6"}},
        follows={"U1": {"U4"}},
        songs=make_catalog("S5", "S6"),
    )
