"""
Read-only graph queries behind the recommendation pipeline.

Schema:
  (:User)-[:USER_LIKES_SONG]->(:Song)
  (:User)-[:FOLLOWS]->(:User)
  (:Artist)-[:PERFORMS]->(:Song)
  (:Song)-[:SONG_BELONGS_TO_ALBUM]->(:Album)
  (:Song)-[:IN_GENRE]->(:Genre)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from neo4j import AsyncSession
from neo4j.exceptions import DriverError, Neo4jError

from songrec.errors import GraphStoreUnavailableError
from songrec.models import SongView, User


logger = logging.getLogger(__name__)


class GraphStore(Protocol):
    """Graph operations the pipeline depends on."""

    async def user_exists(self, user_id: str) -> bool: ...

    async def find_liked_songs(self, user_id: str) -> List[str]: ...

    async def find_peer_users(
        self, song_ids: Sequence[str], exclude_user_id: str
    ) -> List[str]: ...

    async def find_songs_liked_by_users(self, user_ids: Sequence[str]) -> List[str]: ...

    async def find_followed_users(self, user_id: str) -> List[str]: ...

    async def hydrate_songs(self, song_ids: Sequence[str]) -> List[SongView]: ...

    async def find_users(self, query: str, limit: int = 5) -> List[User]: ...


USER_EXISTS_QUERY = """
MATCH (u:User {id: $user_id})
RETURN count(u) > 0 AS found
"""

LIKED_SONGS_QUERY = """
MATCH (:User {id: $user_id})-[:USER_LIKES_SONG]->(song:Song)
RETURN DISTINCT song.id AS id
ORDER BY id
"""

PEER_USERS_QUERY = """
MATCH (peer:User)-[:USER_LIKES_SONG]->(song:Song)
WHERE song.id IN $song_ids AND peer.id <> $exclude_user_id
RETURN DISTINCT peer.id AS id
ORDER BY id
"""

SONGS_LIKED_BY_USERS_QUERY = """
MATCH (user:User)-[:USER_LIKES_SONG]->(song:Song)
WHERE user.id IN $user_ids
RETURN DISTINCT song.id AS id
ORDER BY id
"""

FOLLOWED_USERS_QUERY = """
MATCH (:User {id: $user_id})-[:FOLLOWS]->(followed:User)
WHERE followed.id <> $user_id
RETURN DISTINCT followed.id AS id
ORDER BY id
"""

HYDRATE_SONGS_QUERY = """
MATCH (song:Song)
WHERE song.id IN $song_ids
OPTIONAL MATCH (song)<-[:PERFORMS]-(artist:Artist)
OPTIONAL MATCH (song)-[:SONG_BELONGS_TO_ALBUM]->(album:Album)
OPTIONAL MATCH (song)-[:IN_GENRE]->(genre:Genre)
RETURN
    song.id AS id,
    song.name AS name,
    collect(DISTINCT artist.name) AS authors,
    collect(DISTINCT album.name) AS albums,
    collect(DISTINCT genre.name) AS genres
ORDER BY id
"""

SEARCH_USERS_QUERY = """
MATCH (u:User)
WHERE u.id = $q
   OR toLower(u.username) CONTAINS toLower($q)
RETURN u.id AS id, u.username AS username
ORDER BY username
LIMIT $limit
"""


def _first_sorted(names: Optional[List[Any]]) -> Optional[str]:
    """
    Pick one name from a collected list. ``collect`` has no defined order,
    so the lexicographically smallest wins for a stable author and album.
    """
    present = sorted(str(name) for name in names or [] if name)
    return present[0] if present else None


class Neo4jGraphStore:
    """
    ``GraphStore`` backed by a Neo4j async session.

    Every driver failure surfaces as ``GraphStoreUnavailableError``.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _read(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        try:
            result = await self.session.run(query, **params)
            return await result.data()
        except (Neo4jError, DriverError) as exc:
            raise GraphStoreUnavailableError(f"Graph query failed: {exc}") from exc

    async def user_exists(self, user_id: str) -> bool:
        records = await self._read(USER_EXISTS_QUERY, user_id=user_id)
        return bool(records and records[0]["found"])

    async def find_liked_songs(self, user_id: str) -> List[str]:
        records = await self._read(LIKED_SONGS_QUERY, user_id=user_id)
        return [record["id"] for record in records]

    async def find_peer_users(
        self, song_ids: Sequence[str], exclude_user_id: str
    ) -> List[str]:
        if not song_ids:
            return []
        records = await self._read(
            PEER_USERS_QUERY, song_ids=list(song_ids), exclude_user_id=exclude_user_id
        )
        return [record["id"] for record in records]

    async def find_songs_liked_by_users(self, user_ids: Sequence[str]) -> List[str]:
        if not user_ids:
            return []
        records = await self._read(SONGS_LIKED_BY_USERS_QUERY, user_ids=list(user_ids))
        return [record["id"] for record in records]

    async def find_followed_users(self, user_id: str) -> List[str]:
        records = await self._read(FOLLOWED_USERS_QUERY, user_id=user_id)
        return [record["id"] for record in records]

    async def hydrate_songs(self, song_ids: Sequence[str]) -> List[SongView]:
        """Load artist, album and genres for the given songs, sorted by id."""
        if not song_ids:
            return []
        records = await self._read(HYDRATE_SONGS_QUERY, song_ids=list(song_ids))
        songs = [
            SongView.from_record(
                {
                    "id": record.get("id"),
                    "name": record.get("name"),
                    "author": _first_sorted(record.get("authors")),
                    "album": _first_sorted(record.get("albums")),
                    "genres": record.get("genres"),
                }
            )
            for record in records
        ]
        if len(songs) != len(set(song_ids)):
            logger.debug("Hydrated %d of %d requested songs", len(songs), len(set(song_ids)))
        return songs

    async def find_users(self, query: str, limit: int = 5) -> List[User]:
        """Search users by exact id or case-insensitive username substring."""
        records = await self._read(SEARCH_USERS_QUERY, q=query, limit=limit)
        return [User(user_id=r["id"], username=r.get("username")) for r in records]
