"""
Failures a recommendation request can end with.

"Nothing to recommend" is not an error: it is reported through
``RecommendationStatus.NO_RECOMMENDATIONS`` on the result.
"""


class RecommendationError(Exception):
    """Base class for recommendation failures."""


class UserNotFoundError(RecommendationError):
    """The requested user has no node in the graph."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id!r} not found")
        self.user_id = user_id


class GraphStoreUnavailableError(RecommendationError):
    """A graph read failed; the request cannot be answered."""


class InvalidSongRecordError(GraphStoreUnavailableError):
    """A song row came back without one of its required fields."""


class ScoringUnavailableError(RecommendationError):
    """The vector index could not score the candidates."""
