"""
Configuration utilities for the recommendation service.
"""

from functools import lru_cache
import os
from typing import Optional

from pydantic import BaseModel


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    neo4j_uri: str = os.getenv("NEO4J_URI", "bolt://localhost:7687")
    neo4j_user: str = os.getenv("NEO4J_USER", "neo4j")
    neo4j_password: str = os.getenv("NEO4J_PASSWORD", "password")

    embedding_model: str = os.getenv(
        "EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"
    )
    # best_match, centroid or mean (see songrec.embedding)
    scoring_strategy: str = os.getenv("SCORING_STRATEGY", "best_match")

    redis_url: Optional[str] = os.getenv("REDIS_URL") or None
    embedding_cache_ttl: int = int(os.getenv("EMBEDDING_CACHE_TTL", "86400"))

    default_limit: int = int(os.getenv("RECOMMENDATION_LIMIT", "20"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    return Settings()
