"""
Text signatures for songs, used as embedding input.
"""

from __future__ import annotations

from typing import Iterable, List

from songrec.models import SongView


def encode(song: SongView) -> str:
    """
    Concatenate name, artist, album and genres into a single text to embed.

    Fields are always emitted in the same order. A song without an album
    keeps an empty album segment, so the separator around it doubles.
    Genres are an unordered set and are sorted before joining.
    """
    parts: List[str] = [
        song.name,
        song.author,
        song.album or "",
        " ".join(sorted(song.genres)),
    ]
    return " ".join(parts)


def encode_all(songs: Iterable[SongView]) -> List[str]:
    return [encode(song) for song in songs]
