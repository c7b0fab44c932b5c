from __future__ import annotations

import math
import random as _random
import time
from typing import List, Optional, Protocol, Sequence, TypeVar

from .entities import Page, PlaybackState, SearchIntent, TrackRef


T = TypeVar("T")


class TimePort(Protocol):
    """Source of the current time. Injected so scoring stays deterministic under test."""

    def now_ms(self) -> int:
        """Return milliseconds since the epoch."""


class RandomPort(Protocol):
    """Source of randomness. Swap for a seeded generator to make selection reproducible."""

    def pick(self, items: Sequence[T]) -> T:
        """Return one item of a non-empty sequence."""

    def random(self) -> float:
        """Return a float in [0, 1)."""

    def shuffle(self, items: Sequence[T]) -> List[T]:
        """Return a shuffled copy of ``items``."""


class CatalogPort(Protocol):
    """Port defining the minimal contract for executing plans against a catalog.

    Implementations live in the adapter layer; the core never calls them.
    """

    def get_playlist_tracks(self, playlist_id: str) -> List[TrackRef]:
        """Return the current contents of a playlist, in order."""

    def search_tracks(self, intent: SearchIntent) -> Page:
        """Return one page of track search results."""

    def get_saved_track_ids(self) -> List[str]:
        """Return the ids of every track saved in the user's library."""

    def get_playback_state(self) -> PlaybackState:
        """Return the current playback state."""

    def add_tracks(self, playlist_id: str, uris: List[str], position: Optional[int] = None) -> None:
        """Add up to 100 tracks to a playlist."""

    def remove_tracks(self, playlist_id: str, uris: List[str]) -> None:
        """Remove up to 100 tracks from a playlist."""

    def reorder_tracks(self, playlist_id: str, range_start: int, insert_before: int, range_length: int) -> None:
        """Move a contiguous range of tracks."""

    def replace_tracks(self, playlist_id: str, uris: List[str]) -> None:
        """Replace the playlist contents with up to 100 tracks."""

    def update_details(self, playlist_id: str, name: Optional[str] = None,
                       description: Optional[str] = None, public: Optional[bool] = None) -> None:
        """Update playlist name/description/visibility."""

    def save_tracks(self, ids: List[str]) -> None:
        """Save up to 50 tracks to the user's library."""

    def remove_saved_tracks(self, ids: List[str]) -> None:
        """Remove up to 50 tracks from the user's library."""

    def play(self, context_uri: Optional[str] = None, track_uri: Optional[str] = None,
             position_ms: Optional[int] = None) -> None:
        """Start or resume playback."""

    def pause(self) -> None:
        """Pause playback."""

    def next_track(self) -> None:
        """Skip to the next track."""

    def previous_track(self) -> None:
        """Go back to the previous track."""


class SystemTimePort:
    def now_ms(self) -> int:
        return int(time.time() * 1000)


class FixedTimePort:
    """Time port frozen at a given instant."""

    def __init__(self, time_ms: int) -> None:
        self._time_ms = time_ms

    def now_ms(self) -> int:
        return self._time_ms


class SystemRandomPort:
    def __init__(self) -> None:
        self._rng = _random.Random()

    def pick(self, items: Sequence[T]) -> T:
        if not items:
            raise ValueError("Cannot pick from empty sequence")
        return items[math.floor(self._rng.random() * len(items))]

    def random(self) -> float:
        return self._rng.random()

    def shuffle(self, items: Sequence[T]) -> List[T]:
        result = list(items)
        self._rng.shuffle(result)
        return result


class SeededRandomPort:
    """Deterministic random port backed by a linear congruential generator."""

    _MULTIPLIER = 1664525
    _INCREMENT = 1013904223
    _MODULUS = 2 ** 32

    def __init__(self, seed: int) -> None:
        self._seed = seed % self._MODULUS

    def random(self) -> float:
        self._seed = (self._seed * self._MULTIPLIER + self._INCREMENT) % self._MODULUS
        return self._seed / self._MODULUS

    def pick(self, items: Sequence[T]) -> T:
        if not items:
            raise ValueError("Cannot pick from empty sequence")
        return items[math.floor(self.random() * len(items))]

    def shuffle(self, items: Sequence[T]) -> List[T]:
        # Fisher-Yates, driven by the LCG so results are reproducible
        result = list(items)
        for i in range(len(result) - 1, 0, -1):
            j = math.floor(self.random() * (i + 1))
            result[i], result[j] = result[j], result[i]
        return result
