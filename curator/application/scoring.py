import math
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Set

from curator.domain.entities import ScoredTrack, TrackRef


MS_PER_MINUTE = 60 * 1000
MS_PER_DAY = 24 * 60 * 60 * 1000
RECENCY_DECAY_DAYS = 30
PREFERRED_DURATION_MINUTES = 3.5


@dataclass(frozen=True)
class ScoringWeights:
    popularity: float = 0.3
    recency: float = 0.2
    duration: float = 0.1
    explicit: float = -0.1
    artist_diversity: float = 0.2
    # Reserved; no genre data is carried on TrackRef
    genre_diversity: float = 0.1

    def to_json(self) -> Dict[str, float]:
        return {
            "popularity": self.popularity,
            "recency": self.recency,
            "duration": self.duration,
            "explicit": self.explicit,
            "artistDiversity": self.artist_diversity,
            "genreDiversity": self.genre_diversity,
        }

    @classmethod
    def from_json(cls, data: Dict[str, float]) -> "ScoringWeights":
        """Partial weights; missing keys keep their defaults."""
        values = cls().to_json()
        values.update({k: v for k, v in data.items() if k in values})
        return cls(
            popularity=values["popularity"],
            recency=values["recency"],
            duration=values["duration"],
            explicit=values["explicit"],
            artist_diversity=values["artistDiversity"],
            genre_diversity=values["genreDiversity"],
        )


DEFAULT_SCORING_WEIGHTS = ScoringWeights()


@dataclass(frozen=True)
class DiversityScore:
    artist_diversity: float
    duration_diversity: float
    popularity_diversity: float
    overall_diversity: float

    def to_json(self) -> Dict[str, float]:
        return {
            "artistDiversity": self.artist_diversity,
            "durationDiversity": self.duration_diversity,
            "popularityDiversity": self.popularity_diversity,
            "overallDiversity": self.overall_diversity,
        }


def _duration_preference(duration_ms: int, preferred_minutes: float) -> float:
    minutes = duration_ms / MS_PER_MINUTE
    if 2 <= minutes <= 6:
        return max(0.0, 1 - abs(minutes - preferred_minutes) / 2)
    if minutes < 2:
        return 0.3
    return 0.1


def score_track(
    track: TrackRef,
    weights: Optional[ScoringWeights] = None,
    reference_time_ms: Optional[int] = None,
    now_ms: Optional[int] = None,
    seen_artists: Optional[Set[str]] = None,
    preferred_duration_ms: Optional[int] = None,
) -> ScoredTrack:
    """Compute a weighted desirability score for a single track.

    The total is floored at 0 but not capped; use :func:`normalize_scores`
    to rescale a batch. ``seen_artists`` is the running selection context
    for the diversity bonus and is not modified.
    """
    weights = weights or DEFAULT_SCORING_WEIGHTS
    breakdown: Dict[str, float] = {}
    total = 0.0

    if track.popularity is not None:
        breakdown["popularity"] = track.popularity / 100 * weights.popularity
        total += breakdown["popularity"]

    if reference_time_ms is not None and now_ms is not None and weights.recency > 0:
        days = max(0, now_ms - reference_time_ms) / MS_PER_DAY
        breakdown["recency"] = math.exp(-days / RECENCY_DECAY_DAYS) * weights.recency
        total += breakdown["recency"]

    preferred = (preferred_duration_ms / MS_PER_MINUTE
                 if preferred_duration_ms else PREFERRED_DURATION_MINUTES)
    breakdown["duration"] = _duration_preference(track.duration_ms, preferred) * weights.duration
    total += breakdown["duration"]

    if track.explicit is True:
        breakdown["explicit"] = weights.explicit
        total += weights.explicit

    if seen_artists is not None and weights.artist_diversity > 0 and track.artists:
        unseen = [a for a in track.artists if a not in seen_artists]
        breakdown["artistDiversity"] = len(unseen) / len(track.artists) * weights.artist_diversity
        total += breakdown["artistDiversity"]

    return ScoredTrack(track=track, score=max(0.0, total), breakdown=breakdown)


def score_track_collection(tracks: Sequence[TrackRef],
                           weights: Optional[ScoringWeights] = None) -> List[ScoredTrack]:
    """Score tracks in order with a running artist context, then rank them.

    Returns tracks sorted by descending score with 1-based ``rank``.
    """
    seen_artists: Set[str] = set()
    scored: List[ScoredTrack] = []

    for track in tracks:
        scored.append(score_track(track, weights=weights, seen_artists=set(seen_artists)))
        seen_artists.update(track.artists)

    scored.sort(key=lambda s: s.score, reverse=True)
    return [replace(item, rank=index) for index, item in enumerate(scored, start=1)]


def _coefficient_of_variation(values: Sequence[float]) -> float:
    mean = sum(values) / len(values)
    if mean <= 0:
        return 0.0
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance) / mean


def calculate_diversity_score(tracks: Sequence[TrackRef]) -> DiversityScore:
    if not tracks:
        return DiversityScore(0.0, 0.0, 0.0, 0.0)

    all_artists = [a for t in tracks for a in t.artists]
    artist_diversity = len(set(all_artists)) / len(all_artists) if all_artists else 0.0
    duration_diversity = _coefficient_of_variation([t.duration_ms for t in tracks])
    popularity_diversity = _coefficient_of_variation(
        [t.popularity if t.popularity else 50 for t in tracks])

    overall = (artist_diversity * 0.5
               + min(1.0, duration_diversity) * 0.3
               + min(1.0, popularity_diversity) * 0.2)

    return DiversityScore(
        artist_diversity=artist_diversity,
        duration_diversity=duration_diversity,
        popularity_diversity=popularity_diversity,
        overall_diversity=overall,
    )


def normalize_scores(items: Sequence[ScoredTrack]) -> List[ScoredTrack]:
    """Min/max rescale scores to [0, 1]. A batch of equal scores maps to 1."""
    if not items:
        return []
    scores = [item.score for item in items]
    low, high = min(scores), max(scores)
    spread = high - low
    if spread == 0:
        return [replace(item, score=1.0) for item in items]
    return [replace(item, score=(item.score - low) / spread) for item in items]


def generate_scoring_weights(favor_popular: bool = False, favor_recent: bool = False,
                             ensure_diversity: bool = False,
                             allow_explicit: Optional[bool] = None,
                             prefer_length: Optional[str] = None) -> ScoringWeights:
    """Derive weights from coarse listener preferences. Later preferences win on conflicts."""
    values = DEFAULT_SCORING_WEIGHTS.to_json()

    if favor_popular:
        values.update(popularity=0.5, recency=0.1)
    if favor_recent:
        values.update(recency=0.4, popularity=0.2)
    if ensure_diversity:
        values.update(artistDiversity=0.3, genreDiversity=0.2, popularity=0.2)
    if allow_explicit is False:
        values["explicit"] = -0.3
    elif allow_explicit is True:
        values["explicit"] = 0.0
    if prefer_length:
        values["duration"] = 0.2

    return ScoringWeights.from_json(values)
