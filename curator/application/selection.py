import logging
import math
from dataclasses import dataclass, field, replace
from functools import cmp_to_key
from typing import Dict, List, Optional, Sequence

from curator.application.constraints import validate_rules
from curator.domain.entities import Rules, ScoredTrack, SelectionOptions, SelectionResult, TrackRef
from curator.domain.errors import ValidationError
from curator.domain.ports import RandomPort, SystemTimePort, TimePort


logger = logging.getLogger(__name__)

BASE_SCORE = 0.5
DEFAULT_POPULARITY_WEIGHT = 0.3
EXPLICIT_PENALTY = 0.1
DIVERSITY_PENALTY_UNIT = 0.1
TIE_THRESHOLD = 0.01
DEFAULT_SELECTION_COUNT = 50

MS_PER_MINUTE = 60 * 1000
MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass
class ScoreDistribution:
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0


@dataclass
class SelectionAnalysis:
    total_candidates: int
    requested_count: int
    available_count: int
    score_distribution: ScoreDistribution
    top_scores: List[float] = field(default_factory=list)

    def to_json(self) -> Dict:
        return {
            "totalCandidates": self.total_candidates,
            "requestedCount": self.requested_count,
            "availableCount": self.available_count,
            "scoreDistribution": vars(self.score_distribution).copy(),
            "topScores": list(self.top_scores),
        }


def _duration_bonus(duration_ms: int) -> float:
    minutes = duration_ms / MS_PER_MINUTE
    if 2 <= minutes <= 5:
        return 0.1
    if 5 < minutes <= 7:
        return 0.05
    if 1.5 <= minutes < 2:
        return 0.05
    return 0.0


def _score_candidate(track: TrackRef, options: SelectionOptions, now_ms: int) -> ScoredTrack:
    breakdown: Dict[str, float] = {"base": BASE_SCORE}
    score = BASE_SCORE

    if track.popularity is not None:
        weight = (options.popularity_weight if options.popularity_weight is not None
                  else DEFAULT_POPULARITY_WEIGHT)
        breakdown["popularity"] = track.popularity / 100 * weight
        score += breakdown["popularity"]

    if options.recency_boost and options.reference_time_ms:
        days = (now_ms - options.reference_time_ms) / MS_PER_DAY
        breakdown["recency"] = math.exp(-days / 30) * options.recency_boost
        score += breakdown["recency"]

    breakdown["duration"] = _duration_bonus(track.duration_ms)
    score += breakdown["duration"]

    if track.explicit is True:
        breakdown["explicit"] = -EXPLICIT_PENALTY
        score -= EXPLICIT_PENALTY

    return ScoredTrack(track=track, score=max(0.0, min(1.0, score)), breakdown=breakdown)


def score_candidates(candidates: Sequence[TrackRef], options: SelectionOptions,
                     time_port: Optional[TimePort] = None) -> List[ScoredTrack]:
    """Score every candidate independently with the selection formula, clamped to [0, 1]."""
    now_ms = (time_port or SystemTimePort()).now_ms()
    return [_score_candidate(track, options, now_ms) for track in candidates]


def _apply_diversity(scored: Sequence[ScoredTrack], diversity_factor: float) -> List[ScoredTrack]:
    # Penalties accrue in score-descending order, not input order
    artist_counts: Dict[str, int] = {}
    ordered = sorted(scored, key=lambda s: s.score, reverse=True)
    adjusted: List[ScoredTrack] = []

    for item in ordered:
        penalty = 0.0
        for artist in item.track.artists:
            count = artist_counts.get(artist, 0)
            if count > 0:
                penalty += count * diversity_factor * DIVERSITY_PENALTY_UNIT
            artist_counts[artist] = count + 1

        breakdown = dict(item.breakdown)
        if penalty:
            breakdown["diversity"] = -penalty
        adjusted.append(replace(item, score=max(0.0, item.score - penalty), breakdown=breakdown))

    return adjusted


def _sort_with_tie_breaking(scored: Sequence[ScoredTrack], randomness_factor: float,
                            random_port: RandomPort) -> List[ScoredTrack]:
    threshold = TIE_THRESHOLD * (1 + randomness_factor)

    def compare(a: ScoredTrack, b: ScoredTrack) -> float:
        diff = b.score - a.score
        if randomness_factor > 0 and abs(diff) < threshold:
            return random_port.random() - 0.5
        return diff

    return sorted(scored, key=cmp_to_key(compare))


def select_tracks(candidates: Sequence[TrackRef], rules: Rules, options: SelectionOptions,
                  random_port: RandomPort, time_port: Optional[TimePort] = None) -> SelectionResult:
    """Score candidates and pick the top ``options.count``.

    Near-ties are broken through ``random_port`` only when a positive
    ``randomness_factor`` is set; otherwise the sort is stable.
    """
    validate_selection_options(options)
    validate_rules(rules)

    if not candidates:
        return SelectionResult(selected=[], scored=[])

    scored = score_candidates(candidates, options, time_port)

    if options.diversity_factor:
        scored = _apply_diversity(scored, options.diversity_factor)

    ranked = _sort_with_tie_breaking(scored, options.randomness_factor or 0.0, random_port)
    selected = [item.track for item in ranked[:options.count]]

    logger.debug(f"Selected {len(selected)} of {len(candidates)} candidates")
    return SelectionResult(selected=selected, scored=ranked)


def analyze_selection(candidates: Sequence[TrackRef], options: SelectionOptions,
                      time_port: Optional[TimePort] = None) -> SelectionAnalysis:
    if not candidates:
        return SelectionAnalysis(
            total_candidates=0,
            requested_count=options.count,
            available_count=0,
            score_distribution=ScoreDistribution(),
        )

    scores = sorted((s.score for s in score_candidates(candidates, options, time_port)), reverse=True)
    middle = len(scores) // 2
    if len(scores) % 2 == 0:
        median = (scores[middle - 1] + scores[middle]) / 2
    else:
        median = scores[middle]

    return SelectionAnalysis(
        total_candidates=len(candidates),
        requested_count=options.count,
        available_count=min(options.count, len(candidates)),
        score_distribution=ScoreDistribution(
            min=scores[-1],
            max=scores[0],
            mean=sum(scores) / len(scores),
            median=median,
        ),
        top_scores=scores[:10],
    )


def generate_selection_options(rules: Rules, favor_recent: bool = False,
                               favor_popular: bool = False, ensure_diversity: bool = False,
                               allow_randomness: bool = False) -> SelectionOptions:
    return SelectionOptions(
        count=rules.max_tracks or DEFAULT_SELECTION_COUNT,
        recency_boost=0.3 if favor_recent else None,
        popularity_weight=0.4 if favor_popular else None,
        diversity_factor=0.7 if ensure_diversity else None,
        randomness_factor=0.2 if allow_randomness else None,
    )


def validate_selection_options(options: SelectionOptions) -> None:
    errors: List[str] = []

    if not isinstance(options.count, int) or isinstance(options.count, bool) or options.count <= 0:
        errors.append("count must be positive")

    for name, label in (
        ("recency_boost", "recencyBoost"),
        ("popularity_weight", "popularityWeight"),
        ("diversity_factor", "diversityFactor"),
        ("randomness_factor", "randomnessFactor"),
    ):
        value = getattr(options, name)
        if value is not None and not 0 <= value <= 1:
            errors.append(f"{label} must be between 0 and 1")

    if errors:
        raise ValidationError(
            f"Invalid selection options: {'; '.join(errors)}",
            {"violations": errors},
        )
