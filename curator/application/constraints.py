import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from curator.domain.entities import ConstraintResult, Rejection, Rules, TrackRef
from curator.domain.errors import RuleViolation
from curator.domain.normalization import normalize_artist_name


logger = logging.getLogger(__name__)

MAX_TRACKS_REASON = "Exceeds maximum tracks limit"
ARTIST_REPRESENTED_REASON = "Artist already represented"
EXPLICIT_REASON = "Explicit content not allowed"


@dataclass
class PassRateEstimate:
    estimated_pass_count: int
    estimated_fail_count: int
    pass_rate: float
    constraint_breakdown: Dict[str, int] = field(default_factory=dict)


def _item_violations(track: TrackRef, rules: Rules) -> List[str]:
    violations: List[str] = []

    if rules.allow_explicit is False and track.explicit is True:
        violations.append(EXPLICIT_REASON)

    # Tracks without popularity data pass the popularity floor
    if rules.min_popularity is not None and track.popularity is not None:
        if track.popularity < rules.min_popularity:
            violations.append(f"Popularity {track.popularity} below minimum {rules.min_popularity}")

    return violations


def _enforce_unique_artists(tracks: Sequence[TrackRef]) -> Tuple[List[TrackRef], List[TrackRef]]:
    accepted: List[TrackRef] = []
    rejected: List[TrackRef] = []
    seen_artists = set()

    for track in tracks:
        names = [normalize_artist_name(a) for a in track.artists]
        if any(name not in seen_artists for name in names):
            accepted.append(track)
            seen_artists.update(names)
        else:
            rejected.append(track)

    return accepted, rejected


def apply_constraints(items: Sequence[TrackRef], rules: Rules) -> ConstraintResult:
    """Filter tracks by per-item rules, then apply the global limits.

    Global constraints run on the accepted set in a fixed order: the
    ``max_tracks`` truncation first, then the unique-artist scan.
    """
    accepted: List[TrackRef] = []
    rejected: List[Rejection] = []

    for item in items:
        violations = _item_violations(item, rules)
        if violations:
            rejected.append(Rejection(reason="; ".join(violations), item=item))
        else:
            accepted.append(item)

    if rules.max_tracks and len(accepted) > rules.max_tracks:
        excess = accepted[rules.max_tracks:]
        accepted = accepted[:rules.max_tracks]
        reason = f"{MAX_TRACKS_REASON} ({rules.max_tracks})"
        rejected.extend(Rejection(reason=reason, item=item) for item in excess)

    if rules.unique_artists:
        accepted, repeats = _enforce_unique_artists(accepted)
        rejected.extend(Rejection(reason=ARTIST_REPRESENTED_REASON, item=item) for item in repeats)

    logger.debug(f"Constraints accepted {len(accepted)}, rejected {len(rejected)}")
    return ConstraintResult(accepted=accepted, rejected=rejected)


def validate_rules(rules: Rules) -> None:
    """Raise RuleViolation if the rule set is internally inconsistent."""
    violations: List[str] = []

    if rules.max_tracks is not None and rules.max_tracks <= 0:
        violations.append("maxTracks must be positive")

    if rules.min_popularity is not None and not 0 <= rules.min_popularity <= 100:
        violations.append("minPopularity must be between 0 and 100")

    if violations:
        raise RuleViolation(
            f"Invalid rules: {'; '.join(violations)}",
            rule="RULE_VALIDATION",
            violating_items=violations,
            meta={"rules": rules.to_json()},
        )


def would_violate_constraint(track: TrackRef, constraint: str, value: Any) -> bool:
    if constraint == "allow_explicit":
        return value is False and track.explicit is True
    if constraint == "min_popularity":
        return track.popularity is not None and track.popularity < value
    return False


def estimate_constraint_pass_rate(tracks: Sequence[TrackRef], rules: Rules) -> PassRateEstimate:
    breakdown: Dict[str, int] = {}
    passing: List[TrackRef] = []

    for track in tracks:
        violations = _item_violations(track, rules)
        if violations:
            for violation in violations:
                breakdown[violation] = breakdown.get(violation, 0) + 1
        else:
            passing.append(track)

    pass_count = len(passing)

    if rules.max_tracks and pass_count > rules.max_tracks:
        breakdown[MAX_TRACKS_REASON] = pass_count - rules.max_tracks
        pass_count = rules.max_tracks

    if rules.unique_artists:
        unique, _ = _enforce_unique_artists(passing[:pass_count])
        if len(unique) < pass_count:
            breakdown[ARTIST_REPRESENTED_REASON] = pass_count - len(unique)
            pass_count = len(unique)

    return PassRateEstimate(
        estimated_pass_count=pass_count,
        estimated_fail_count=len(tracks) - pass_count,
        pass_rate=pass_count / len(tracks) if tracks else 0.0,
        constraint_breakdown=breakdown,
    )


def merge_rules(*rule_sets: Rules) -> Rules:
    """Merge rule sets field by field; later sets take precedence."""
    merged: Dict[str, Any] = {}
    for rules in rule_sets:
        if rules.max_tracks is not None:
            merged["max_tracks"] = rules.max_tracks
        if rules.allow_explicit is not None:
            merged["allow_explicit"] = rules.allow_explicit
        if rules.min_popularity is not None:
            merged["min_popularity"] = rules.min_popularity
        if rules.unique_artists is not None:
            merged["unique_artists"] = rules.unique_artists
        if rules.dedupe_by:
            merged["dedupe_by"] = tuple(rules.dedupe_by)
    return Rules(**merged)
