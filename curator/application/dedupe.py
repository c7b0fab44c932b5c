import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from curator.domain.entities import DEDUPE_KEYS, DedupeResult, Rules, TrackRef
from curator.domain.errors import ValidationError
from curator.domain.normalization import normalize_string


logger = logging.getLogger(__name__)

KEY_SEPARATOR = "|"


@dataclass
class DuplicateGroup:
    key: str
    tracks: List[TrackRef] = field(default_factory=list)


@dataclass
class DedupeAnalysis:
    would_remove: int
    duplicate_groups: List[DuplicateGroup]
    effectiveness: float


def build_dedupe_key(track: TrackRef, criteria: str) -> str:
    """Build the sub-key for a single dedupe criterion.

    ``audioHash`` has no fingerprint to work from and falls back to
    ``name:durationMs:artists``.
    """
    if criteria == "uri":
        return track.uri
    if criteria == "id":
        return track.id
    if criteria == "audioHash":
        return f"{track.name}:{track.duration_ms}:{','.join(track.artists)}"
    if criteria == "name+artist":
        artists = ",".join(sorted(normalize_string(a) for a in track.artists))
        return f"{normalize_string(track.name)}:{artists}"
    raise ValidationError(f"Unknown deduplication criteria: {criteria}", {"criteria": criteria})


def build_composite_key(track: TrackRef, dedupe_by: Sequence[str]) -> str:
    return KEY_SEPARATOR.join(build_dedupe_key(track, c) for c in dedupe_by)


def deduplicate_tracks(tracks: Sequence[TrackRef], rules: Rules) -> DedupeResult:
    """Deduplicate tracks by the configured criteria.

    The first occurrence of a composite key wins; both ``deduped`` and
    ``removed`` preserve relative input order.
    """
    if not rules.dedupe_by:
        return DedupeResult(deduped=list(tracks), removed=[])

    deduped: List[TrackRef] = []
    removed: List[TrackRef] = []
    seen = set()

    for track in tracks:
        key = build_composite_key(track, rules.dedupe_by)
        if key in seen:
            removed.append(track)
        else:
            seen.add(key)
            deduped.append(track)

    if removed:
        logger.debug(f"Dedupe by {'+'.join(rules.dedupe_by)} removed {len(removed)} of {len(tracks)} tracks")

    return DedupeResult(deduped=deduped, removed=removed)


def analyze_deduplication(tracks: Sequence[TrackRef], rules: Rules) -> DedupeAnalysis:
    """Report which tracks deduplication would collapse, without removing anything."""
    if not rules.dedupe_by:
        return DedupeAnalysis(would_remove=0, duplicate_groups=[], effectiveness=0.0)

    groups: Dict[str, DuplicateGroup] = {}
    for track in tracks:
        key = build_composite_key(track, rules.dedupe_by)
        groups.setdefault(key, DuplicateGroup(key=key)).tracks.append(track)

    duplicate_groups = [g for g in groups.values() if len(g.tracks) > 1]
    would_remove = sum(len(g.tracks) - 1 for g in duplicate_groups)
    effectiveness = would_remove / len(tracks) if tracks else 0.0

    return DedupeAnalysis(
        would_remove=would_remove,
        duplicate_groups=duplicate_groups,
        effectiveness=effectiveness,
    )


def merge_dedupe_rules(*rule_sets: Rules) -> List[str]:
    """Union of dedupe criteria, most specific first."""
    criteria = []
    for rules in rule_sets:
        for key in rules.dedupe_by:
            if key not in criteria:
                criteria.append(key)

    def priority(key: str):
        if key in DEDUPE_KEYS:
            return (0, DEDUPE_KEYS.index(key), key)
        return (1, 0, key)

    return sorted(criteria, key=priority)


def validate_dedupe_rules(dedupe_by: Optional[Iterable[str]]) -> None:
    if not dedupe_by:
        return
    for criteria in dedupe_by:
        if criteria not in DEDUPE_KEYS:
            raise ValidationError(
                f"Invalid deduplication criteria: {criteria}. Valid options: {', '.join(DEDUPE_KEYS)}",
                {"criteria": criteria, "validCriteria": list(DEDUPE_KEYS)},
            )
