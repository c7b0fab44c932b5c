import logging
import re
from collections import Counter
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

from curator.application.batching import PLAYLIST_BATCH_SIZE, chunked
from curator.application.constraints import merge_rules, validate_rules
from curator.application.reconciliation import process_target
from curator.domain.entities import (
    MAX_DESCRIPTION_LENGTH,
    MAX_NAME_LENGTH,
    MAX_PLAYLIST_TRACKS,
    AddTracksStep,
    AnnotateStep,
    PlanStep,
    PlaylistIntent,
    PlaylistPlan,
    RemoveTracksStep,
    ReorderStep,
    Rules,
    SearchIntent,
    SourceSpec,
    StructuredIntent,
    TrackRef,
    YearRange,
)
from curator.domain.errors import PlanningError, ValidationError


logger = logging.getLogger(__name__)

SECONDS_PER_API_CALL = 1.2
DEFAULT_NAME = "My Mix"
DEFAULT_TARGET_NAME = "My Playlist"
ELLIPSIS = "..."

GENRE_VOCABULARY = (
    "rock", "pop", "jazz", "classical", "country", "electronic", "hip hop", "rap",
    "blues", "folk", "metal", "indie", "alternative", "disco", "funk", "reggae",
    "latin", "world", "ambient", "house", "techno", "trance", "dubstep", "drum and bass",
)

# A prefixed list runs until the next prefix, a year/decade, "from", or a line break
_LIST_END = r"(?=\s*(?:[;\n]|\b(?:genres?|artists?)\s*:|\bfrom\b|\b\d{4}\b|\b\d{2,4}s\b|$))"
_GENRE_LIST_PATTERN = re.compile(r"\bgenres?\s*:\s*(.+?)" + _LIST_END, re.IGNORECASE)
_ARTIST_LIST_PATTERN = re.compile(r"\bartists?\s*:\s*(.+?)" + _LIST_END, re.IGNORECASE)
_LIST_SPLIT_PATTERN = re.compile(r"\s*(?:,|&|\band\b)\s*", re.IGNORECASE)
_BARE_GENRE_PATTERN = re.compile(
    r"\b(?:rock|pop|jazz|classical|country|electronic|hip[\s-]?hop|rap|blues|folk|metal|indie|"
    r"alternative|disco|funk|reggae|latin|world|ambient|house|techno|trance|dubstep|"
    r"drum\s*(?:and|&|n)\s*bass)\b",
    re.IGNORECASE,
)
_YEAR_PATTERN = re.compile(r"(?:\bfrom\s+)?\b(\d{4})(?:\s*-\s*(\d{4}))?\b(?!s)", re.IGNORECASE)
_DECADE_PATTERN = re.compile(r"\b(\d{2}|\d{4})s\b", re.IGNORECASE)
_TARGET_TAIL = r"(?:[\"']([^\"']+)[\"']|(.+?)(?=\s*(?:[,;:\n]|\b(?:with|genres?|artists?|from)\b|\b\d{4}\b|\b\d{2,4}s\b|$)))"
_APPEND_PATTERN = re.compile(r"\b(?:add|append)\s+to\s+" + _TARGET_TAIL, re.IGNORECASE)
_UPDATE_PATTERN = re.compile(r"\b(?:update|modify)\s+" + _TARGET_TAIL, re.IGNORECASE)
_WHITESPACE_PATTERN = re.compile(r"\s+")
_CONNECTOR_PATTERN = re.compile(r"^(?:(?:with|for|from|by)\b\s*)+|(?:\s*\b(?:with|for|from|by))+$", re.IGNORECASE)


@dataclass(frozen=True)
class PlanEstimate:
    estimated_seconds: float
    estimated_steps: int
    api_calls: int

    def to_json(self) -> Dict[str, float]:
        return {
            "estimatedSeconds": self.estimated_seconds,
            "estimatedSteps": self.estimated_steps,
            "apiCalls": self.api_calls,
        }


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in _LIST_SPLIT_PATTERN.split(raw) if item.strip()]


def _unique(values) -> List[str]:
    result: List[str] = []
    for value in values:
        if value not in result:
            result.append(value)
    return result


def _blank_spans(text: str, spans: List[Tuple[int, int]]) -> str:
    # Replace matched spans with spaces so remaining offsets stay valid
    chars = list(text)
    for start, end in spans:
        for i in range(start, end):
            chars[i] = " "
    return "".join(chars)


def parse_action(text: str) -> Tuple[str, Optional[str], Optional[Tuple[int, int]]]:
    """Detect the intent action and its target playlist name.

    Returns ``(action, target, span)`` where ``span`` covers the matched phrase.
    """
    for action, pattern in (("append", _APPEND_PATTERN), ("update", _UPDATE_PATTERN)):
        match = pattern.search(text)
        if match:
            target = (match.group(1) or match.group(2) or "").strip() or None
            return action, target, match.span()
    return "create", None, None


def extract_search_criteria(text: str, ignore_span: Optional[Tuple[int, int]] = None) -> SearchIntent:
    """Pull genres, artists, year bounds and a free-text query out of ``text``.

    Only fixed patterns are recognised: ``genre:``/``artist:`` prefixed lists,
    a small genre vocabulary, ``YYYY`` or ``YYYY-YYYY`` and ``NNs`` decades.
    """
    consumed: List[Tuple[int, int]] = [ignore_span] if ignore_span else []
    working = _blank_spans(text, consumed)

    genres: List[str] = []
    artists: List[str] = []

    for match in _GENRE_LIST_PATTERN.finditer(working):
        genres.extend(g.lower() for g in _split_list(match.group(1)))
        consumed.append(match.span())
    for match in _ARTIST_LIST_PATTERN.finditer(working):
        artists.extend(_split_list(match.group(1)))
        consumed.append(match.span())

    working = _blank_spans(text, consumed)
    for match in _BARE_GENRE_PATTERN.finditer(working):
        genres.append(_WHITESPACE_PATTERN.sub(" ", match.group(0).lower()))
        consumed.append(match.span())

    year = None
    year_range = None
    year_match = _YEAR_PATTERN.search(working)
    if year_match:
        consumed.append(year_match.span())
        if year_match.group(2):
            year_range = YearRange(min=int(year_match.group(1)), max=int(year_match.group(2)))
        else:
            year = int(year_match.group(1))
    else:
        decade_match = _DECADE_PATTERN.search(working)
        if decade_match:
            consumed.append(decade_match.span())
            decade = int(decade_match.group(1))
            if decade < 100:
                decade += 1900
            year_range = YearRange(min=decade, max=decade + 9)

    remainder = _blank_spans(text, consumed)
    query = _WHITESPACE_PATTERN.sub(" ", remainder).strip(" ,;:-'\"")
    # leftover connectors such as "with" in "update X with artist: Y"
    query = _CONNECTOR_PATTERN.sub("", query).strip(" ,;:-'\"")

    return SearchIntent(
        query=query if len(query) > 2 else None,
        genres=tuple(_unique(genres)) or None,
        artists=tuple(_unique(artists)) or None,
        year=year,
        year_range=year_range,
    )


def parse_intent_text(text: str, rules: Optional[Rules] = None) -> StructuredIntent:
    """Turn free text into a structured intent using keyword patterns only."""
    text = text.strip()
    action, target, span = parse_action(text)
    criteria = extract_search_criteria(text, ignore_span=span)
    logger.debug(f"Parsed intent action={action} target={target!r} criteria={criteria.to_json()}")
    return StructuredIntent(action=action, target=target, criteria=criteria, rules=rules or Rules())


def _truncate(value: str, limit: int) -> str:
    if len(value) > limit:
        return value[:limit - len(ELLIPSIS)] + ELLIPSIS
    return value


def generate_playlist_name(intent: StructuredIntent) -> str:
    if intent.action in ("update", "append"):
        return _truncate(intent.target or DEFAULT_TARGET_NAME, MAX_NAME_LENGTH)

    criteria = intent.criteria
    parts: List[str] = []

    if criteria.query:
        parts.append(criteria.query)
    if criteria.genres:
        parts.append(criteria.genres[0] if len(criteria.genres) == 1 else f"{criteria.genres[0]} & More")
    if criteria.year:
        parts.append(str(criteria.year))
    elif criteria.year_range:
        parts.append(f"{criteria.year_range.min}-{criteria.year_range.max}")

    name = " ".join(parts) or DEFAULT_NAME
    if len(name.split(" ")) == 1 and criteria.genres and len(criteria.genres) == 1:
        name += " Mix"

    name = name[0].upper() + name[1:]
    return _truncate(name, MAX_NAME_LENGTH)


def generate_playlist_description(intent: StructuredIntent) -> Optional[str]:
    criteria = intent.criteria
    parts: List[str] = []

    if criteria.query:
        parts.append(f'Tracks matching "{criteria.query}"')
    if criteria.artists:
        if len(criteria.artists) == 1:
            parts.append(f"Featuring {criteria.artists[0]}")
        else:
            parts.append(f"Featuring {', '.join(criteria.artists[:2])} and others")
    if criteria.genres:
        parts.append(f"Genres: {', '.join(criteria.genres[:3])}")
    if criteria.year:
        parts.append(f"From {criteria.year}")
    elif criteria.year_range:
        parts.append(f"From {criteria.year_range.min} to {criteria.year_range.max}")

    if not parts:
        return None
    return _truncate(". ".join(parts), MAX_DESCRIPTION_LENGTH)


def _source_adds(sources: Sequence[SourceSpec], rules: Rules,
                 existing_uris: set) -> Tuple[List[AddTracksStep], List[TrackRef]]:
    pooled = [track for source in sources for track in source.tracks]
    processed = process_target(pooled, rules)

    # Surviving tracks are the pooled objects themselves; count by identity
    # so each source claims its own first occurrences
    remaining = Counter(id(track) for track in processed)
    adds: List[AddTracksStep] = []

    for source in sources:
        survivors: List[TrackRef] = []
        for track in source.tracks:
            if remaining[id(track)] > 0:
                remaining[id(track)] -= 1
                if track.uri not in existing_uris:
                    survivors.append(track)
        adds.extend(AddTracksStep(tracks=chunk) for chunk in chunked(survivors, PLAYLIST_BATCH_SIZE))

    return adds, processed


def _should_resort(intent: StructuredIntent, rules: Rules) -> bool:
    return bool(intent.criteria.year or intent.criteria.year_range or rules.unique_artists)


def generate_plan_steps(intent: StructuredIntent, sources: Sequence[SourceSpec], rules: Rules,
                        existing: Optional[Sequence[TrackRef]] = None) -> List[PlanStep]:
    """Emit annotations, removes, per-source adds and an optional resort, in that order."""
    steps: List[PlanStep] = []

    if intent.action in ("create", "update"):
        steps.append(AnnotateStep(field="name", value=generate_playlist_name(intent)))
        description = generate_playlist_description(intent)
        if description:
            steps.append(AnnotateStep(field="description", value=description))

    existing_uris = {t.uri for t in existing or ()}
    adds, processed = _source_adds(sources, rules, existing_uris)

    if intent.action == "update" and existing:
        keep = {t.uri for t in processed}
        stale = [t for t in existing if t.uri not in keep]
        steps.extend(RemoveTracksStep(tracks=chunk) for chunk in chunked(stale, PLAYLIST_BATCH_SIZE))

    steps.extend(adds)

    if adds and _should_resort(intent, rules):
        steps.append(ReorderStep.resort_all())

    return steps


def create_playlist_plan(request: PlaylistIntent) -> PlaylistPlan:
    """Build a validated playlist plan from a free-text or structured intent."""
    if isinstance(request.intent, str):
        intent = parse_intent_text(request.intent, request.rules)
    else:
        intent = request.intent

    rules = merge_rules(request.rules, intent.rules)
    validate_rules(rules)

    steps = generate_plan_steps(intent, request.sources, rules, request.existing)

    public = request.public
    if public is None:
        public = bool(intent.criteria.limit and intent.criteria.limit > 100)

    plan = PlaylistPlan(
        name=generate_playlist_name(intent),
        description=generate_playlist_description(intent),
        public=public,
        steps=tuple(steps),
    )

    validate_playlist_plan(plan)
    logger.debug(f"Built {intent.action} plan '{plan.name}' with {len(plan.steps)} steps")
    return plan


def validate_playlist_plan(plan: PlaylistPlan) -> None:
    """Check shape limits, then post-hoc plan invariants.

    Shape violations raise ValidationError; invariant violations raise
    PlanningError with the individual problems under ``meta['errors']``.
    """
    shape: List[str] = []
    if not plan.name:
        shape.append("name is required")
    elif len(plan.name) > MAX_NAME_LENGTH:
        shape.append(f"name exceeds {MAX_NAME_LENGTH} characters")
    if plan.description is not None and len(plan.description) > MAX_DESCRIPTION_LENGTH:
        shape.append(f"description exceeds {MAX_DESCRIPTION_LENGTH} characters")
    if shape:
        raise ValidationError(f"Invalid playlist plan: {'; '.join(shape)}", {"violations": shape})

    errors: List[str] = []
    if not plan.steps:
        errors.append("Plan has no steps")

    total_tracks = 0
    has_adds = False
    for step in plan.steps:
        if isinstance(step, AddTracksStep):
            has_adds = True
            total_tracks += len(step.tracks)
            if len(step.tracks) > PLAYLIST_BATCH_SIZE:
                errors.append(f"Add step contains {len(step.tracks)} tracks, exceeding limit of {PLAYLIST_BATCH_SIZE}")
        elif isinstance(step, (RemoveTracksStep, ReorderStep, AnnotateStep)):
            continue
        else:
            raise PlanningError(f"Unknown plan step: {step!r}", {"step": repr(step)})

    if has_adds and total_tracks == 0:
        errors.append("Plan has add steps but no tracks to add")
    if total_tracks > MAX_PLAYLIST_TRACKS:
        errors.append(f"Plan would add {total_tracks} tracks, exceeding the {MAX_PLAYLIST_TRACKS:,} track limit")

    if errors:
        raise PlanningError(
            f"Plan validation failed: {'; '.join(errors)}",
            {"errors": errors, "plan": {"name": plan.name, "stepCount": len(plan.steps)}},
        )


def estimate_plan_duration(plan: PlaylistPlan) -> PlanEstimate:
    api_calls = 0
    for step in plan.steps:
        if isinstance(step, (AddTracksStep, RemoveTracksStep)):
            api_calls += max(1, -(-len(step.tracks) // PLAYLIST_BATCH_SIZE))
        elif isinstance(step, (ReorderStep, AnnotateStep)):
            api_calls += 1
        else:
            raise PlanningError(f"Unknown plan step: {step!r}", {"step": repr(step)})

    return PlanEstimate(
        estimated_seconds=round(api_calls * SECONDS_PER_API_CALL, 3),
        estimated_steps=len(plan.steps),
        api_calls=api_calls,
    )


def optimize_plan(plan: PlaylistPlan) -> PlaylistPlan:
    """Re-chunk runs of consecutive unpositioned adds into full batches of 100."""
    steps: List[PlanStep] = []
    pending: List[TrackRef] = []

    def flush():
        steps.extend(AddTracksStep(tracks=chunk) for chunk in chunked(pending, PLAYLIST_BATCH_SIZE))
        pending.clear()

    for step in plan.steps:
        if isinstance(step, AddTracksStep) and step.position is None:
            pending.extend(step.tracks)
        else:
            flush()
            steps.append(step)
    flush()

    return replace(plan, steps=tuple(steps))
