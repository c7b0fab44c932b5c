import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple, Type, TypeVar, Union

from curator.application.batching import PLAYLIST_BATCH_SIZE, chunked
from curator.application.constraints import apply_constraints, validate_rules
from curator.application.dedupe import deduplicate_tracks
from curator.domain.entities import (
    AddTracksStep,
    MutationPlan,
    RemoveTracksStep,
    ReorderStep,
    Rules,
    TrackRef,
)
from curator.domain.errors import IdempotencyError, ValidationError


logger = logging.getLogger(__name__)

MS_PER_API_CALL = 500

TrackStep = TypeVar("TrackStep", AddTracksStep, RemoveTracksStep)


@dataclass(frozen=True)
class MutationImpact:
    tracks_added: int
    tracks_removed: int
    tracks_moved: int
    final_count: int
    estimated_duration_ms: int

    def to_json(self) -> Dict[str, int]:
        return {
            "tracksAdded": self.tracks_added,
            "tracksRemoved": self.tracks_removed,
            "tracksMoved": self.tracks_moved,
            "finalCount": self.final_count,
            "estimatedDurationMs": self.estimated_duration_ms,
        }


def resort_key(track: TrackRef) -> Tuple[str, str]:
    """Sort key for the whole-collection resort: primary artist, then name."""
    return (track.primary_artist.casefold(), track.name.casefold())


def process_target(target: Sequence[TrackRef], rules: Rules) -> List[TrackRef]:
    """Run the desired collection through dedupe and constraints."""
    processed = list(target)
    if rules.dedupe_by:
        processed = deduplicate_tracks(processed, rules).deduped
    return apply_constraints(processed, rules).accepted


def generate_mutation_plan(existing: Sequence[TrackRef], target: Sequence[TrackRef],
                           rules: Rules) -> MutationPlan:
    """Diff ``existing`` against the rule-processed ``target`` by uri.

    Adds and removes are chunked in original order into steps of at most
    100 tracks. A single whole-collection resort is emitted when
    ``rules.unique_artists`` is set.
    """
    validate_rules(rules)
    processed = process_target(target, rules)

    existing_uris = {t.uri for t in existing}
    target_uris = {t.uri for t in processed}

    to_add = [t for t in processed if t.uri not in existing_uris]
    to_remove = [t for t in existing if t.uri not in target_uris]

    plan = MutationPlan(
        adds=tuple(AddTracksStep(tracks=chunk) for chunk in chunked(to_add, PLAYLIST_BATCH_SIZE)),
        removes=tuple(RemoveTracksStep(tracks=chunk) for chunk in chunked(to_remove, PLAYLIST_BATCH_SIZE)),
        reorders=(ReorderStep.resort_all(),) if rules.unique_artists else (),
    )

    logger.debug(
        f"Mutation plan: +{len(to_add)} -{len(to_remove)} tracks in {plan.step_count} steps"
    )
    return plan


def apply_reorder(tracks: List[TrackRef], step: ReorderStep) -> List[TrackRef]:
    if step.is_sentinel:
        return sorted(tracks, key=resort_key)
    result = list(tracks)
    moved = result[step.from_index:step.from_index + step.count]
    del result[step.from_index:step.from_index + step.count]
    result[step.to:step.to] = moved
    return result


def apply_mutation_plan(existing: Sequence[TrackRef], plan: MutationPlan) -> List[TrackRef]:
    """Simulate a plan against an in-memory collection.

    Removes apply first, then adds in step order, then reorders.
    """
    result = list(existing)

    for step in plan.removes:
        remove_uris = {t.uri for t in step.tracks}
        result = [t for t in result if t.uri not in remove_uris]

    for step in plan.adds:
        if step.position is not None:
            result[step.position:step.position] = list(step.tracks)
        else:
            result.extend(step.tracks)

    for step in plan.reorders:
        result = apply_reorder(result, step)

    return result


def validate_idempotency(existing: Sequence[TrackRef], plan: MutationPlan) -> bool:
    """True when re-planning the simulated result against itself yields no steps."""
    try:
        applied = apply_mutation_plan(existing, plan)
        return generate_mutation_plan(applied, applied, Rules()).is_empty
    except (ValidationError, IndexError):
        return False


def assert_idempotent(existing: Sequence[TrackRef], plan: MutationPlan) -> None:
    if not validate_idempotency(existing, plan):
        raise IdempotencyError(
            "Mutation plan does not converge when re-applied",
            meta={"existingCount": len(existing), "stepCount": plan.step_count},
        )


def estimate_mutation_impact(existing: Sequence[TrackRef], plan: MutationPlan) -> MutationImpact:
    added = sum(len(s.tracks) for s in plan.adds)
    removed = sum(len(s.tracks) for s in plan.removes)

    moved = 0
    for step in plan.reorders:
        if step.is_sentinel:
            moved = len(existing)
        else:
            moved += step.count

    return MutationImpact(
        tracks_added=added,
        tracks_removed=removed,
        tracks_moved=moved,
        final_count=len(existing) + added - removed,
        estimated_duration_ms=plan.step_count * MS_PER_API_CALL,
    )


def _merge_track_steps(steps: Sequence[TrackStep], step_cls: Type[TrackStep]) -> List[TrackStep]:
    merged: List[TrackStep] = []
    batch: List[TrackRef] = []

    def flush():
        for chunk in chunked(batch, PLAYLIST_BATCH_SIZE):
            merged.append(step_cls(tracks=tuple(chunk)))
        batch.clear()

    for step in steps:
        # Positioned inserts keep their own step
        if getattr(step, "position", None) is not None:
            flush()
            merged.append(step)
            continue
        if len(batch) + len(step.tracks) > PLAYLIST_BATCH_SIZE:
            flush()
        batch.extend(step.tracks)
        if len(batch) >= PLAYLIST_BATCH_SIZE:
            flush()

    flush()
    return merged


def merge_track_steps(steps: Sequence[Union[AddTracksStep, RemoveTracksStep]]):
    """Greedily merge consecutive steps of one kind without crossing the 100-track cap."""
    if not steps:
        return []
    return _merge_track_steps(steps, type(steps[0]))


def optimize_mutation_plan(plan: MutationPlan) -> MutationPlan:
    return MutationPlan(
        adds=tuple(merge_track_steps(plan.adds)),
        removes=tuple(merge_track_steps(plan.removes)),
        reorders=plan.reorders,
        annotations=plan.annotations,
    )


def _validate_track_step(label: str, step: Union[AddTracksStep, RemoveTracksStep],
                         errors: List[str]) -> None:
    if not step.tracks:
        errors.append(f"{label} step contains no tracks")
    elif len(step.tracks) > PLAYLIST_BATCH_SIZE:
        errors.append(
            f"{label} step contains {len(step.tracks)} tracks, exceeding limit of {PLAYLIST_BATCH_SIZE}"
        )


def validate_mutation_plan(plan: MutationPlan) -> None:
    errors: List[str] = []

    for step in plan.adds:
        _validate_track_step("Add", step, errors)
    for step in plan.removes:
        _validate_track_step("Remove", step, errors)

    for step in plan.reorders:
        if step.from_index < 0 and step.from_index != -1:
            errors.append("Invalid reorder from position")
        if step.to < 0 and step.to != -1:
            errors.append("Invalid reorder to position")
        if step.count < 0 and step.count != -1:
            errors.append("Invalid reorder count")

    if errors:
        raise ValidationError(f"Invalid mutation plan: {'; '.join(errors)}", {"violations": errors})
