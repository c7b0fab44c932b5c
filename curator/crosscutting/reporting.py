from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from curator.application.planning import estimate_plan_duration
from curator.application.reconciliation import estimate_mutation_impact, validate_idempotency
from curator.domain.entities import (
    AddTracksStep,
    AnnotateStep,
    MutationPlan,
    PlanStep,
    PlaylistPlan,
    RemoveTracksStep,
    ReorderStep,
    TrackRef,
)
from curator.domain.errors import PlanningError


class StepKind(str, Enum):
    """Kind of a plan step, as counted in reports."""

    ADD = "add"
    REMOVE = "remove"
    REORDER = "reorder"
    ANNOTATE = "annotate"


@dataclass
class ReportHeader:
    """Header information for a plan report."""

    kind: str
    generated_at: datetime
    plan_id: Optional[str] = None
    name: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "generatedAt": self.generated_at.isoformat(),
            "planId": self.plan_id,
            "name": self.name,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ReportHeader":
        return cls(
            kind=data["kind"],
            generated_at=datetime.fromisoformat(data["generatedAt"]),
            plan_id=data.get("planId"),
            name=data.get("name"),
        )


@dataclass
class PlanReport:
    """JSON-ready summary of a plan, for display before execution."""

    header: ReportHeader
    step_counts: Dict[str, int] = field(default_factory=dict)
    tracks_added: int = 0
    tracks_removed: int = 0
    estimated_duration_ms: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {
            "header": self.header.to_json(),
            "stepCounts": dict(self.step_counts),
            "tracksAdded": self.tracks_added,
            "tracksRemoved": self.tracks_removed,
            "estimatedDurationMs": self.estimated_duration_ms,
            "details": dict(self.details),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlanReport":
        return cls(
            header=ReportHeader.from_json(data["header"]),
            step_counts=data.get("stepCounts", {}),
            tracks_added=data.get("tracksAdded", 0),
            tracks_removed=data.get("tracksRemoved", 0),
            estimated_duration_ms=data.get("estimatedDurationMs", 0),
            details=data.get("details", {}),
        )


def step_kind(step: PlanStep) -> StepKind:
    if isinstance(step, AddTracksStep):
        return StepKind.ADD
    if isinstance(step, RemoveTracksStep):
        return StepKind.REMOVE
    if isinstance(step, ReorderStep):
        return StepKind.REORDER
    if isinstance(step, AnnotateStep):
        return StepKind.ANNOTATE
    raise PlanningError(f"Unknown plan step: {step!r}", {"step": repr(step)})


def count_steps(steps: Sequence[PlanStep]) -> Dict[str, int]:
    counts = {kind.value: 0 for kind in StepKind}
    for step in steps:
        counts[step_kind(step).value] += 1
    return counts


def _track_total(steps: Sequence[PlanStep], step_cls: Union[type, tuple]) -> int:
    return sum(len(s.tracks) for s in steps if isinstance(s, step_cls))


def build_plan_report(plan: PlaylistPlan, plan_id: Optional[str] = None) -> PlanReport:
    """Summarize a playlist plan."""
    estimate = estimate_plan_duration(plan)
    annotations: List[AnnotateStep] = [s for s in plan.steps if isinstance(s, AnnotateStep)]

    return PlanReport(
        header=ReportHeader(
            kind="playlist_plan",
            generated_at=datetime.now(timezone.utc),
            plan_id=plan_id,
            name=plan.name,
        ),
        step_counts=count_steps(plan.steps),
        tracks_added=_track_total(plan.steps, AddTracksStep),
        tracks_removed=_track_total(plan.steps, RemoveTracksStep),
        estimated_duration_ms=int(round(estimate.estimated_seconds * 1000)),
        details={
            "apiCalls": estimate.api_calls,
            "public": plan.public,
            "annotations": {a.field: a.value for a in annotations},
        },
    )


def build_mutation_report(existing: Sequence[TrackRef], plan: MutationPlan,
                          plan_id: Optional[str] = None) -> PlanReport:
    """Summarize a mutation plan against the collection it will be applied to."""
    impact = estimate_mutation_impact(existing, plan)

    return PlanReport(
        header=ReportHeader(
            kind="mutation_plan",
            generated_at=datetime.now(timezone.utc),
            plan_id=plan_id,
        ),
        step_counts=count_steps(plan.steps()),
        tracks_added=impact.tracks_added,
        tracks_removed=impact.tracks_removed,
        estimated_duration_ms=impact.estimated_duration_ms,
        details={
            "tracksMoved": impact.tracks_moved,
            "finalCount": impact.final_count,
            "idempotent": validate_idempotency(existing, plan),
        },
    )
