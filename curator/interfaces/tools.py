from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from curator.application.constraints import apply_constraints, estimate_constraint_pass_rate, validate_rules
from curator.application.dedupe import analyze_deduplication, deduplicate_tracks
from curator.application.library import batch_library_diff, compute_library_diff, validate_library_safety
from curator.application.planning import create_playlist_plan, optimize_plan
from curator.application.playback import make_playback_decision
from curator.application.reconciliation import (
    apply_mutation_plan,
    generate_mutation_plan,
    optimize_mutation_plan,
    validate_idempotency,
    validate_mutation_plan,
)
from curator.application.scoring import ScoringWeights, normalize_scores, score_track_collection
from curator.application.search import normalize_search_intent, search_intent_to_query
from curator.application.selection import analyze_selection, select_tracks
from curator.crosscutting.config import Settings
from curator.crosscutting.reporting import build_mutation_report, build_plan_report
from curator.domain.entities import (
    MutationPlan,
    PlaybackState,
    PlaylistIntent,
    Rules,
    SearchIntent,
    SelectionOptions,
    parse_tracks,
    tracks_to_json,
)
from curator.domain.errors import PermanentFailure, ValidationError
from curator.domain.ports import (
    CatalogPort,
    RandomPort,
    SeededRandomPort,
    SystemRandomPort,
    SystemTimePort,
    TimePort,
)


@dataclass
class ToolContext:
    """Ports handed to the tools. Built once per server or CLI run."""

    random_port: RandomPort = field(default_factory=SystemRandomPort)
    time_port: TimePort = field(default_factory=SystemTimePort)
    catalog_factory: Optional[Callable[[], CatalogPort]] = None

    @classmethod
    def from_settings(cls, settings: Settings,
                      catalog_factory: Optional[Callable[[], CatalogPort]] = None) -> "ToolContext":
        if settings.random_seed is not None:
            return cls(random_port=SeededRandomPort(settings.random_seed), catalog_factory=catalog_factory)
        return cls(catalog_factory=catalog_factory)

    def catalog(self) -> CatalogPort:
        if self.catalog_factory is None:
            raise PermanentFailure("No catalog is configured for this context")
        return self.catalog_factory()


def _require(payload: Dict[str, Any], key: str) -> Any:
    if key not in payload:
        raise ValidationError(f"Missing required field: {key}", {"field": key})
    return payload[key]


def _id_list(payload: Dict[str, Any], key: str) -> list:
    value = payload.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{key} must be a list of ids", {"field": key})
    return value


def plan_playlist(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    plan = create_playlist_plan(PlaylistIntent.from_json(payload))
    if payload.get("optimize"):
        plan = optimize_plan(plan)
    return {"plan": plan.to_json(), "report": build_plan_report(plan, payload.get("planId")).to_json()}


def reconcile(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    existing = parse_tracks(_require(payload, "existing"))
    target = parse_tracks(_require(payload, "target"))
    plan = generate_mutation_plan(existing, target, Rules.from_json(payload.get("rules")))
    if payload.get("optimize"):
        plan = optimize_mutation_plan(plan)
    return {
        "plan": plan.to_json(),
        "report": build_mutation_report(existing, plan, payload.get("planId")).to_json(),
    }


def apply_plan(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    existing = parse_tracks(_require(payload, "existing"))
    plan = MutationPlan.from_json(_require(payload, "plan"))
    validate_mutation_plan(plan)
    return {
        "result": tracks_to_json(apply_mutation_plan(existing, plan)),
        "idempotent": validate_idempotency(existing, plan),
    }


def select(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    candidates = parse_tracks(_require(payload, "candidates"))
    options = SelectionOptions.from_json(_require(payload, "options"))
    result = select_tracks(candidates, Rules.from_json(payload.get("rules")), options,
                           context.random_port, context.time_port)
    data = result.to_json()
    data["analysis"] = analyze_selection(candidates, options, context.time_port).to_json()
    return data


def score(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    weights = payload.get("weights")
    scored = score_track_collection(parse_tracks(_require(payload, "tracks")),
                                    ScoringWeights.from_json(weights) if weights else None)
    if payload.get("normalize"):
        scored = normalize_scores(scored)
    return {"scored": [s.to_json() for s in scored]}


def dedupe(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    tracks = parse_tracks(_require(payload, "tracks"))
    rules = Rules.from_json(payload.get("rules"))
    result = deduplicate_tracks(tracks, rules)
    analysis = analyze_deduplication(tracks, rules)
    return {
        "deduped": tracks_to_json(result.deduped),
        "removed": tracks_to_json(result.removed),
        "effectiveness": analysis.effectiveness,
    }


def constraints(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    items = parse_tracks(_require(payload, "items"))
    rules = Rules.from_json(payload.get("rules"))
    validate_rules(rules)
    result = apply_constraints(items, rules)
    estimate = estimate_constraint_pass_rate(items, rules)
    return {
        "accepted": tracks_to_json(result.accepted),
        "rejected": [r.to_json() for r in result.rejected],
        "passRate": estimate.pass_rate,
        "breakdown": estimate.constraint_breakdown,
    }


def playback_decision(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    state = PlaybackState.from_json(_require(payload, "state"))
    decision = make_playback_decision(
        state,
        _require(payload, "action"),
        context_uri=payload.get("contextUri"),
        track_uri=payload.get("trackUri"),
        position_ms=payload.get("positionMs"),
    )
    return {"decision": decision.to_json()}


def library_diff(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    current = _id_list(payload, "current")
    diff = compute_library_diff(current, _id_list(payload, "desired"))
    safety = validate_library_safety(current, diff, allow_data_loss=bool(payload.get("allowDataLoss")))
    return {
        "diff": diff.to_json(),
        "batches": batch_library_diff(diff).to_json(),
        "safety": safety.to_json(),
    }


def normalize_search(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    intent = normalize_search_intent(SearchIntent.from_json(payload.get("intent", payload)))
    return {"intent": intent.to_json(), "query": search_intent_to_query(intent)}


def search_tracks(payload: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    """Search the catalog; the result items feed plan sources and reconcile targets."""
    intent = normalize_search_intent(SearchIntent.from_json(payload.get("intent", payload)))
    if not (intent.query or intent.genres or intent.artists or intent.albums or intent.year or intent.year_range):
        raise ValidationError("Search needs a query or at least one criterion", {"intent": intent.to_json()})
    page = context.catalog().search_tracks(intent)
    return {
        "query": search_intent_to_query(intent),
        "items": tracks_to_json(page.items),
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
        "hasMore": page.has_more,
    }


TOOLS: Dict[str, Callable[[Dict[str, Any], ToolContext], Dict[str, Any]]] = {
    "plan_playlist": plan_playlist,
    "reconcile": reconcile,
    "apply_plan": apply_plan,
    "select_tracks": select,
    "score_tracks": score,
    "dedupe": dedupe,
    "apply_constraints": constraints,
    "playback_decision": playback_decision,
    "library_diff": library_diff,
    "normalize_search": normalize_search,
    "search_tracks": search_tracks,
}


def run_tool(name: str, payload: Any, context: ToolContext) -> Dict[str, Any]:
    """Dispatch a tool call. Malformed payload structure surfaces as ValidationError."""
    tool = TOOLS.get(name)
    if tool is None:
        raise KeyError(name)
    if not isinstance(payload, dict):
        raise ValidationError("Tool payload must be a JSON object", {"tool": name})
    try:
        return tool(payload, context)
    except (KeyError, TypeError) as e:
        raise ValidationError(f"Malformed {name} payload: {e}", {"tool": name})
