from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple, Union

from .errors import AggregateError, ValidationError


PLAYLIST_BATCH_SIZE = 100
LIBRARY_BATCH_SIZE = 50
MAX_PLAYLIST_TRACKS = 10_000
MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 300

DEDUPE_KEYS = ("uri", "id", "audioHash", "name+artist")
PLAYBACK_ACTIONS = ("play", "pause", "next", "previous")
INTENT_ACTIONS = ("create", "update", "append")
SOURCE_TYPES = ("search", "playlist", "album", "artist", "saved")
REPEAT_STATES = ("off", "context", "track")


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _require_mapping(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError(f"{what} must be an object", {"value": data})
    return data


@dataclass(frozen=True)
class TrackRef:
    """Immutable reference to a catalog track. Identity is the ``uri``."""

    uri: str
    id: str
    name: str
    artists: Tuple[str, ...]
    duration_ms: int
    explicit: Optional[bool] = None
    popularity: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.artists, tuple):
            object.__setattr__(self, "artists", tuple(self.artists or ()))

    @property
    def primary_artist(self) -> str:
        return self.artists[0] if self.artists else ""

    def to_json(self) -> Dict[str, Any]:
        """Serialize track to JSON."""
        return _drop_none({
            "uri": self.uri,
            "id": self.id,
            "name": self.name,
            "artists": list(self.artists),
            "durationMs": self.duration_ms,
            "explicit": self.explicit,
            "popularity": self.popularity,
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TrackRef":
        """Deserialize and validate a track from JSON."""
        data = _require_mapping(data, "Track")
        errors: List[str] = []

        uri = data.get("uri")
        name = data.get("name")
        artists = data.get("artists")
        duration_ms = data.get("durationMs")
        popularity = data.get("popularity")
        explicit = data.get("explicit")

        if not isinstance(uri, str) or not uri:
            errors.append("uri is required")
        if not isinstance(name, str) or not name:
            errors.append("name is required")
        if not isinstance(artists, (list, tuple)) or not artists:
            errors.append("artists must be a non-empty list")
        elif not all(isinstance(a, str) for a in artists):
            errors.append("artists must be strings")
        if isinstance(duration_ms, bool) or not isinstance(duration_ms, (int, float)) or duration_ms <= 0:
            errors.append("durationMs must be positive")
        if popularity is not None and (isinstance(popularity, bool)
                                       or not isinstance(popularity, (int, float))
                                       or not 0 <= popularity <= 100):
            errors.append("popularity must be between 0 and 100")
        if explicit is not None and not isinstance(explicit, bool):
            errors.append("explicit must be a boolean")

        if errors:
            raise ValidationError(
                f"Invalid track: {'; '.join(errors)}",
                {"uri": uri, "violations": errors},
            )

        track_id = data.get("id")
        if not track_id:
            track_id = uri.rsplit(":", 1)[-1]

        return cls(
            uri=uri,
            id=str(track_id),
            name=name,
            artists=tuple(artists),
            duration_ms=int(duration_ms),
            explicit=explicit,
            popularity=int(popularity) if popularity is not None else None,
        )


def parse_tracks(payloads: Iterable[Any]) -> List[TrackRef]:
    """Parse a list of track payloads, reporting every invalid item at once."""
    tracks: List[TrackRef] = []
    errors: List[ValidationError] = []
    for index, payload in enumerate(payloads or []):
        try:
            tracks.append(TrackRef.from_json(payload))
        except ValidationError as e:
            e.meta["index"] = index
            errors.append(e)
    if errors:
        raise AggregateError.from_errors(errors)
    return tracks


def tracks_to_json(tracks: Iterable[TrackRef]) -> List[Dict[str, Any]]:
    return [t.to_json() for t in tracks]


@dataclass(frozen=True)
class Rules:
    """Declarative rule set applied to candidate tracks."""

    max_tracks: Optional[int] = None
    allow_explicit: Optional[bool] = None
    dedupe_by: Tuple[str, ...] = ()
    min_popularity: Optional[int] = None
    unique_artists: Optional[bool] = None

    def __post_init__(self):
        if not isinstance(self.dedupe_by, tuple):
            object.__setattr__(self, "dedupe_by", tuple(self.dedupe_by or ()))

    def to_json(self) -> Dict[str, Any]:
        return _drop_none({
            "maxTracks": self.max_tracks,
            "allowExplicit": self.allow_explicit,
            "dedupeBy": list(self.dedupe_by) if self.dedupe_by else None,
            "minPopularity": self.min_popularity,
            "uniqueArtists": self.unique_artists,
        })

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "Rules":
        if data is None:
            return cls()
        data = _require_mapping(data, "Rules")
        dedupe_by = data.get("dedupeBy") or []
        if not isinstance(dedupe_by, (list, tuple)):
            raise ValidationError("dedupeBy must be a list", {"dedupeBy": dedupe_by})
        unknown = [k for k in dedupe_by if k not in DEDUPE_KEYS]
        if unknown:
            raise ValidationError(
                f"Invalid deduplication criteria: {', '.join(map(str, unknown))}. "
                f"Valid options: {', '.join(DEDUPE_KEYS)}",
                {"criteria": unknown, "validCriteria": list(DEDUPE_KEYS)},
            )
        if len(set(dedupe_by)) != len(dedupe_by):
            raise ValidationError("dedupeBy keys must be distinct", {"dedupeBy": list(dedupe_by)})
        return cls(
            max_tracks=data.get("maxTracks"),
            allow_explicit=data.get("allowExplicit"),
            dedupe_by=tuple(dedupe_by),
            min_popularity=data.get("minPopularity"),
            unique_artists=data.get("uniqueArtists"),
        )


@dataclass(frozen=True)
class DedupeResult:
    deduped: List[TrackRef]
    removed: List[TrackRef]


@dataclass(frozen=True)
class Rejection:
    reason: str
    item: TrackRef

    def to_json(self) -> Dict[str, Any]:
        return {"reason": self.reason, "item": self.item.to_json()}


@dataclass(frozen=True)
class ConstraintResult:
    accepted: List[TrackRef]
    rejected: List[Rejection]


# Plan steps. The four variants form a closed set; consumers dispatch on
# isinstance and treat anything else as a planning error.

@dataclass(frozen=True)
class AddTracksStep:
    type: ClassVar[str] = "add"

    tracks: Tuple[TrackRef, ...]
    position: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.tracks, tuple):
            object.__setattr__(self, "tracks", tuple(self.tracks))

    def to_json(self) -> Dict[str, Any]:
        return _drop_none({
            "type": self.type,
            "tracks": tracks_to_json(self.tracks),
            "position": self.position,
        })


@dataclass(frozen=True)
class RemoveTracksStep:
    type: ClassVar[str] = "remove"

    tracks: Tuple[TrackRef, ...]

    def __post_init__(self):
        if not isinstance(self.tracks, tuple):
            object.__setattr__(self, "tracks", tuple(self.tracks))

    def to_json(self) -> Dict[str, Any]:
        return {"type": self.type, "tracks": tracks_to_json(self.tracks)}


@dataclass(frozen=True)
class ReorderStep:
    type: ClassVar[str] = "reorder"

    from_index: int
    to: int
    count: int

    @property
    def is_sentinel(self) -> bool:
        """True when the step means "resort the whole collection"."""
        return self.to == -1 and self.count == -1

    @classmethod
    def resort_all(cls) -> "ReorderStep":
        return cls(from_index=0, to=-1, count=-1)

    def to_json(self) -> Dict[str, Any]:
        return {"type": self.type, "from": self.from_index, "to": self.to, "count": self.count}


@dataclass(frozen=True)
class AnnotateStep:
    type: ClassVar[str] = "annotate"

    field: str
    value: str

    def to_json(self) -> Dict[str, Any]:
        return {"type": self.type, "field": self.field, "value": self.value}


PlanStep = Union[AddTracksStep, RemoveTracksStep, ReorderStep, AnnotateStep]


def plan_step_from_json(data: Dict[str, Any]) -> PlanStep:
    data = _require_mapping(data, "Plan step")
    step_type = data.get("type")
    if step_type == "add":
        return AddTracksStep(tracks=tuple(parse_tracks(data.get("tracks", []))),
                             position=data.get("position"))
    if step_type == "remove":
        return RemoveTracksStep(tracks=tuple(parse_tracks(data.get("tracks", []))))
    if step_type == "reorder":
        try:
            return ReorderStep(from_index=int(data["from"]), to=int(data["to"]),
                               count=int(data["count"]))
        except (KeyError, TypeError, ValueError):
            raise ValidationError("Reorder step requires integer from, to and count", {"step": data})
    if step_type == "annotate":
        if data.get("field") not in ("name", "description"):
            raise ValidationError("Annotate field must be 'name' or 'description'",
                                  {"field": data.get("field")})
        return AnnotateStep(field=data["field"], value=str(data.get("value", "")))
    raise ValidationError(f"Unknown plan step type: {step_type}", {"type": step_type})


@dataclass(frozen=True)
class MutationPlan:
    adds: Tuple[AddTracksStep, ...] = ()
    removes: Tuple[RemoveTracksStep, ...] = ()
    reorders: Tuple[ReorderStep, ...] = ()
    annotations: Tuple[AnnotateStep, ...] = ()

    def __post_init__(self):
        for name in ("adds", "removes", "reorders", "annotations"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

    @property
    def step_count(self) -> int:
        return len(self.adds) + len(self.removes) + len(self.reorders)

    @property
    def is_empty(self) -> bool:
        return self.step_count == 0

    def steps(self) -> List[PlanStep]:
        """Steps in execution order: annotations, removes, adds, reorders."""
        return [*self.annotations, *self.removes, *self.adds, *self.reorders]

    def to_json(self) -> Dict[str, Any]:
        return {
            "adds": [s.to_json() for s in self.adds],
            "removes": [s.to_json() for s in self.removes],
            "reorders": [s.to_json() for s in self.reorders],
            "annotations": [s.to_json() for s in self.annotations],
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "MutationPlan":
        data = _require_mapping(data, "Mutation plan")
        buckets: Dict[str, List[PlanStep]] = {}
        expected = {"adds": AddTracksStep, "removes": RemoveTracksStep,
                    "reorders": ReorderStep, "annotations": AnnotateStep}
        for key, step_cls in expected.items():
            steps = [plan_step_from_json(s) for s in data.get(key) or []]
            for step in steps:
                if not isinstance(step, step_cls):
                    raise ValidationError(f"{key} may only contain {step_cls.type} steps",
                                          {"type": step.type})
            buckets[key] = steps
        return cls(**{k: tuple(v) for k, v in buckets.items()})


@dataclass(frozen=True)
class PlaylistPlan:
    name: str
    steps: Tuple[PlanStep, ...] = ()
    description: Optional[str] = None
    public: Optional[bool] = None

    def __post_init__(self):
        if not isinstance(self.steps, tuple):
            object.__setattr__(self, "steps", tuple(self.steps))

    def to_json(self) -> Dict[str, Any]:
        return _drop_none({
            "name": self.name,
            "description": self.description,
            "public": self.public,
            "steps": [s.to_json() for s in self.steps],
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaylistPlan":
        data = _require_mapping(data, "Playlist plan")
        return cls(
            name=str(data.get("name", "")),
            description=data.get("description"),
            public=data.get("public"),
            steps=tuple(plan_step_from_json(s) for s in data.get("steps") or []),
        )


@dataclass(frozen=True)
class YearRange:
    min: int
    max: int

    def to_json(self) -> Dict[str, Any]:
        return {"min": self.min, "max": self.max}


@dataclass(frozen=True)
class SearchIntent:
    query: Optional[str] = None
    genres: Optional[Tuple[str, ...]] = None
    artists: Optional[Tuple[str, ...]] = None
    albums: Optional[Tuple[str, ...]] = None
    year: Optional[int] = None
    year_range: Optional[YearRange] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    def __post_init__(self):
        for name in ("genres", "artists", "albums"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

    def to_json(self) -> Dict[str, Any]:
        return _drop_none({
            "query": self.query,
            "genres": list(self.genres) if self.genres is not None else None,
            "artists": list(self.artists) if self.artists is not None else None,
            "albums": list(self.albums) if self.albums is not None else None,
            "year": self.year,
            "yearRange": self.year_range.to_json() if self.year_range else None,
            "limit": self.limit,
            "offset": self.offset,
        })

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "SearchIntent":
        if not data:
            return cls()
        data = _require_mapping(data, "Search intent")
        year_range = data.get("yearRange")
        if year_range is not None:
            try:
                year_range = YearRange(min=int(year_range["min"]), max=int(year_range["max"]))
            except (KeyError, TypeError, ValueError):
                raise ValidationError("yearRange requires integer min and max",
                                      {"yearRange": data.get("yearRange")})
        return cls(
            query=data.get("query"),
            genres=data.get("genres"),
            artists=data.get("artists"),
            albums=data.get("albums"),
            year=data.get("year"),
            year_range=year_range,
            limit=data.get("limit"),
            offset=data.get("offset"),
        )


@dataclass(frozen=True)
class SourceSpec:
    type: str
    id: Optional[str] = None
    query: Optional[str] = None
    tracks: Tuple[TrackRef, ...] = ()

    def __post_init__(self):
        if not isinstance(self.tracks, tuple):
            object.__setattr__(self, "tracks", tuple(self.tracks or ()))

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SourceSpec":
        data = _require_mapping(data, "Source")
        source_type = data.get("type")
        if source_type not in SOURCE_TYPES:
            raise ValidationError(f"Invalid source type: {source_type}",
                                  {"type": source_type, "validTypes": list(SOURCE_TYPES)})
        return cls(
            type=source_type,
            id=data.get("id"),
            query=data.get("query"),
            tracks=tuple(parse_tracks(data.get("tracks") or [])),
        )


@dataclass(frozen=True)
class StructuredIntent:
    action: str = "create"
    target: Optional[str] = None
    criteria: SearchIntent = field(default_factory=SearchIntent)
    rules: Rules = field(default_factory=Rules)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "StructuredIntent":
        data = _require_mapping(data, "Intent")
        action = data.get("action", "create")
        if action not in INTENT_ACTIONS:
            raise ValidationError(f"Invalid intent action: {action}",
                                  {"action": action, "validActions": list(INTENT_ACTIONS)})
        return cls(
            action=action,
            target=data.get("target"),
            criteria=SearchIntent.from_json(data.get("criteria")),
            rules=Rules.from_json(data.get("rules")),
        )


@dataclass(frozen=True)
class PlaylistIntent:
    """Caller request for a playlist plan.

    ``intent`` is either free text or an already structured intent.
    ``existing`` optionally carries the current contents of the target
    playlist so update/append plans only emit the difference.
    """

    intent: Union[str, StructuredIntent]
    rules: Rules = field(default_factory=Rules)
    sources: Tuple[SourceSpec, ...] = ()
    public: Optional[bool] = None
    existing: Optional[Tuple[TrackRef, ...]] = None

    def __post_init__(self):
        if not isinstance(self.sources, tuple):
            object.__setattr__(self, "sources", tuple(self.sources))
        if self.existing is not None and not isinstance(self.existing, tuple):
            object.__setattr__(self, "existing", tuple(self.existing))

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaylistIntent":
        data = _require_mapping(data, "Playlist intent")
        raw_intent = data.get("intent")
        if isinstance(raw_intent, str):
            intent: Union[str, StructuredIntent] = raw_intent
        elif isinstance(raw_intent, dict):
            intent = StructuredIntent.from_json(raw_intent)
        else:
            raise ValidationError("intent must be a string or an object", {"intent": raw_intent})
        existing = data.get("existing")
        return cls(
            intent=intent,
            rules=Rules.from_json(data.get("rules")),
            sources=tuple(SourceSpec.from_json(s) for s in data.get("sources") or []),
            public=data.get("public"),
            existing=tuple(parse_tracks(existing)) if existing is not None else None,
        )


@dataclass(frozen=True)
class SelectionOptions:
    count: int
    recency_boost: Optional[float] = None
    reference_time_ms: Optional[int] = None
    popularity_weight: Optional[float] = None
    diversity_factor: Optional[float] = None
    randomness_factor: Optional[float] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SelectionOptions":
        data = _require_mapping(data, "Selection options")
        if "count" not in data:
            raise ValidationError("Selection count is required")
        return cls(
            count=data["count"],
            recency_boost=data.get("recencyBoost"),
            reference_time_ms=data.get("referenceTimeMs"),
            popularity_weight=data.get("popularityWeight"),
            diversity_factor=data.get("diversityFactor"),
            randomness_factor=data.get("randomnessFactor"),
        )


@dataclass(frozen=True)
class ScoredTrack:
    track: TrackRef
    score: float
    breakdown: Dict[str, float] = field(default_factory=dict, hash=False)
    rank: Optional[int] = None

    def to_json(self) -> Dict[str, Any]:
        return _drop_none({
            "track": self.track.to_json(),
            "score": self.score,
            "breakdown": dict(self.breakdown),
            "rank": self.rank,
        })


@dataclass(frozen=True)
class SelectionResult:
    selected: List[TrackRef]
    scored: List[ScoredTrack]

    def to_json(self) -> Dict[str, Any]:
        return {
            "selected": tracks_to_json(self.selected),
            "scored": [s.to_json() for s in self.scored],
        }


@dataclass(frozen=True)
class CurrentTrack:
    uri: str
    name: str = ""
    artists: Tuple[str, ...] = ()
    duration_ms: int = 0

    def __post_init__(self):
        if not isinstance(self.artists, tuple):
            object.__setattr__(self, "artists", tuple(self.artists or ()))


@dataclass(frozen=True)
class PlaybackContext:
    uri: str
    type: str = "playlist"


@dataclass(frozen=True)
class PlaybackState:
    """Snapshot of the player. Never persisted."""

    is_playing: bool
    shuffle_state: bool = False
    repeat_state: str = "off"
    current_track: Optional[CurrentTrack] = None
    context: Optional[PlaybackContext] = None
    progress_ms: Optional[int] = None
    volume: Optional[int] = None

    def to_json(self) -> Dict[str, Any]:
        track = self.current_track
        return _drop_none({
            "isPlaying": self.is_playing,
            "shuffleState": self.shuffle_state,
            "repeatState": self.repeat_state,
            "currentTrack": {
                "uri": track.uri,
                "name": track.name,
                "artists": list(track.artists),
                "durationMs": track.duration_ms,
            } if track else None,
            "context": {"uri": self.context.uri, "type": self.context.type} if self.context else None,
            "progressMs": self.progress_ms,
            "volume": self.volume,
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaybackState":
        data = _require_mapping(data, "Playback state")
        track = data.get("currentTrack")
        context = data.get("context")
        repeat_state = data.get("repeatState", "off")
        if repeat_state not in REPEAT_STATES:
            raise ValidationError(f"Invalid repeat state: {repeat_state}", {"repeatState": repeat_state})
        return cls(
            is_playing=bool(data.get("isPlaying", False)),
            shuffle_state=bool(data.get("shuffleState", False)),
            repeat_state=repeat_state,
            current_track=CurrentTrack(
                uri=track["uri"],
                name=track.get("name", ""),
                artists=tuple(track.get("artists") or ()),
                duration_ms=int(track.get("durationMs") or 0),
            ) if track else None,
            context=PlaybackContext(uri=context["uri"], type=context.get("type", "playlist")) if context else None,
            progress_ms=data.get("progressMs"),
            volume=data.get("volume"),
        )


@dataclass(frozen=True)
class PlaybackCommand:
    action: str
    context_uri: Optional[str] = None
    track_uri: Optional[str] = None
    position_ms: Optional[int] = None

    def to_json(self) -> Dict[str, Any]:
        return _drop_none({
            "action": self.action,
            "contextUri": self.context_uri,
            "trackUri": self.track_uri,
            "positionMs": self.position_ms,
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaybackCommand":
        data = _require_mapping(data, "Playback command")
        return cls(
            action=data["action"],
            context_uri=data.get("contextUri"),
            track_uri=data.get("trackUri"),
            position_ms=data.get("positionMs"),
        )


@dataclass(frozen=True)
class PlaybackDecision:
    should_execute: bool
    reason: Optional[str] = None
    command: Optional[PlaybackCommand] = None

    def to_json(self) -> Dict[str, Any]:
        return _drop_none({
            "shouldExecute": self.should_execute,
            "reason": self.reason,
            "command": self.command.to_json() if self.command else None,
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaybackDecision":
        data = _require_mapping(data, "Playback decision")
        command = data.get("command")
        return cls(
            should_execute=bool(data.get("shouldExecute")),
            reason=data.get("reason"),
            command=PlaybackCommand.from_json(command) if command else None,
        )


@dataclass(frozen=True)
class LibraryDiff:
    to_save: List[str] = field(default_factory=list)
    to_remove: List[str] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {"toSave": list(self.to_save), "toRemove": list(self.to_remove)}

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "LibraryDiff":
        data = _require_mapping(data, "Library diff")
        return cls(to_save=list(data.get("toSave") or []), to_remove=list(data.get("toRemove") or []))


@dataclass(frozen=True)
class Page:
    items: List[Any]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total
