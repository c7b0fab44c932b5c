import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import requests
import spotipy
from urllib3.exceptions import ReadTimeoutError

from curator.application.batching import LIBRARY_BATCH_SIZE, PLAYLIST_BATCH_SIZE, chunked
from curator.application.library import validate_library_operation
from curator.application.reconciliation import resort_key
from curator.application.search import normalize_search_intent, search_intent_to_query
from curator.crosscutting.logging import CorrelationContext, log_error, log_with_fields
from curator.domain.entities import (
    AddTracksStep,
    AnnotateStep,
    CurrentTrack,
    LibraryDiff,
    MutationPlan,
    Page,
    PlanStep,
    PlaybackContext,
    PlaybackDecision,
    PlaybackState,
    PlaylistPlan,
    RemoveTracksStep,
    ReorderStep,
    SearchIntent,
    TrackRef,
)
from curator.domain.errors import NotFound, PermanentFailure, PlanningError, RateLimited, TemporaryFailure
from curator.domain.ports import CatalogPort

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15
PLAYLIST_PAGE_SIZE = 100
PLAYLIST_ITEM_FIELDS = 'items(track(id,uri,name,artists(name),duration_ms,explicit,popularity)),total'


def track_from_spotify(payload: Dict[str, Any]) -> Optional[TrackRef]:
    """Convert a Spotify track object to a TrackRef.

    Returns None for local files, episodes and unavailable tracks that
    lack a uri or artists.
    """
    if not payload or payload.get('type', 'track') != 'track' or payload.get('is_local'):
        return None

    uri = payload.get('uri')
    artists = [a.get('name') for a in payload.get('artists') or [] if a.get('name')]
    duration_ms = payload.get('duration_ms') or 0
    if not uri or not artists or duration_ms <= 0:
        return None

    return TrackRef(
        uri=uri,
        id=payload.get('id') or uri.rsplit(':', 1)[-1],
        name=payload.get('name', ''),
        artists=tuple(artists),
        duration_ms=int(duration_ms),
        explicit=payload.get('explicit'),
        popularity=payload.get('popularity'),
    )


def playback_state_from_spotify(payload: Optional[Dict[str, Any]]) -> PlaybackState:
    if not payload:
        return PlaybackState(is_playing=False)

    item = payload.get('item') or {}
    context = payload.get('context') or {}
    device = payload.get('device') or {}

    return PlaybackState(
        is_playing=bool(payload.get('is_playing')),
        shuffle_state=bool(payload.get('shuffle_state')),
        repeat_state=payload.get('repeat_state') or 'off',
        current_track=CurrentTrack(
            uri=item['uri'],
            name=item.get('name', ''),
            artists=tuple(a.get('name', '') for a in item.get('artists') or []),
            duration_ms=item.get('duration_ms') or 0,
        ) if item.get('uri') else None,
        context=PlaybackContext(uri=context['uri'], type=context.get('type', 'playlist'))
        if context.get('uri') else None,
        progress_ms=payload.get('progress_ms'),
        volume=device.get('volume_percent'),
    )


class SpotifyCatalog:
    """Catalog port backed by the Spotify Web API via spotipy.

    Errors are mapped to the adapter error types and never retried here.
    """

    def __init__(self, access_token: str, market: str = 'US',
                 client: Optional[spotipy.Spotify] = None):
        if not access_token and client is None:
            raise PermanentFailure("Spotify access token is required")
        self.market = market
        self._client = client or spotipy.Spotify(auth=access_token, requests_timeout=REQUEST_TIMEOUT_SECONDS)

    def _call(self, operation: str, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except spotipy.SpotifyException as e:
            status = getattr(e, 'http_status', None)
            if status == 429:
                headers = getattr(e, 'headers', None) or {}
                retry_after = int(headers.get('Retry-After', 1))
                logger.warning(f"Spotify rate limited during {operation}, retry after {retry_after}s")
                raise RateLimited(retry_after_ms=retry_after * 1000)
            if status == 404:
                raise NotFound(f"{operation}: {e.msg}")
            if status in (400, 401, 403):
                raise PermanentFailure(f"{operation} failed with HTTP {status}: {e.msg}")
            raise TemporaryFailure(f"{operation} failed: {e}")
        except ReadTimeoutError as e:
            raise TemporaryFailure(f"{operation} timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise TemporaryFailure(f"{operation} failed: {e}")

    def get_playlist_tracks(self, playlist_id: str) -> List[TrackRef]:
        tracks: List[TrackRef] = []
        offset = 0

        while True:
            page = self._call(
                'list playlist tracks', self._client.playlist_items, playlist_id,
                fields=PLAYLIST_ITEM_FIELDS, limit=PLAYLIST_PAGE_SIZE, offset=offset,
                market=self.market, additional_types=('track',),
            )
            items = (page or {}).get('items') or []
            for item in items:
                track = track_from_spotify(item.get('track'))
                if track:
                    tracks.append(track)

            if len(items) < PLAYLIST_PAGE_SIZE:
                break
            offset += PLAYLIST_PAGE_SIZE

        logger.debug(f"Fetched {len(tracks)} tracks from playlist {playlist_id}")
        return tracks

    def search_tracks(self, intent: SearchIntent) -> Page:
        intent = normalize_search_intent(intent)
        limit = intent.limit or 20
        offset = intent.offset or 0
        result = self._call(
            'search tracks', self._client.search, search_intent_to_query(intent),
            limit=limit, offset=offset, type='track', market=self.market,
        )
        tracks = (result or {}).get('tracks') or {}
        items = [t for t in (track_from_spotify(i) for i in tracks.get('items') or []) if t]
        return Page(items=items, total=tracks.get('total', len(items)), limit=limit, offset=offset)

    def get_saved_track_ids(self) -> List[str]:
        ids: List[str] = []
        offset = 0
        while True:
            page = self._call('list saved tracks', self._client.current_user_saved_tracks,
                              limit=LIBRARY_BATCH_SIZE, offset=offset)
            items = (page or {}).get('items') or []
            ids.extend(i['track']['id'] for i in items if (i.get('track') or {}).get('id'))
            if len(items) < LIBRARY_BATCH_SIZE:
                return ids
            offset += LIBRARY_BATCH_SIZE

    def add_tracks(self, playlist_id: str, uris: List[str], position: Optional[int] = None) -> None:
        self._call('add tracks', self._client.playlist_add_items, playlist_id, uris[:PLAYLIST_BATCH_SIZE],
                   position=position)

    def remove_tracks(self, playlist_id: str, uris: List[str]) -> None:
        self._call('remove tracks', self._client.playlist_remove_all_occurrences_of_items,
                   playlist_id, uris[:PLAYLIST_BATCH_SIZE])

    def reorder_tracks(self, playlist_id: str, range_start: int, insert_before: int, range_length: int) -> None:
        self._call('reorder tracks', self._client.playlist_reorder_items, playlist_id,
                   range_start=range_start, insert_before=insert_before, range_length=range_length)

    def replace_tracks(self, playlist_id: str, uris: List[str]) -> None:
        self._call('replace tracks', self._client.playlist_replace_items, playlist_id, uris[:PLAYLIST_BATCH_SIZE])

    def update_details(self, playlist_id: str, name: Optional[str] = None,
                       description: Optional[str] = None, public: Optional[bool] = None) -> None:
        self._call('update playlist details', self._client.playlist_change_details, playlist_id,
                   name=name, public=public, description=description)

    def save_tracks(self, ids: List[str]) -> None:
        self._call('save tracks', self._client.current_user_saved_tracks_add, tracks=ids)

    def remove_saved_tracks(self, ids: List[str]) -> None:
        self._call('remove saved tracks', self._client.current_user_saved_tracks_delete, tracks=ids)

    def get_playback_state(self) -> PlaybackState:
        payload = self._call('get playback state', self._client.current_playback, market=self.market)
        return playback_state_from_spotify(payload)

    def play(self, context_uri: Optional[str] = None, track_uri: Optional[str] = None,
             position_ms: Optional[int] = None) -> None:
        self._call('start playback', self._client.start_playback, context_uri=context_uri,
                   uris=[track_uri] if track_uri and not context_uri else None,
                   offset={'uri': track_uri} if track_uri and context_uri else None,
                   position_ms=position_ms)

    def pause(self) -> None:
        self._call('pause playback', self._client.pause_playback)

    def next_track(self) -> None:
        self._call('skip to next', self._client.next_track)

    def previous_track(self) -> None:
        self._call('skip to previous', self._client.previous_track)


@dataclass
class ExecutionReport:
    """Outcome of executing a plan: the committed prefix and the first failure, if any."""

    total_steps: int
    committed: List[Dict[str, Any]] = field(default_factory=list)
    failed_step_index: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.failed_step_index is None

    def to_json(self) -> Dict[str, Any]:
        return {
            "totalSteps": self.total_steps,
            "committedSteps": len(self.committed),
            "committed": list(self.committed),
            "failedStepIndex": self.failed_step_index,
            "error": self.error,
            "errorType": self.error_type,
            "succeeded": self.succeeded,
        }


def _step_summary(step: PlanStep) -> Dict[str, Any]:
    if isinstance(step, (AddTracksStep, RemoveTracksStep)):
        return {"type": step.type, "trackCount": len(step.tracks)}
    return step.to_json()


_ADAPTER_ERRORS = (RateLimited, TemporaryFailure, PermanentFailure, NotFound)


class PlanExecutor:
    """Executes plan steps in order against a catalog port.

    Stops at the first failing step and reports which steps committed;
    there is no resumption state.
    """

    def __init__(self, catalog: CatalogPort):
        self.catalog = catalog

    def _resort(self, playlist_id: str) -> None:
        uris = [t.uri for t in sorted(self.catalog.get_playlist_tracks(playlist_id), key=resort_key)]
        batches = chunked(uris, PLAYLIST_BATCH_SIZE)
        self.catalog.replace_tracks(playlist_id, batches[0] if batches else [])
        for batch in batches[1:]:
            self.catalog.add_tracks(playlist_id, batch)

    def execute_step(self, playlist_id: str, step: PlanStep, public: Optional[bool] = None) -> None:
        if isinstance(step, AnnotateStep):
            if step.field == 'name':
                self.catalog.update_details(playlist_id, name=step.value, public=public)
            else:
                self.catalog.update_details(playlist_id, description=step.value)
        elif isinstance(step, RemoveTracksStep):
            self.catalog.remove_tracks(playlist_id, [t.uri for t in step.tracks])
        elif isinstance(step, AddTracksStep):
            self.catalog.add_tracks(playlist_id, [t.uri for t in step.tracks], position=step.position)
        elif isinstance(step, ReorderStep):
            if step.is_sentinel:
                self._resort(playlist_id)
            else:
                # The catalog inserts before an index counted prior to removal
                insert_before = step.to + step.count if step.to > step.from_index else step.to
                self.catalog.reorder_tracks(playlist_id, step.from_index, insert_before, step.count)
        else:
            raise PlanningError(f"Unknown plan step: {step!r}", {"step": repr(step)})

    def execute(self, playlist_id: str, plan: Union[PlaylistPlan, MutationPlan],
                plan_id: Optional[str] = None) -> ExecutionReport:
        if isinstance(plan, PlaylistPlan):
            steps, public = list(plan.steps), plan.public
        else:
            steps, public = plan.steps(), None

        report = ExecutionReport(total_steps=len(steps))

        with CorrelationContext(plan_id=plan_id, playlist_id=playlist_id, stage='execute'):
            for index, step in enumerate(steps):
                try:
                    self.execute_step(playlist_id, step, public=public)
                except _ADAPTER_ERRORS as e:
                    report.failed_step_index = index
                    report.error = str(e)
                    report.error_type = type(e).__name__
                    log_error(logger, 'Plan step failed', e, step_index=index, step_type=step.type,
                              committed=len(report.committed))
                    break
                report.committed.append(_step_summary(step))
                log_with_fields(logger, 'INFO', 'Plan step committed',
                                step_index=index, **_step_summary(step))

        return report


def execute_library_diff(catalog: CatalogPort, diff: LibraryDiff) -> ExecutionReport:
    """Validate every batch, then save and remove library ids in batches of 50."""
    batches = [('save', b) for b in chunked(diff.to_save, LIBRARY_BATCH_SIZE)]
    batches += [('remove', b) for b in chunked(diff.to_remove, LIBRARY_BATCH_SIZE)]
    for operation, ids in batches:
        validate_library_operation(operation, ids)
    report = ExecutionReport(total_steps=len(batches))

    with CorrelationContext(stage='library'):
        for index, (operation, ids) in enumerate(batches):
            try:
                if operation == 'save':
                    catalog.save_tracks(ids)
                else:
                    catalog.remove_saved_tracks(ids)
            except _ADAPTER_ERRORS as e:
                report.failed_step_index = index
                report.error = str(e)
                report.error_type = type(e).__name__
                log_error(logger, 'Library batch failed', e, batch_index=index, operation=operation)
                break
            report.committed.append({"type": operation, "count": len(ids)})
            log_with_fields(logger, 'INFO', 'Library batch committed', operation=operation, count=len(ids))

    return report


def execute_playback(catalog: CatalogPort, decision: PlaybackDecision) -> bool:
    """Run a playback decision. Returns False when the decision is a no-op."""
    if not decision.should_execute or decision.command is None:
        logger.info(f"Playback no-op: {decision.reason}")
        return False

    command = decision.command
    with CorrelationContext(stage='playback'):
        if command.action == 'play':
            catalog.play(context_uri=command.context_uri, track_uri=command.track_uri,
                         position_ms=command.position_ms)
        elif command.action == 'pause':
            catalog.pause()
        elif command.action == 'next':
            catalog.next_track()
        elif command.action == 'previous':
            catalog.previous_track()
        else:
            raise PermanentFailure(f"Unsupported playback action: {command.action}")
        log_with_fields(logger, 'INFO', 'Playback command executed', **command.to_json())

    return True
