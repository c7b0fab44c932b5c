from unittest.mock import Mock

import pytest
import requests
import spotipy
from urllib3.exceptions import ReadTimeoutError

from curator.domain.entities import (
    AddTracksStep,
    AnnotateStep,
    LibraryDiff,
    MutationPlan,
    PlaybackCommand,
    PlaybackDecision,
    PlaylistPlan,
    RemoveTracksStep,
    ReorderStep,
    SearchIntent,
)
from curator.domain.errors import (
    NotFound,
    PermanentFailure,
    PlanningError,
    RateLimited,
    TemporaryFailure,
    ValidationError,
)
from curator.domain.ports import CatalogPort
from curator.infrastructure.spotify import (
    PlanExecutor,
    SpotifyCatalog,
    execute_library_diff,
    execute_playback,
    playback_state_from_spotify,
    track_from_spotify,
)
from curator.tests.factories import FakeCatalog, make_track, make_tracks


def spotify_track(n, artist=None, **overrides):
    payload = {
        'type': 'track',
        'id': f't{n}',
        'uri': f'spotify:track:t{n}',
        'name': f'Song {n}',
        'artists': [{'name': artist or f'Artist {n}'}],
        'duration_ms': 200_000,
        'explicit': False,
        'popularity': 50,
    }
    payload.update(overrides)
    return payload


def spotify_error(status, headers=None):
    return spotipy.SpotifyException(status, -1, f'HTTP {status}', headers=headers)


class TestConversions:
    def test_track_from_spotify(self):
        track = track_from_spotify(spotify_track(1, popularity=70))
        assert track == make_track(1, explicit=False, popularity=70)

    @pytest.mark.parametrize('payload', [
        None,
        {'type': 'episode', 'uri': 'spotify:episode:e1'},
        spotify_track(1, is_local=True),
        spotify_track(1, artists=[]),
        spotify_track(1, duration_ms=0),
    ])
    def test_unusable_items_are_skipped(self, payload):
        assert track_from_spotify(payload) is None

    def test_playback_state(self):
        state = playback_state_from_spotify({
            'is_playing': True,
            'shuffle_state': True,
            'repeat_state': 'context',
            'progress_ms': 4200,
            'item': spotify_track(3),
            'context': {'uri': 'spotify:playlist:p1', 'type': 'playlist'},
            'device': {'volume_percent': 55},
        })
        assert state.is_playing
        assert state.current_track.uri == 'spotify:track:t3'
        assert state.current_track.artists == ('Artist 3',)
        assert state.context.uri == 'spotify:playlist:p1'
        assert state.volume == 55

    def test_nothing_playing(self):
        assert playback_state_from_spotify(None).is_playing is False


class TestSpotifyCatalog:
    """Adapter tests against a mocked spotipy client."""

    def setup_method(self):
        self.client = Mock()
        self.catalog = SpotifyCatalog(access_token='', client=self.client)

    def test_requires_token_or_client(self):
        with pytest.raises(PermanentFailure):
            SpotifyCatalog(access_token='')

    def test_playlist_tracks_are_paged(self):
        first = {'items': [{'track': spotify_track(n)} for n in range(100)]}
        second = {'items': [{'track': spotify_track(100)}, {'track': None}]}
        self.client.playlist_items.side_effect = [first, second]

        tracks = self.catalog.get_playlist_tracks('p1')

        assert len(tracks) == 101
        assert self.client.playlist_items.call_count == 2
        assert self.client.playlist_items.call_args.kwargs['offset'] == 100

    def test_search_builds_query_and_page(self):
        self.client.search.return_value = {'tracks': {'items': [spotify_track(1)], 'total': 40}}

        page = self.catalog.search_tracks(SearchIntent(genres=('Rock',), year=1999, limit=80))

        args, kwargs = self.client.search.call_args
        assert args[0] == 'genre:"rock" year:1999'
        assert kwargs['limit'] == 50
        assert page.total == 40
        assert page.has_more

    def test_saved_track_ids(self):
        self.client.current_user_saved_tracks.return_value = {
            'items': [{'track': {'id': 'a'}}, {'track': {'id': 'b'}}, {'track': None}],
        }
        assert self.catalog.get_saved_track_ids() == ['a', 'b']

    def test_add_tracks_respects_batch_ceiling(self):
        uris = [f'spotify:track:t{n}' for n in range(150)]
        self.catalog.add_tracks('p1', uris, position=3)
        args, kwargs = self.client.playlist_add_items.call_args
        assert len(args[1]) == 100
        assert kwargs['position'] == 3

    def test_rate_limit_maps_retry_after(self):
        self.client.playlist_items.side_effect = spotify_error(429, headers={'Retry-After': '7'})
        with pytest.raises(RateLimited) as exc_info:
            self.catalog.get_playlist_tracks('p1')
        assert exc_info.value.retry_after_ms == 7000

    @pytest.mark.parametrize('status,expected', [
        (404, NotFound),
        (401, PermanentFailure),
        (403, PermanentFailure),
        (500, TemporaryFailure),
        (502, TemporaryFailure),
    ])
    def test_http_errors_are_mapped(self, status, expected):
        self.client.playlist_replace_items.side_effect = spotify_error(status)
        with pytest.raises(expected):
            self.catalog.replace_tracks('p1', ['spotify:track:t1'])

    def test_timeouts_are_temporary(self):
        self.client.pause_playback.side_effect = ReadTimeoutError(None, '/me/player/pause', 'read timed out')
        with pytest.raises(TemporaryFailure, match='timed out'):
            self.catalog.pause()

        self.client.next_track.side_effect = requests.exceptions.ConnectionError('reset')
        with pytest.raises(TemporaryFailure):
            self.catalog.next_track()

    def test_play_track_within_context(self):
        self.catalog.play(context_uri='spotify:album:a1', track_uri='spotify:track:t1', position_ms=0)
        kwargs = self.client.start_playback.call_args.kwargs
        assert kwargs['uris'] is None
        assert kwargs['offset'] == {'uri': 'spotify:track:t1'}

        self.catalog.play(track_uri='spotify:track:t2')
        assert self.client.start_playback.call_args.kwargs['uris'] == ['spotify:track:t2']


class TestPlanExecutor:
    def test_executes_playlist_plan_in_order(self):
        catalog = FakeCatalog(tracks=[make_track(2, artist='Beta'), make_track(1, artist='alpha')])
        plan = PlaylistPlan(name='Mix', public=True, steps=(
            AnnotateStep(field='name', value='Mix'),
            AnnotateStep(field='description', value='Genres: rock'),
            RemoveTracksStep(tracks=(make_track(9),)),
            AddTracksStep(tracks=(make_track(1), make_track(2))),
            ReorderStep.resort_all(),
        ))

        report = PlanExecutor(catalog).execute('p1', plan, plan_id='plan-1')

        assert report.succeeded
        assert len(report.committed) == 5
        names = [c[0] for c in catalog.calls]
        assert names == ['update_details', 'update_details', 'remove_tracks', 'add_tracks', 'replace_tracks']
        assert catalog.calls[0][2]['public'] is True
        assert catalog.calls[-1][1][0] == ['spotify:track:t1', 'spotify:track:t2']

    def test_resort_of_large_playlist_appends_remaining_batches(self):
        catalog = FakeCatalog(tracks=make_tracks(230))
        PlanExecutor(catalog).execute_step('p1', ReorderStep.resort_all())
        assert [c[0] for c in catalog.calls] == ['replace_tracks', 'add_tracks', 'add_tracks']
        assert [len(c[1][0]) for c in catalog.calls] == [100, 100, 30]

    def test_forward_move_is_translated_to_insert_before(self):
        catalog = FakeCatalog()
        executor = PlanExecutor(catalog)
        executor.execute_step('p1', ReorderStep(from_index=0, to=2, count=2))
        executor.execute_step('p1', ReorderStep(from_index=5, to=1, count=1))
        assert catalog.calls == [('reorder_tracks', (0, 4, 2), {}), ('reorder_tracks', (5, 1, 1), {})]

    def test_stops_at_first_failure(self):
        catalog = FakeCatalog(fail_on='add_tracks', error=RateLimited(retry_after_ms=1000))
        plan = MutationPlan(
            adds=(AddTracksStep(tracks=(make_track(1),)),),
            removes=(RemoveTracksStep(tracks=(make_track(2),)),),
        )

        report = PlanExecutor(catalog).execute('p1', plan)

        assert not report.succeeded
        assert report.failed_step_index == 1
        assert report.error_type == 'RateLimited'
        assert report.to_json()['committedSteps'] == 1
        assert report.committed == [{'type': 'remove', 'trackCount': 1}]

    def test_unknown_step(self):
        with pytest.raises(PlanningError):
            PlanExecutor(FakeCatalog()).execute_step('p1', 'shuffle')


class TestLibraryAndPlayback:
    def test_library_diff_saves_then_removes(self):
        save = [f'{n:022d}' for n in range(60)]
        catalog = FakeCatalog()

        report = execute_library_diff(catalog, LibraryDiff(to_save=save, to_remove=['B' * 22]))

        assert report.succeeded
        assert [c[0] for c in catalog.calls] == ['save_tracks', 'save_tracks', 'remove_saved_tracks']
        assert report.committed[0] == {'type': 'save', 'count': 50}

    def test_library_failure_is_reported(self):
        catalog = FakeCatalog(fail_on='remove_saved_tracks')
        report = execute_library_diff(catalog, LibraryDiff(to_save=['A' * 22], to_remove=['B' * 22]))
        assert report.failed_step_index == 1
        assert report.error_type == 'TemporaryFailure'

    def test_invalid_ids_are_rejected(self):
        with pytest.raises(ValidationError):
            execute_library_diff(FakeCatalog(), LibraryDiff(to_save=['not-an-id']))

    def test_invalid_id_in_later_batch_commits_nothing(self):
        catalog = FakeCatalog()
        valid = [f"{n:022d}" for n in range(50)]
        with pytest.raises(ValidationError) as exc_info:
            execute_library_diff(catalog, LibraryDiff(to_save=valid + ['bad-id']))
        assert 'bad-id' in exc_info.value.message
        assert catalog.calls == []

    def test_invalid_remove_batch_blocks_saves(self):
        catalog = FakeCatalog()
        with pytest.raises(ValidationError):
            execute_library_diff(catalog, LibraryDiff(to_save=['A' * 22], to_remove=['short']))
        assert catalog.calls == []

    def test_playback_noop(self):
        catalog = FakeCatalog()
        assert execute_playback(catalog, PlaybackDecision(should_execute=False, reason='Already paused')) is False
        assert catalog.calls == []

    def test_playback_commands(self):
        catalog = FakeCatalog()
        play = PlaybackDecision(should_execute=True,
                                command=PlaybackCommand(action='play', track_uri='spotify:track:t1',
                                                        position_ms=0))
        assert execute_playback(catalog, play) is True
        execute_playback(catalog, PlaybackDecision(should_execute=True,
                                                   command=PlaybackCommand(action='previous')))
        assert catalog.calls == [
            ('play', (), {'context_uri': None, 'track_uri': 'spotify:track:t1', 'position_ms': 0}),
            ('previous_track', (), {}),
        ]


@pytest.mark.parametrize('catalog_class', [SpotifyCatalog, FakeCatalog])
def test_catalogs_implement_catalog_port(catalog_class):
    required = [name for name in vars(CatalogPort) if not name.startswith('_')]
    assert {'get_playback_state', 'get_saved_track_ids', 'search_tracks'} <= set(required)
    missing = [name for name in required if not callable(getattr(catalog_class, name, None))]
    assert missing == []
