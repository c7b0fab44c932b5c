import json

import pytest

from curator.crosscutting.config import Settings
from curator.domain.entities import AddTracksStep, AnnotateStep, MutationPlan, PlaylistPlan, tracks_to_json
from curator.domain.errors import NotFound
from curator.domain.ports import SeededRandomPort
from curator.interfaces import tools
from curator.interfaces.http import HTTPServer, create_app
from curator.interfaces.tools import ToolContext
from curator.tests.factories import FakeCatalog, make_track, make_tracks


class TestHTTPServer:
    """Tests for the HTTP tool surface."""

    def setup_method(self):
        self.catalog = FakeCatalog()
        self.server = HTTPServer(
            port=3001,
            context=ToolContext(random_port=SeededRandomPort(42)),
            catalog_factory=lambda: self.catalog,
        )
        self.client = self.server.app.test_client()

    def post(self, path, payload, **kwargs):
        return self.client.post(path, data=json.dumps(payload), content_type='application/json', **kwargs)

    def test_health_check(self):
        response = self.client.get('/health')
        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'healthy'
        assert data['version'] == '0.1.0'
        assert 'timestamp' in data
        assert 'commit' in data

    def test_root_lists_tools(self):
        data = self.client.get('/').get_json()
        assert data['service'] == 'Curator HTTP Tools'
        assert data['endpoints']['tools']['reconcile'] == '/tools/reconcile'
        assert set(data['endpoints']['tools']) == set(tools.TOOLS)

    def test_reconcile(self):
        x, y, z = make_track(1), make_track(2), make_track(3)
        response = self.post('/tools/reconcile', {
            'existing': tracks_to_json([x, y]),
            'target': tracks_to_json([y, z]),
            'planId': 'plan-3',
        })

        assert response.status_code == 200
        data = response.get_json()
        assert [t['uri'] for t in data['plan']['adds'][0]['tracks']] == ['spotify:track:t3']
        assert [t['uri'] for t in data['plan']['removes'][0]['tracks']] == ['spotify:track:t1']
        assert data['report']['header']['planId'] == 'plan-3'
        assert data['report']['details']['idempotent'] is True

    def test_plan_playlist_from_text(self):
        response = self.post('/tools/plan_playlist', {
            'intent': 'genre: rock 1995',
            'sources': [{'type': 'search', 'tracks': tracks_to_json(make_tracks(3))}],
        })
        data = response.get_json()
        assert response.status_code == 200
        assert data['plan']['name'] == 'Rock 1995'
        assert data['plan']['steps'][-1] == {'type': 'reorder', 'from': 0, 'to': -1, 'count': -1}
        assert data['report']['tracksAdded'] == 3

    def test_select_tracks_is_seeded(self):
        payload = {
            'candidates': tracks_to_json([make_track(n, popularity=50) for n in range(10)]),
            'options': {'count': 4, 'randomnessFactor': 0.5},
        }
        first = self.post('/tools/select_tracks', payload).get_json()
        again = HTTPServer(context=ToolContext(random_port=SeededRandomPort(42))).app.test_client().post(
            '/tools/select_tracks', data=json.dumps(payload), content_type='application/json').get_json()
        assert len(first['selected']) == 4
        assert [t['uri'] for t in first['selected']] == [t['uri'] for t in again['selected']]
        assert first['analysis']['totalCandidates'] == 10

    def test_library_diff(self):
        keep, drop, new = 'A' * 22, 'B' * 22, 'C' * 22
        data = self.post('/tools/library_diff', {'current': [keep, drop], 'desired': [keep, new]}).get_json()
        assert data['diff'] == {'toSave': [new], 'toRemove': [drop]}
        assert data['safety']['isSafe'] is False

    def test_normalize_search(self):
        data = self.post('/tools/normalize_search', {'intent': {'genres': ['Jazz'], 'limit': 500}}).get_json()
        assert data['intent']['limit'] == 50
        assert data['query'] == 'genre:"jazz"'

    def test_search_tracks(self):
        self.catalog.tracks = make_tracks(3)
        response = self.post('/tools/search_tracks', {'query': ' blue train ', 'artists': ['Coltrane'], 'limit': 2})

        assert response.status_code == 200
        data = response.get_json()
        assert data['query'] == 'blue train artist:"Coltrane"'
        assert [t['id'] for t in data['items']] == ['t1', 't2']
        assert data['total'] == 3
        assert data['hasMore'] is True
        assert self.catalog.searches[0].query == 'blue train'

    def test_search_tracks_needs_criteria(self):
        response = self.post('/tools/search_tracks', {'limit': 5})
        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'VALIDATION_ERROR'
        assert self.catalog.searches == []

    def test_search_tracks_catalog_unavailable(self):
        self.catalog.fail_on = 'search_tracks'
        response = self.post('/tools/search_tracks', {'query': 'jazz'})
        assert response.status_code == 503
        assert response.get_json()['error']['code'] == 'TemporaryFailure'

    def test_validation_error_shape(self):
        response = self.post('/tools/reconcile', {'target': []})
        assert response.status_code == 400
        error = response.get_json()['error']
        assert error['code'] == 'VALIDATION_ERROR'
        assert error['name'] == 'ValidationError'
        assert error['message'] == 'Missing required field: existing'
        assert error['meta'] == {'field': 'existing'}

    def test_aggregate_error_lists_each_track(self):
        response = self.post('/tools/dedupe', {'tracks': [
            {'uri': 'spotify:track:ok', 'name': 'Fine', 'artists': ['A'], 'durationMs': 1000},
            {'uri': '', 'name': 'No uri', 'artists': ['A'], 'durationMs': 1000},
            {'uri': 'spotify:track:x', 'name': 'Bad', 'artists': [], 'durationMs': 0},
        ]})
        assert response.status_code == 400
        error = response.get_json()['error']
        assert error['code'] == 'AGGREGATE_ERROR'
        assert [e['meta']['index'] for e in error['errors']] == [1, 2]

    def test_non_object_body(self):
        response = self.post('/tools/dedupe', [1, 2])
        assert response.status_code == 400
        assert response.get_json()['error']['message'] == 'Tool payload must be a JSON object'

    def test_malformed_structure_is_validation_error(self):
        response = self.post('/tools/playback_decision', {
            'state': {'isPlaying': True, 'currentTrack': {'name': 'no uri'}},
            'action': 'pause',
        })
        assert response.status_code == 400
        assert response.get_json()['error']['message'].startswith('Malformed playback_decision payload')

    def test_rule_violation(self):
        response = self.post('/tools/apply_constraints', {'items': [], 'rules': {'maxTracks': 0}})
        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'RULE_VIOLATION'

    def test_unknown_tool(self):
        response = self.post('/tools/transfer', {})
        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'UNKNOWN_TOOL'

    def test_unexpected_error_is_hidden(self, monkeypatch):
        def boom(payload, context):
            raise RuntimeError('database exploded')

        monkeypatch.setitem(tools.TOOLS, 'dedupe', boom)
        response = self.post('/tools/dedupe', {'tracks': []})
        assert response.status_code == 500
        assert response.get_json()['error'] == {'code': 'INTERNAL_ERROR', 'message': 'Internal server error',
                                                'meta': {}}


class TestExecuteRoute:
    def setup_method(self):
        self.catalog = FakeCatalog()
        self.server = HTTPServer(catalog_factory=lambda: self.catalog)
        self.client = self.server.app.test_client()

    def post(self, payload, playlist_id='p1'):
        return self.client.post(f'/playlists/{playlist_id}/execute', data=json.dumps(payload),
                                content_type='application/json', headers={'X-Plan-Id': 'plan-9'})

    def test_executes_playlist_plan(self):
        plan = PlaylistPlan(name='Mix', public=False, steps=(
            AnnotateStep(field='name', value='Mix'),
            AddTracksStep(tracks=tuple(make_tracks(2))),
        ))
        response = self.post({'plan': plan.to_json()})
        assert response.status_code == 200
        assert response.get_json()['committedSteps'] == 2
        assert [c[0] for c in self.catalog.calls] == ['update_details', 'add_tracks']

    def test_executes_mutation_plan(self):
        plan = MutationPlan(adds=(AddTracksStep(tracks=(make_track(1),)),))
        response = self.post({'plan': plan.to_json()})
        assert response.status_code == 200
        assert self.catalog.calls == [('add_tracks', (['spotify:track:t1'],), {'position': None})]

    def test_partial_failure(self):
        self.catalog.fail_on = 'add_tracks'
        plan = MutationPlan(adds=(AddTracksStep(tracks=(make_track(1),)),))
        response = self.post({'plan': plan.to_json()})
        assert response.status_code == 502
        assert response.get_json()['failedStepIndex'] == 0

    def test_missing_plan(self):
        response = self.post({})
        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'VALIDATION_ERROR'

    def test_invalid_plan(self):
        response = self.post({'plan': {'steps': [{'type': 'shuffle'}]}})
        assert response.status_code == 400

    def test_missing_playlist(self):
        def missing():
            raise NotFound('playlist p1')

        server = HTTPServer(catalog_factory=missing)
        response = server.app.test_client().post('/playlists/p1/execute', json={'plan': {'adds': []}})
        assert response.status_code == 502
        assert response.get_json()['error']['code'] == 'NotFound'

    def test_no_token_configured(self):
        server = HTTPServer(settings=Settings())
        response = server.app.test_client().post('/playlists/p1/execute', json={'plan': {'adds': []}})
        assert response.status_code == 502
        assert 'SPOTIFY_ACCESS_TOKEN' in response.get_json()['error']['message']


def test_search_without_token_is_rejected():
    response = HTTPServer(settings=Settings()).app.test_client().post('/tools/search_tracks', json={'query': 'jazz'})
    assert response.status_code == 502
    assert 'SPOTIFY_ACCESS_TOKEN' in response.get_json()['error']['message']


def test_create_app_uses_settings():
    app = create_app(Settings(http_port=4001))
    assert app.test_client().get('/health').status_code == 200


@pytest.mark.parametrize('path', ['/tools/score_tracks', '/tools/apply_plan'])
def test_empty_body_reports_missing_field(path):
    response = HTTPServer().app.test_client().post(path, json={})
    assert response.status_code == 400
    assert response.get_json()['error']['message'].startswith('Missing required field')
