import logging
import os
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, request

from curator.crosscutting.config import Settings, get_settings
from curator.crosscutting.logging import CorrelationContext, log_error
from curator.domain.entities import MutationPlan, PlaylistPlan
from curator.domain.errors import DomainError, NotFound, PermanentFailure, RateLimited, TemporaryFailure
from curator.infrastructure.spotify import PlanExecutor, SpotifyCatalog
from curator.interfaces.tools import TOOLS, ToolContext, run_tool

VERSION = "0.1.0"


class HTTPServer:
    """HTTP tool surface exposing the curation operations as JSON endpoints."""

    def __init__(self, host: str = 'localhost', port: int = 3000, debug: bool = False,
                 settings: Optional[Settings] = None, context: Optional[ToolContext] = None,
                 catalog_factory: Optional[Callable[[], Any]] = None):
        """Initialize HTTP server."""
        self.host = host
        self.port = port
        self.debug = debug
        self.settings = settings or Settings()
        self.catalog_factory = catalog_factory or self._default_catalog
        self.context = context or ToolContext.from_settings(self.settings)
        if self.context.catalog_factory is None:
            self.context = replace(self.context, catalog_factory=self.catalog_factory)
        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)

        self.version = VERSION
        self.commit = os.getenv('GIT_COMMIT', 'unknown')

        self._setup_routes()

    def _default_catalog(self) -> SpotifyCatalog:
        if not self.settings.spotify_access_token:
            raise PermanentFailure("SPOTIFY_ACCESS_TOKEN is not configured")
        return SpotifyCatalog(self.settings.spotify_access_token, market=self.settings.market)

    @staticmethod
    def _error_response(error: DomainError, status: int = 400):
        return jsonify({'error': error.to_json()}), status

    @staticmethod
    def _adapter_error_response(error: Exception, status: int):
        return jsonify({'error': {'code': type(error).__name__, 'message': str(error), 'meta': {}}}), status

    def _setup_routes(self) -> None:
        """Setup Flask routes."""

        @self.app.route('/health', methods=['GET'])
        def health_check():
            """Health check endpoint."""
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'timestamp': datetime.now().isoformat()
            }), 200

        @self.app.route('/', methods=['GET'])
        def root():
            """Root endpoint with basic info."""
            return jsonify({
                'service': 'Curator HTTP Tools',
                'version': self.version,
                'endpoints': {
                    'health': '/health',
                    'tools': {name: f'/tools/{name}' for name in TOOLS},
                    'execute': '/playlists/<playlist_id>/execute',
                }
            }), 200

        @self.app.route('/tools/<name>', methods=['POST'])
        def call_tool(name: str):
            """Run one curation tool on the JSON body."""
            if name not in TOOLS:
                return jsonify({'error': {'code': 'UNKNOWN_TOOL', 'message': f'Unknown tool: {name}',
                                          'meta': {'tools': sorted(TOOLS)}}}), 404

            payload = request.get_json(silent=True)
            try:
                with CorrelationContext(plan_id=request.headers.get('X-Plan-Id'), stage=name):
                    result = run_tool(name, payload, self.context)
            except DomainError as e:
                self.logger.info(f"Tool {name} rejected input: {e.code} {e.message}")
                return self._error_response(e)
            except (PermanentFailure, NotFound) as e:
                log_error(self.logger, f"Tool {name} rejected by catalog", e)
                return self._adapter_error_response(e, 502)
            except (RateLimited, TemporaryFailure) as e:
                log_error(self.logger, f"Tool {name} catalog unavailable", e)
                return self._adapter_error_response(e, 503)
            except Exception as e:
                log_error(self.logger, f"Tool {name} failed", e)
                return jsonify({'error': {'code': 'INTERNAL_ERROR', 'message': 'Internal server error',
                                          'meta': {}}}), 500
            return jsonify(result), 200

        @self.app.route('/playlists/<playlist_id>/execute', methods=['POST'])
        def execute_plan(playlist_id: str):
            """Execute a playlist or mutation plan against the catalog."""
            payload = request.get_json(silent=True) or {}
            try:
                plan_data = payload.get('plan')
                if not isinstance(plan_data, dict):
                    return jsonify({'error': {'code': 'VALIDATION_ERROR', 'message': 'plan is required',
                                              'meta': {}}}), 400
                if 'steps' in plan_data:
                    plan = PlaylistPlan.from_json(plan_data)
                else:
                    plan = MutationPlan.from_json(plan_data)
                report = PlanExecutor(self.catalog_factory()).execute(
                    playlist_id, plan, plan_id=request.headers.get('X-Plan-Id'))
            except DomainError as e:
                return self._error_response(e)
            except (PermanentFailure, NotFound) as e:
                log_error(self.logger, 'Plan execution rejected', e)
                return self._adapter_error_response(e, 502)
            except (RateLimited, TemporaryFailure) as e:
                log_error(self.logger, 'Plan execution unavailable', e)
                return self._adapter_error_response(e, 503)

            return jsonify(report.to_json()), 200 if report.succeeded else 502

    def run(self) -> None:
        """Run HTTP server."""
        self.logger.info(f"Starting HTTP server on {self.host}:{self.port}")
        self.app.run(host=self.host, port=self.port, debug=self.debug)


def create_app(settings: Optional[Settings] = None) -> Flask:
    """Create Flask app for testing and WSGI servers."""
    settings = settings or get_settings()
    server = HTTPServer(host=settings.http_host, port=settings.http_port, settings=settings)
    return server.app
