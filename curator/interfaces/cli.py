import argparse
import json
import logging
import signal
import sys
import time
from typing import Any, Callable, Dict, List, Optional

from curator.crosscutting.config import ConfigError, LOG_LEVELS, Settings, load_settings
from curator.crosscutting.logging import CorrelationContext, log_error, setup_logging
from curator.domain.entities import PLAYBACK_ACTIONS, LibraryDiff, MutationPlan, PlaybackDecision, PlaylistPlan
from curator.domain.errors import DomainError, NotFound, PermanentFailure, RateLimited, TemporaryFailure
from curator.domain.ports import SeededRandomPort
from curator.infrastructure.spotify import (
    PlanExecutor,
    SpotifyCatalog,
    execute_library_diff,
    execute_playback,
)
from curator.interfaces.tools import ToolContext, run_tool

_ADAPTER_ERRORS = (RateLimited, TemporaryFailure, PermanentFailure, NotFound)


class CLIError(Exception):
    """Usage error reported by the CLI."""
    pass


class CLI:
    """Command Line Interface for Curator."""

    def __init__(self, catalog_factory: Optional[Callable[[Settings], Any]] = None,
                 stdout=None):
        """Initialize CLI."""
        self.parser = self._create_parser()
        self.catalog_factory = catalog_factory or self._default_catalog
        self.stdout = stdout or sys.stdout
        self.settings: Optional[Settings] = None
        self._start_time = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='curator',
            description='Plan, reconcile and play curated playlists'
        )
        parser.add_argument('--log-level', choices=list(LOG_LEVELS), help='Set logging level')
        parser.add_argument('--log-file', help='Also write JSON logs to this file')
        parser.add_argument('--env-file', help='Path to a .env file')
        parser.add_argument('--config', help='Path to a JSON config file')

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        plan_parser = subparsers.add_parser('plan', help='Build a playlist plan from an intent')
        plan_parser.add_argument('--intent', required=True,
                                 help='Playlist intent JSON file ("-" for stdin)')
        plan_parser.add_argument('--optimize', action='store_true', help='Merge adjacent add steps')
        self._add_execute_arguments(plan_parser)

        reconcile_parser = subparsers.add_parser('reconcile', help='Diff a playlist against a target')
        reconcile_parser.add_argument('--target', required=True, help='Target tracks JSON file')
        reconcile_parser.add_argument('--existing',
                                      help='Existing tracks JSON file (fetched from --playlist-id when omitted)')
        reconcile_parser.add_argument('--rules', help='Rules JSON file')
        reconcile_parser.add_argument('--optimize', action='store_true', help='Merge track steps')
        self._add_execute_arguments(reconcile_parser)

        search_parser = subparsers.add_parser('search', help='Search the catalog for tracks')
        search_parser.add_argument('query', nargs='?', help='Free-text query')
        search_parser.add_argument('--genre', action='append', dest='genres', help='Genre filter (repeatable)')
        search_parser.add_argument('--artist', action='append', dest='artists', help='Artist filter (repeatable)')
        search_parser.add_argument('--year', type=int)
        search_parser.add_argument('--limit', type=int, default=20, help='Results per page (1-50)')
        search_parser.add_argument('--offset', type=int, default=0)
        search_parser.add_argument('--output', help='Also write the found tracks to this JSON file')

        select_parser = subparsers.add_parser('select', help='Score and select candidate tracks')
        select_parser.add_argument('--candidates', required=True, help='Candidate tracks JSON file')
        select_parser.add_argument('--options', required=True, help='Selection options JSON file')
        select_parser.add_argument('--rules', help='Rules JSON file')
        select_parser.add_argument('--seed', type=int, help='Seed for reproducible tie-breaking')

        playback_parser = subparsers.add_parser('playback', help='Decide (and run) a playback command')
        playback_parser.add_argument('--action', required=True,
                                     choices=list(PLAYBACK_ACTIONS))
        playback_parser.add_argument('--state', help='Playback state JSON file (fetched live when omitted)')
        playback_parser.add_argument('--context-uri')
        playback_parser.add_argument('--track-uri')
        playback_parser.add_argument('--position-ms', type=int)
        playback_parser.add_argument('--execute', action='store_true', help='Send the command to Spotify')

        library_parser = subparsers.add_parser('library-diff', help='Diff saved tracks against a desired set')
        library_parser.add_argument('--desired', required=True, help='Desired track ids JSON file')
        library_parser.add_argument('--current', help='Current ids JSON file (fetched live when omitted)')
        library_parser.add_argument('--allow-data-loss', action='store_true',
                                    help='Permit large removals')
        library_parser.add_argument('--execute', action='store_true', help='Apply the diff')

        serve_parser = subparsers.add_parser('serve', help='Run the HTTP tool server')
        serve_parser.add_argument('--host', help='Bind address')
        serve_parser.add_argument('--port', type=int, help='Bind port')
        serve_parser.add_argument('--debug', action='store_true')

        return parser

    @staticmethod
    def _add_execute_arguments(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument('--playlist-id', help='Spotify playlist id')
        subparser.add_argument('--plan-id', help='Correlation id for logs and reports')
        subparser.add_argument('--execute', action='store_true',
                               help='Execute the plan against --playlist-id')

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger = logging.getLogger(__name__)
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._cleanup_resources()
            sys.exit(130)  # Standard exit code for signal termination

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        """Log total run time."""
        logger = logging.getLogger(__name__)
        if self._start_time:
            duration = time.time() - self._start_time
            logger.debug(f"CLI execution time: {duration:.2f}s")
            self._start_time = None

    def _validate_arguments(self, args: argparse.Namespace) -> None:
        """Validate CLI arguments."""
        if getattr(args, 'execute', False) and hasattr(args, 'playlist_id') and not args.playlist_id:
            raise CLIError("--execute requires --playlist-id")
        if args.command == 'reconcile' and not args.existing and not args.playlist_id:
            raise CLIError("reconcile needs --existing or --playlist-id")

    @staticmethod
    def _default_catalog(settings: Settings) -> SpotifyCatalog:
        if not settings.spotify_access_token:
            raise CLIError("SPOTIFY_ACCESS_TOKEN environment variable is required")
        return SpotifyCatalog(settings.spotify_access_token, market=settings.market)

    @staticmethod
    def _read_json(path: str) -> Any:
        try:
            if path == '-':
                return json.load(sys.stdin)
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise CLIError(f"Failed to read {path}: {e}")

    def _emit(self, data: Dict[str, Any]) -> None:
        self.stdout.write(json.dumps(data, indent=2, ensure_ascii=False) + '\n')

    def _context(self, seed: Optional[int] = None) -> ToolContext:
        if seed is not None:
            return ToolContext(random_port=SeededRandomPort(seed))
        return ToolContext.from_settings(self.settings)

    def _execute_plan(self, args: argparse.Namespace, plan, result: Dict[str, Any]) -> bool:
        catalog = self.catalog_factory(self.settings)
        report = PlanExecutor(catalog).execute(args.playlist_id, plan, plan_id=args.plan_id)
        result['execution'] = report.to_json()
        return report.succeeded

    def _plan(self, args: argparse.Namespace) -> bool:
        payload = self._read_json(args.intent)
        if isinstance(payload, dict):
            payload = dict(payload, optimize=args.optimize, planId=args.plan_id)
        result = run_tool('plan_playlist', payload, self._context())
        ok = True
        if args.execute:
            ok = self._execute_plan(args, PlaylistPlan.from_json(result['plan']), result)
        self._emit(result)
        return ok

    def _reconcile(self, args: argparse.Namespace) -> bool:
        if args.existing:
            existing = self._read_json(args.existing)
        else:
            catalog = self.catalog_factory(self.settings)
            with CorrelationContext(plan_id=args.plan_id, playlist_id=args.playlist_id, stage='fetch'):
                existing = [t.to_json() for t in catalog.get_playlist_tracks(args.playlist_id)]
        payload = {
            'existing': existing,
            'target': self._read_json(args.target),
            'rules': self._read_json(args.rules) if args.rules else None,
            'optimize': args.optimize,
            'planId': args.plan_id,
        }
        result = run_tool('reconcile', payload, self._context())
        ok = True
        if args.execute:
            ok = self._execute_plan(args, MutationPlan.from_json(result['plan']), result)
        self._emit(result)
        return ok

    def _search(self, args: argparse.Namespace) -> bool:
        payload = {
            'query': args.query,
            'genres': args.genres,
            'artists': args.artists,
            'year': args.year,
            'limit': args.limit,
            'offset': args.offset,
        }
        context = self._context()
        context.catalog_factory = lambda: self.catalog_factory(self.settings)
        result = run_tool('search_tracks', payload, context)
        if args.output:
            try:
                with open(args.output, 'w', encoding='utf-8') as f:
                    json.dump(result['items'], f, indent=2, ensure_ascii=False)
            except IOError as e:
                raise CLIError(f"Failed to write {args.output}: {e}")
        self._emit(result)
        return True

    def _select(self, args: argparse.Namespace) -> bool:
        payload = {
            'candidates': self._read_json(args.candidates),
            'options': self._read_json(args.options),
            'rules': self._read_json(args.rules) if args.rules else None,
        }
        self._emit(run_tool('select_tracks', payload, self._context(args.seed)))
        return True

    def _playback(self, args: argparse.Namespace) -> bool:
        catalog = None
        if args.state:
            state = self._read_json(args.state)
        else:
            catalog = self.catalog_factory(self.settings)
            state = catalog.get_playback_state().to_json()
        payload = {
            'state': state,
            'action': args.action,
            'contextUri': args.context_uri,
            'trackUri': args.track_uri,
            'positionMs': args.position_ms,
        }
        result = run_tool('playback_decision', payload, self._context())
        if args.execute:
            catalog = catalog or self.catalog_factory(self.settings)
            result['executed'] = execute_playback(catalog, PlaybackDecision.from_json(result['decision']))
        self._emit(result)
        return True

    def _library_diff(self, args: argparse.Namespace) -> bool:
        catalog = None
        if args.current:
            current = self._read_json(args.current)
        else:
            catalog = self.catalog_factory(self.settings)
            current = catalog.get_saved_track_ids()
        payload = {
            'current': current,
            'desired': self._read_json(args.desired),
            'allowDataLoss': args.allow_data_loss,
        }
        result = run_tool('library_diff', payload, self._context())
        ok = True
        if args.execute:
            if not result['safety']['isSafe']:
                raise CLIError("Library diff is not safe to apply; pass --allow-data-loss to override")
            catalog = catalog or self.catalog_factory(self.settings)
            report = execute_library_diff(catalog, LibraryDiff.from_json(result['diff']))
            result['execution'] = report.to_json()
            ok = report.succeeded
        self._emit(result)
        return ok

    def _serve(self, args: argparse.Namespace) -> bool:
        from curator.interfaces.http import HTTPServer
        server = HTTPServer(
            host=args.host or self.settings.http_host,
            port=args.port or self.settings.http_port,
            debug=args.debug,
            settings=self.settings,
        )
        server.run()
        return True

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI and return the process exit code."""
        self._start_time = time.time()
        logger = logging.getLogger(__name__)

        try:
            args = self.parser.parse_args(argv)

            if not args.command:
                self.parser.print_help()
                return 1

            self.settings = load_settings(env_file=args.env_file, config_path=args.config)
            setup_logging(args.log_level or self.settings.log_level,
                          args.log_file or self.settings.log_file)
            logger.debug(f"Settings: {self.settings.summary()}")

            self._validate_arguments(args)

            handlers = {
                'plan': self._plan,
                'reconcile': self._reconcile,
                'search': self._search,
                'select': self._select,
                'playback': self._playback,
                'library-diff': self._library_diff,
                'serve': self._serve,
            }
            return 0 if handlers[args.command](args) else 1

        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            return 130
        except DomainError as e:
            log_error(logger, f"{e.code}: {e.message}", e)
            self._emit({'error': e.to_json()})
            return 1
        except (CLIError, ConfigError) as e:
            logger.error(f"CLI error: {e}")
            self._emit({'error': {'code': 'CLI_ERROR', 'message': str(e), 'meta': {}}})
            return 1
        except _ADAPTER_ERRORS as e:
            log_error(logger, 'Spotify request failed', e)
            self._emit({'error': {'code': type(e).__name__, 'message': str(e), 'meta': {}}})
            return 1
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    cli = CLI()
    cli._setup_signal_handlers()
    sys.exit(cli.run())


if __name__ == '__main__':
    main()
