import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values


DEFAULT_ENV_FILE = '.env'
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class ConfigError(Exception):
    """Configuration error."""
    pass


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the adapter layer. The curation core never reads these."""

    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    spotify_redirect_uri: Optional[str] = None
    spotify_access_token: Optional[str] = None
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    http_host: str = 'localhost'
    http_port: int = 3000
    market: str = 'US'
    random_seed: Optional[int] = None

    def summary(self) -> Dict[str, Any]:
        """Settings without sensitive values."""
        data = asdict(self)
        for key in ('spotify_client_secret', 'spotify_access_token'):
            data[key] = bool(data[key])
        return data


# Environment variable -> (settings field, JSON config key)
_KEYS = {
    'SPOTIFY_CLIENT_ID': ('spotify_client_id', 'spotifyClientId'),
    'SPOTIFY_CLIENT_SECRET': ('spotify_client_secret', 'spotifyClientSecret'),
    'SPOTIFY_REDIRECT_URI': ('spotify_redirect_uri', 'spotifyRedirectUri'),
    'SPOTIFY_ACCESS_TOKEN': ('spotify_access_token', 'spotifyAccessToken'),
    'CURATOR_LOG_LEVEL': ('log_level', 'logLevel'),
    'CURATOR_LOG_FILE': ('log_file', 'logFile'),
    'CURATOR_HTTP_HOST': ('http_host', 'httpHost'),
    'CURATOR_HTTP_PORT': ('http_port', 'httpPort'),
    'CURATOR_MARKET': ('market', 'market'),
    'CURATOR_RANDOM_SEED': ('random_seed', 'randomSeed'),
}


def _load_config_file(config_path: str) -> Dict[str, Any]:
    path = Path(config_path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def _to_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def load_settings(env_file: Optional[str] = None, config_path: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings with precedence environment > JSON config file > defaults.

    Values from ``env_file`` (``.env`` in the working directory when omitted)
    count as environment but never override variables already set.
    """
    environ = os.environ if environ is None else environ

    env_path = env_file or DEFAULT_ENV_FILE
    if env_file and not Path(env_file).exists():
        raise ConfigError(f"Env file not found: {env_file}")
    dotenv: Dict[str, str] = {}
    if Path(env_path).exists():
        dotenv = {k: v for k, v in dotenv_values(env_path).items() if v is not None}

    file_values = _load_config_file(config_path) if config_path else {}

    values: Dict[str, Any] = {}
    for env_key, (field_name, json_key) in _KEYS.items():
        if env_key in environ:
            values[field_name] = environ[env_key]
        elif env_key in dotenv:
            values[field_name] = dotenv[env_key]
        elif json_key in file_values:
            values[field_name] = file_values[json_key]

    if 'http_port' in values:
        values['http_port'] = _to_int('CURATOR_HTTP_PORT', values['http_port'])
        if not 0 < values['http_port'] < 65536:
            raise ConfigError(f"CURATOR_HTTP_PORT out of range: {values['http_port']}")
    if values.get('random_seed') not in (None, ''):
        values['random_seed'] = _to_int('CURATOR_RANDOM_SEED', values['random_seed'])
    else:
        values.pop('random_seed', None)
    if 'log_level' in values:
        values['log_level'] = str(values['log_level']).upper()
        if values['log_level'] not in LOG_LEVELS:
            raise ConfigError(f"CURATOR_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

    return Settings(**values)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def setup_config(env_file: Optional[str] = None, config_path: Optional[str] = None) -> Settings:
    """Reload the process-wide settings from explicit sources."""
    global _settings
    _settings = load_settings(env_file=env_file, config_path=config_path)
    return _settings
