import json
import logging
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variables for correlation
plan_id_var: ContextVar[Optional[str]] = ContextVar('plan_id', default=None)
playlist_id_var: ContextVar[Optional[str]] = ContextVar('playlist_id', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)

ROOT_LOGGER_NAME = 'curator'


class SecretMasker:
    """Masks access tokens and client secrets in log messages."""

    def __init__(self):
        self.patterns = [
            # Spotify access tokens
            r'(?i)(spotify_access_token|access_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Client secrets
            r'(?i)(client_secret|spotify_client_secret)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{16,})["\']?',
            # Authorization headers
            r'(?i)(authorization|bearer)[\s]*[:=]?[\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Generic tokens and keys
            r'(?i)(token|key|secret|password)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
        ]
        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]
        self.sensitive_keys = {'access_token', 'client_secret', 'token', 'authorization', 'password'}

    @staticmethod
    def _mask_value(secret: str) -> str:
        # Keep first 4 and last 4 characters
        if len(secret) > 8:
            return secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
        return '*' * len(secret)

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text
        for pattern in self.compiled_patterns:
            masked_text = pattern.sub(
                lambda m: f"{m.group(1)}: {self._mask_value(m.group(2))}", masked_text
            )
        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive values in a (nested) dictionary."""
        if not data:
            return data

        masked_data = {}
        for key, value in data.items():
            if isinstance(value, str) and key.lower() in self.sensitive_keys:
                masked_data[key] = self._mask_value(value)
            elif isinstance(value, str):
                masked_data[key] = self.mask_secrets(value)
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [self.mask_dict(item) if isinstance(item, dict)
                                    else self.mask_secrets(item) if isinstance(item, str)
                                    else item for item in value]
            else:
                masked_data[key] = value
        return masked_data


class StructuredFormatter(logging.Formatter):
    """Renders every record as a single JSON object."""

    def __init__(self):
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.masker.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        plan_id = plan_id_var.get()
        playlist_id = playlist_id_var.get()
        stage = stage_var.get()
        if plan_id:
            log_entry['planId'] = plan_id
        if playlist_id:
            log_entry['playlistId'] = playlist_id
        if stage:
            log_entry['stage'] = stage

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        fields = getattr(record, 'fields', None)
        if fields:
            log_entry['fields'] = self.masker.mask_dict(fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class CorrelationContext:
    """Context manager that sets correlation fields for the records logged inside it."""

    def __init__(self, plan_id: Optional[str] = None,
                 playlist_id: Optional[str] = None,
                 stage: Optional[str] = None):
        self._values = {
            plan_id_var: plan_id,
            playlist_id_var: playlist_id,
            stage_var: stage,
        }
        self._tokens = []

    def __enter__(self):
        for var, value in self._values.items():
            if value is not None:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def setup_logging(level: str = 'INFO', log_file: Optional[str] = None) -> logging.Logger:
    """Configure the ``curator`` logger with JSON output to stderr and optionally a file."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()

    formatter = StructuredFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    return logging.getLogger(name)


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, **kwargs):
    """Log ``message`` with structured ``fields`` attached to the record."""
    merged = dict(fields or {})
    merged.update(kwargs)
    logger.log(getattr(logging, level.upper()), message, extra={'fields': merged}, stacklevel=2)


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """Log an error with its type and message as fields."""
    fields = {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs,
    }
    code = getattr(error, 'code', None)
    if code:
        fields['error_code'] = code
    logger.error(message, extra={'fields': fields}, exc_info=error, stacklevel=2)
