"""
Structured JSON logging configuration with credential redaction.

The core only ever calls logging.getLogger(__name__); hosts call
configure_logging() once at startup (the CLI does this for you).
"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

# Pre-compiled patterns (order matters - more specific first)
REDACTION_PATTERNS = [
    # Bearer tokens and jwt.<token> WebSocket subprotocols
    (re.compile(r'(Bearer\s+)[A-Za-z0-9\-_\.]{20,}', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(jwt\.)[A-Za-z0-9\-_]{10,}\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]*'), r'\1***REDACTED***'),

    # JSON-style "key": "value"
    (re.compile(
        r'(["\'](?:password|currentPassword|newPassword|token|refreshToken|tempToken|authToken)["\'])'
        r'\s*:\s*["\'][^"\']+["\']',
        re.IGNORECASE,
    ), r'\1: "***REDACTED***"'),

    # Explicit key=value patterns
    (re.compile(r'\b(password|refresh[_-]?token|access[_-]?token)\s*=\s*\S+', re.IGNORECASE), r'\1=***REDACTED***'),
]

MAX_REDACTION_LENGTH = 10240  # Skip redaction on very large messages


def redact(text: str) -> str:
    """Mask tokens and passwords in a log message."""
    if not text or len(text) > MAX_REDACTION_LENGTH:
        return text
    for pattern, replacement in REDACTION_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class RedactingFilter(logging.Filter):
    """Rewrites record messages so credentials never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for attr in ('error_id', 'family', 'method', 'path', 'status_code',
                     'reason', 'state', 'attempt'):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry, default=str)


def configure_logging(level: str = None, fmt: str = None, log_file: str = None, logger_name: str = None):
    """Configure logging for the session core.

    Args:
        level: Log level name (default: LOG_LEVEL env or INFO)
        fmt: "json" or "text" (default: LOG_FORMAT env or json)
        log_file: Optional rotating log file (default: LOG_FILE env)
        logger_name: Logger to configure (default: root logger)

    Returns:
        Configured logger instance.
    """
    log_level = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    log_format = fmt or os.getenv('LOG_FORMAT', 'json')
    log_file = log_file if log_file is not None else os.getenv('LOG_FILE', '')

    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, log_level, logging.INFO))
    logger.handlers = []

    redacting = RedactingFilter()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)
    console_handler.addFilter(redacting)

    if log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    logger.addHandler(console_handler)

    # File handler (if configured)
    if log_file:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(redacting)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    # aiohttp access/client chatter is noisy at DEBUG
    logging.getLogger('aiohttp').setLevel(max(logger.level, logging.WARNING))

    return logger
