"""
Structured JSON logging configuration.

Shared by library users and the admin API; audit entries mirrored to the
``trustcore.audit`` logger carry their id, action and severity as extras.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

ROOT_LOGGER = 'trustcore'

_EXTRA_ATTRS = (
    'request_id', 'user', 'endpoint', 'method', 'status_code',
    'remote_addr', 'error_id', 'audit_id', 'action', 'severity',
)


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

        for attr in _EXTRA_ATTRS:
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry, default=str)


def configure_logging(settings=None, app=None):
    """Configure structured logging for the project loggers.

    Args:
        settings: AppSettings; defaults to get_settings().
        app: Optional Flask app whose logger will be updated.

    Returns:
        Configured logger instance.
    """
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()

    log_level = settings.log_level.upper()

    # Module loggers live under their package names, so configure each
    # project root alongside the umbrella logger.
    loggers = [logging.getLogger(name) for name in (ROOT_LOGGER, 'trust', 'core', 'dashboard')]

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)

    if settings.log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    handlers = [console_handler]

    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    for logger in loggers:
        logger.setLevel(getattr(logging, log_level, logging.INFO))
        logger.handlers = list(handlers)

    if app is not None:
        app.logger.handlers = list(handlers)
        app.logger.setLevel(loggers[0].level)

    return loggers[0]
