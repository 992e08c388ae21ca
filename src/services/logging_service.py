"""
Structured logging service.
Configures structlog on top of stdlib handlers (console, rotating file, JSON)
and provides helpers for retrieval performance metrics.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.typing import FilteringBoundLogger

from src.config.settings import Settings

QUERY_PREVIEW_LENGTH = 100

# Record attributes that are part of every LogRecord and never custom context
_STANDARD_RECORD_ATTRS = set(vars(logging.makeLogRecord({})).keys()) | {'message', 'asctime'}


class PerformanceMetricsProcessor:
    """Processor for performance metrics logging."""

    @staticmethod
    def add_performance_context(logger: FilteringBoundLogger, name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Tag timing events and collect numeric measurements."""
        if 'log_type' not in event_dict and any(key in event_dict for key in ['response_time', 'duration']):
            event_dict['log_type'] = 'PERFORMANCE'

        for key in ('duration', 'response_time', 'result_count', 'branch_count'):
            value = event_dict.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                event_dict.setdefault('measurements', {})[key] = value

        return event_dict


class JsonLogFormatter(logging.Formatter):
    """Formatter that renders records, including structlog context, as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'message': record.getMessage(),
            'level': record.levelname,
            'logger': record.name,
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        }

        for key, value in vars(record).items():
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith('_'):
                log_entry[key] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def setup_file_logging(settings: Settings) -> Optional[logging.Handler]:
    """Set up file logging with rotation."""
    if not settings.enable_file_logging:
        return None

    log_path = Path(settings.log_file_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=50 * 1024 * 1024,  # 50MB
        backupCount=10,
        encoding='utf-8'
    )

    if settings.enable_json_logging:
        file_handler.setFormatter(JsonLogFormatter())
    else:
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )

    return file_handler


def setup_console_logging(settings: Settings) -> Optional[logging.Handler]:
    """Set up console logging."""
    if not settings.enable_console_logging:
        return None

    console_handler = logging.StreamHandler(sys.stderr)

    if settings.enable_json_logging:
        console_handler.setFormatter(JsonLogFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(levelname)s - %(message)s', datefmt='%H:%M:%S')
        )

    return console_handler


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for structured logging."""
    processors = [
        structlog.contextvars.merge_contextvars,
        PerformanceMetricsProcessor.add_performance_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.enable_json_logging:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=['timestamp', 'level', 'event']))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Set up logging configuration.

    Args:
        settings: Application settings instance
    """
    if settings is None:
        from src.config.settings import get_settings
        settings = get_settings()

    configure_structlog(settings)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    log_level = getattr(logging, settings.log_level.upper())
    root_logger.setLevel(log_level)

    handlers = [setup_file_logging(settings), setup_console_logging(settings)]
    active_handlers = [handler for handler in handlers if handler is not None]

    for handler in active_handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    # Quiet chatty provider clients
    logging.getLogger('azure').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    logger = structlog.get_logger(__name__)
    logger.info(
        "Logging configured",
        level=settings.log_level,
        file_path=settings.log_file_path if settings.enable_file_logging else None,
        handlers=len(active_handlers),
        json_logging=settings.enable_json_logging
    )


def get_logger(name: str, **context) -> FilteringBoundLogger:
    """
    Get a configured logger with optional context binding.

    Args:
        name: Logger name (usually __name__)
        **context: Additional context to bind to logger

    Returns:
        Bound logger with context
    """
    logger = structlog.get_logger(name)

    if context:
        logger = logger.bind(**context)

    return logger


def preview_text(text: str, limit: int = QUERY_PREVIEW_LENGTH) -> str:
    """Truncate user text before it goes into a log line."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def log_performance_metrics(
    operation: str,
    duration: float,
    success: bool = True,
    **metrics
) -> None:
    """
    Log performance metrics.

    Args:
        operation: Operation name
        duration: Operation duration in seconds
        success: Whether operation was successful
        **metrics: Additional metrics to log
    """
    logger = get_logger(__name__).bind(
        event_type="performance",
        log_type="PERFORMANCE"
    )

    logger.info(
        "Performance metric",
        operation=operation,
        duration=duration,
        success=success,
        **metrics
    )
