import logging
import json
import sys
from datetime import datetime, timezone
import os

# Attributes every LogRecord carries; anything else arrived through ``extra``
_RESERVED_ATTRS = frozenset((
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'taskName', 'getMessage', 'message', 'asctime',
))

# Context fields promoted to the top level of the JSON document
_CONTEXT_FIELDS = ('source', 'endpoint', 'area', 'response_time_ms', 'event')


class StructuredJSONFormatter(logging.Formatter):
    """Structured JSON log lines for log shippers (one document per line)"""

    def __init__(self, service_name: str = "pulse-data-core"):
        super().__init__()
        self.service_name = service_name
        self.hostname = os.environ.get('HOSTNAME', 'localhost')

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self.service_name,
            "hostname": self.hostname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in _CONTEXT_FIELDS or key.startswith('_'):
                continue
            log_entry.setdefault("extra", {})[key] = value

        return json.dumps(log_entry, default=str, separators=(',', ':'))


class DevelopmentFormatter(logging.Formatter):
    """Human-readable formatter for development"""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)8s | %(name)28s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = None,
    service_name: str = "pulse-data-core"
) -> None:
    """Setup logging configuration for the consolidation service"""

    if use_json is None:
        use_json = (
            os.environ.get('APP_ENV') == 'production' or
            os.environ.get('LOG_FORMAT', '').lower() == 'json'
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredJSONFormatter(service_name) if use_json else DevelopmentFormatter())
    root_logger.addHandler(console_handler)

    configure_service_loggers(level)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "log_format": "json" if use_json else "development",
            "log_level": level,
            "service": service_name
        }
    )


def configure_service_loggers(level: str) -> None:
    """Set component log levels and quiet noisy third-party loggers"""
    for logger_name in ('pulse_core.orchestrator', 'pulse_core.consolidator',
                        'pulse_core.scheduler', 'pulse_core.rate_limiter',
                        'pulse_core.persistence'):
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))

    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


class SourceContextAdapter(logging.LoggerAdapter):
    """Adds source and endpoint to every record logged through it"""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs


def get_source_logger(logger_name: str, source: str, endpoint: str = None) -> logging.LoggerAdapter:
    """Get logger with source context"""
    context = {'source': source}
    if endpoint is not None:
        context['endpoint'] = endpoint
    return SourceContextAdapter(logging.getLogger(logger_name), context)
