"""
Logging for the crawler: handler setup, a JSON formatter for log shipping,
an adapter that tags records with the queue item they concern, and a
reporter that turns crawler signals into log lines.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .config import LoggingConfig


# Fields copied from queue items onto log records
ITEM_FIELDS = ('id', 'url', 'depth', 'status')


class JSONFormatter(logging.Formatter):
    """One JSON object per record, including anything passed through extra=."""

    # Attributes every LogRecord carries; anything else came in through extra=
    _RESERVED = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        for key, value in vars(record).items():
            if key not in self._RESERVED and key not in entry:
                entry[key] = value

        return json.dumps(entry, ensure_ascii=False, default=str)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """
    Adapter that merges fixed context (host, component) into every record.

    log_url_event() accepts either a URL or a queue item; for an item the
    record also carries item_id, depth and status.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs

    def log_url_event(self, level: int, target, message: str, **kwargs):
        """Log an event about one URL or queue item."""
        extra = dict(kwargs.pop('extra', {}))
        extra['event_type'] = 'url_event'
        if isinstance(target, str):
            extra['url'] = target
        else:
            for name in ITEM_FIELDS:
                value = getattr(target, name, None)
                key = 'item_id' if name == 'id' else name
                extra[key] = str(value) if name == 'status' and value is not None else value
        self.log(level, message, extra=extra, **kwargs)

    def log_crawler_stat(self, stat_name: str, value: Any, **kwargs):
        """Log one crawl statistic as a structured record."""
        extra = dict(kwargs.pop('extra', {}))
        extra.update({'stat_name': stat_name, 'stat_value': value, 'event_type': 'crawler_stat'})
        self.info(f"Stat: {stat_name} = {value}", extra=extra, **kwargs)


class PerformanceFilter(logging.Filter):
    """Keeps transport chatter and per-URL debug events off the console."""

    def __init__(self, suppress_modules: Optional[list] = None):
        super().__init__()
        self.suppress_modules = suppress_modules or ['aiohttp.access', 'aiohttp.client']

    def filter(self, record: logging.LogRecord) -> bool:
        if any(record.name.startswith(module) for module in self.suppress_modules):
            return False
        return not (record.levelno == logging.DEBUG and getattr(record, 'event_type', None) == 'url_event')


class CrawlReporter:
    """
    Logs crawler signals with the item URL, its status code and crawl progress.

    Signals that fire for nearly every URL are logged at DEBUG.
    """

    QUIET_SIGNALS = ('queueduplicate', 'fetchstart', 'fetchheaders', 'discoverycomplete')

    PROGRESS_SIGNALS = ('fetchcomplete', 'fetch404', 'fetchtimeout', 'fetcherror',
                        'fetchclienterror', 'fetchredirect', 'notmodified')

    def __init__(self, logger: Optional[CrawlerLogAdapter] = None):
        self.logger = logger or get_crawler_logger(__name__, component='reporter')
        self.resources_done = 0
        self.queue_length = 0

    def attach(self, scheduler, signals=None):
        """Subscribe to every signal of a scheduler (or the given subset)."""
        from ..crawler.scheduler import SIGNALS

        self.queue_length = len(scheduler.queue)
        for signal in signals or SIGNALS:
            scheduler.on(signal, self._listener(signal))
        return self

    def _listener(self, signal: str):
        def listener(*args):
            self.report(signal, args[0] if args else None)
        return listener

    def report(self, signal: str, subject=None):
        if signal in self.PROGRESS_SIGNALS:
            self.resources_done += 1
        elif signal == 'queueadd':
            self.queue_length += 1

        level = logging.DEBUG if signal in self.QUIET_SIGNALS else logging.INFO
        if subject is not None and hasattr(subject, 'url'):
            code = subject.state_data.code if subject.state_data.code is not None else '-'
            self.logger.log_url_event(
                level, subject,
                f"{signal:<22} [{code}] {subject.url} ({self.resources_done}/{self.queue_length})"
            )
        elif isinstance(subject, BaseException):
            self.logger.log(level, f"{signal:<22} {subject}")
        else:
            self.logger.log(level, f"{signal:<22} ({self.resources_done}/{self.queue_length})")


def setup_logging(config: Optional[LoggingConfig] = None,
                  enable_json: bool = False,
                  enable_performance_filtering: bool = True) -> logging.Logger:
    """
    Configure the root logger for a crawl.

    Args:
        config: Logging section of the configuration
        enable_json: Emit JSON records instead of plain text
        enable_performance_filtering: Filter noisy records from the console

    Returns:
        Configured root logger
    """
    config = config or LoggingConfig()

    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper()))
    root_logger.handlers.clear()

    formatter = JSONFormatter() if enable_json else logging.Formatter(config.format)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    if enable_performance_filtering:
        console_handler.addFilter(PerformanceFilter())
    root_logger.addHandler(console_handler)

    # Full record of the crawl, including per-URL debug events
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    error_handler = logging.handlers.RotatingFileHandler(
        log_file.parent / 'errors.log',
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=3,
        encoding='utf-8'
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    root_logger.addHandler(error_handler)

    for logger_name in ('aiohttp', 'redis', 'asyncio'):
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    root_logger.info(f"Logging to {log_file} at level {config.level} (JSON: {enable_json})")
    return root_logger


def get_crawler_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """Logger for `name` whose records all carry the given context fields."""
    return CrawlerLogAdapter(logging.getLogger(name), extra_context)
