#!/usr/bin/env python3
"""
Main entry point for the web crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from webcrawler import __version__
from webcrawler.crawler.queue import SnapshotError
from webcrawler.crawler.scheduler import CrawlerScheduler
from webcrawler.crawler.url_normalizer import resolve
from webcrawler.storage.cache import Cache
from webcrawler.utils.config import Config, ConfigurationError, CrawlerConfig, load_config
from webcrawler.utils.logger import CrawlReporter, get_crawler_logger, setup_logging
from webcrawler.utils.monitoring import initialize_monitoring


def build_config(config_path: Optional[str], seed_url: Optional[str]) -> Config:
    """
    Load the YAML configuration, or defaults when there is no file, and point
    the crawl at seed_url when one is given.
    """
    if config_path and Path(config_path).exists():
        config = load_config(config_path)
    elif seed_url:
        config = Config(crawler=CrawlerConfig())
    else:
        raise ConfigurationError(f"Configuration file '{config_path}' not found and no seed URL given")

    if seed_url:
        seed = resolve(seed_url)
        if seed is None:
            raise ConfigurationError(f"Invalid seed URL: {seed_url}")
        config.crawler.host = seed.host
        config.crawler.initial_protocol = seed.protocol
        config.crawler.initial_port = seed.port
        config.crawler.initial_path = seed.path

    return config


class CrawlerApp:
    """Runs one crawl from the command line until it completes, times out or is interrupted."""

    def __init__(self, config: Config):
        self.config = config
        self.scheduler: Optional[CrawlerScheduler] = None
        self.cache: Optional[Cache] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event: Optional[asyncio.Event] = None

    def setup_signal_handlers(self):
        """Turn SIGINT/SIGTERM into a graceful shutdown."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._request_shutdown, signum)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(signum, lambda received, frame: self._request_shutdown(received))

    def _request_shutdown(self, signum):
        self.logger.info(f"Received signal {signum}, initiating shutdown...")
        self._shutdown_event.set()

    def _restore_queue(self, queue_file: Optional[str]):
        if not queue_file or not Path(queue_file).exists():
            return
        try:
            self.scheduler.queue.defrost(queue_file)
            self.logger.info(f"Resuming crawl from {queue_file}: "
                             f"{self.scheduler.queue.completed_count}/{len(self.scheduler.queue)} items fetched")
        except SnapshotError as e:
            self.logger.warning(f"Ignoring unusable queue file {queue_file}: {e}")

    def build_scheduler(self, queue_file: Optional[str] = None, report: bool = True) -> CrawlerScheduler:
        crawler_config = self.config.crawler

        self.cache = Cache.from_config(self.config.cache)
        self.scheduler = CrawlerScheduler(crawler_config, cache=self.cache)
        self._restore_queue(queue_file)

        if report:
            CrawlReporter().attach(self.scheduler)

        if self.config.monitoring.metrics_enabled:
            monitor = initialize_monitoring(True, self.config.monitoring.prometheus_port)
            monitor.attach(self.scheduler)

        return self.scheduler

    async def run(self, queue_file: Optional[str] = None, max_duration: Optional[float] = None,
                  report: bool = True) -> int:
        """Crawl, then save the queue to queue_file (if given). Returns the exit code."""
        self._shutdown_event = asyncio.Event()
        self.setup_signal_handlers()

        crawler_config = self.config.crawler
        self.logger.info(f"Crawling {crawler_config.initial_protocol}://{crawler_config.host}:"
                         f"{crawler_config.initial_port}{crawler_config.initial_path} "
                         f"(max depth {crawler_config.max_depth or 'unlimited'}, "
                         f"concurrency {crawler_config.max_concurrency}, "
                         f"interval {crawler_config.interval}s, cache {self.config.cache.type})")

        try:
            self.build_scheduler(queue_file, report)
            await self.scheduler.start()

            finished = await self._wait_for_finish(max_duration)
            if not finished:
                self.logger.info("Stopping crawler before completion...")
                await self.scheduler.stop(abort=True)

            await self.scheduler.close()

            if queue_file:
                self.scheduler.queue.freeze(queue_file)

            self._log_final_stats()

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.cache is not None:
                await self.cache.close()

        return 0

    async def _wait_for_finish(self, max_duration: Optional[float]) -> bool:
        """Wait for completion, a shutdown signal or the time limit. True if the crawl completed."""
        done_task = asyncio.create_task(self.scheduler.join())
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())

        done, pending = await asyncio.wait(
            [done_task, shutdown_task],
            timeout=max_duration,
            return_when=asyncio.FIRST_COMPLETED
        )

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        return done_task in done

    def _log_final_stats(self):
        stats_logger = get_crawler_logger(__name__, host=self.config.crawler.host)
        for name, value in self.scheduler.get_stats().items():
            stats_logger.log_crawler_stat(name, value)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Polite single-host web crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                 # Crawl the host in config.yaml
  python main.py http://localhost:8080/          # Quick crawl with default settings
  python main.py --config my_config.yaml         # Run with custom config
  python main.py --queue-file queue.json         # Resume from and save to queue.json
  python main.py --max-duration 3600             # Run for 1 hour max
        """
    )

    parser.add_argument(
        'url',
        nargs='?',
        help='Seed URL; overrides the host and initial path of the configuration'
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--queue-file',
        help='Queue snapshot to resume from and to write on shutdown'
    )

    parser.add_argument(
        '--max-duration',
        type=float,
        help='Maximum crawl duration in seconds'
    )

    parser.add_argument(
        '--json-logs',
        action='store_true',
        help='Emit logs as JSON'
    )

    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Do not log every crawler event'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'webcrawler {__version__}'
    )

    args = parser.parse_args()

    try:
        config = build_config(args.config, args.url)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.logging, enable_json=args.json_logs)

    app = CrawlerApp(config)
    return asyncio.run(app.run(
        queue_file=args.queue_file,
        max_duration=args.max_duration,
        report=not args.quiet
    ))


if __name__ == '__main__':
    sys.exit(main())
