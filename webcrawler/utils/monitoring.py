"""
Monitoring and metrics collection for the web crawler.
"""

import time
import logging
from typing import Dict, Optional, Any, List
from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
from prometheus_client import start_http_server


@dataclass
class MetricPoint:
    """Individual metric data point."""
    timestamp: float
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class Metric:
    """Metric container with history."""
    name: str
    description: str
    metric_type: str  # counter, gauge, histogram
    points: List[MetricPoint] = field(default_factory=list)
    current_value: float = 0.0


class MetricsCollector:
    """Collects crawler metrics in memory and mirrors them to Prometheus."""

    def __init__(self, prometheus_port: int = 8000, registry: Optional[CollectorRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.metrics: Dict[str, Metric] = {}
        self.prometheus_port = prometheus_port
        self.prometheus_registry = registry or CollectorRegistry()

        self.prometheus_metrics = {
            'urls_queued_total': Counter(
                'crawler_urls_queued_total',
                'Total number of URLs added to the queue',
                registry=self.prometheus_registry
            ),
            'urls_fetched_total': Counter(
                'crawler_urls_fetched_total',
                'Total number of queue items that reached a terminal status',
                ['status'],
                registry=self.prometheus_registry
            ),
            'errors_total': Counter(
                'crawler_errors_total',
                'Total number of crawl errors',
                ['error_type'],
                registry=self.prometheus_registry
            ),
            'duplicates_skipped_total': Counter(
                'crawler_duplicates_skipped_total',
                'Total number of duplicate URLs skipped',
                registry=self.prometheus_registry
            ),
            'response_time_seconds': Histogram(
                'crawler_response_time_seconds',
                'Time from request to complete body',
                registry=self.prometheus_registry
            ),
            'queue_size': Gauge(
                'crawler_queue_size',
                'Number of items in the queue',
                registry=self.prometheus_registry
            ),
            'open_requests': Gauge(
                'crawler_open_requests',
                'Number of requests in flight',
                registry=self.prometheus_registry
            ),
            'bytes_downloaded_total': Counter(
                'crawler_bytes_downloaded_total',
                'Total bytes downloaded',
                registry=self.prometheus_registry
            )
        }

    def start_prometheus_server(self):
        """Start the Prometheus metrics HTTP server."""
        try:
            start_http_server(self.prometheus_port, registry=self.prometheus_registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def record_metric(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                      description: str = "", metric_type: str = "gauge", increment: float = 0.0):
        """Record a metric value."""
        labels = labels or {}

        # Store in internal metrics
        if name not in self.metrics:
            self.metrics[name] = Metric(
                name=name,
                description=description,
                metric_type=metric_type
            )

        metric = self.metrics[name]
        metric.points.append(MetricPoint(timestamp=time.time(), value=value, labels=labels))
        metric.current_value = value

        # Keep only recent points (last 1000)
        if len(metric.points) > 1000:
            metric.points = metric.points[-1000:]

        prom_metric = self.prometheus_metrics.get(name)
        if prom_metric is None:
            return
        if labels:
            prom_metric = prom_metric.labels(**labels)

        if metric_type == "counter":
            prom_metric.inc(increment)
        elif metric_type == "histogram":
            prom_metric.observe(value)
        else:
            prom_metric.set(value)

    def increment_counter(self, name: str, labels: Optional[Dict[str, str]] = None,
                          description: str = "", amount: float = 1):
        """Increment a counter metric."""
        current_value = 0
        if name in self.metrics:
            current_value = self.metrics[name].current_value

        self.record_metric(name, current_value + amount, labels, description, "counter", amount)

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  description: str = ""):
        """Set a gauge metric value."""
        self.record_metric(name, value, labels, description, "gauge")

    def observe_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                          description: str = ""):
        """Record a histogram observation."""
        self.record_metric(name, value, labels, description, "histogram")

    def get_metric(self, name: str) -> Optional[Metric]:
        """Get a metric by name."""
        return self.metrics.get(name)

    def get_current_values(self) -> Dict[str, float]:
        """Get current values of all metrics."""
        return {name: metric.current_value for name, metric in self.metrics.items()}

    def export_text(self) -> bytes:
        """Prometheus exposition format of the registry."""
        return generate_latest(self.prometheus_registry)


class CrawlerMonitor:
    """Feeds crawler signals into the metrics collector."""

    TERMINAL_SIGNALS = {
        'fetchcomplete': 'downloaded',
        'downloadprevented': 'downloadprevented',
        'notmodified': 'notmodified',
        'fetchredirect': 'redirected',
        'fetch404': 'notfound',
        'fetcherror': 'failed',
        'fetchclienterror': 'failed',
        'fetchtimeout': 'timeout',
        'fetchdisallowed': 'disallowed',
    }

    ERROR_SIGNALS = (
        'queueerror',
        'fetchdataerror',
        'fetcherror',
        'fetchclienterror',
        'fetchtimeout',
        'robotstxterror',
        'gziperror',
        'downloadconditionerror',
        'fetchconditionerror',
    )

    def __init__(self, metrics_collector: MetricsCollector):
        self.metrics = metrics_collector
        self.logger = logging.getLogger(__name__)
        self.start_time = time.time()
        self.scheduler = None

    def attach(self, scheduler):
        """Subscribe to a scheduler's signals."""
        self.scheduler = scheduler

        for signal, status in self.TERMINAL_SIGNALS.items():
            scheduler.on(signal, self._terminal_listener(status))
        for signal in self.ERROR_SIGNALS:
            scheduler.on(signal, self._error_listener(signal))

        scheduler.on('queueadd', lambda item, referrer: self.record_url_queued())
        scheduler.on('queueduplicate', lambda item: self.record_duplicate_skipped())
        scheduler.on('fetchcomplete', lambda item, body, response: self.record_download(item))
        scheduler.on('fetchstart', lambda item, request: self.update_crawler_gauges())
        scheduler.on('complete', self.update_crawler_gauges)

        self.logger.debug("Crawler monitor attached")
        return self

    def _terminal_listener(self, status: str):
        def listener(*args):
            self.metrics.increment_counter('urls_fetched_total', {'status': status}, 'Items fetched')
        return listener

    def _error_listener(self, error_type: str):
        def listener(*args):
            self.record_error(error_type)
        return listener

    def record_url_queued(self):
        self.metrics.increment_counter('urls_queued_total', description='URLs queued')

    def record_download(self, item):
        """Record timing and size of a downloaded item."""
        state = item.state_data
        if state.request_time is not None:
            self.metrics.observe_histogram('response_time_seconds', state.request_time / 1000,
                                           description='Response time')
        if state.actual_data_size:
            self.metrics.increment_counter('bytes_downloaded_total', description='Bytes downloaded',
                                           amount=state.actual_data_size)

    def record_error(self, error_type: str):
        """Record an error event."""
        self.metrics.increment_counter('errors_total', {'error_type': error_type}, 'Crawl errors')

    def record_duplicate_skipped(self):
        self.metrics.increment_counter('duplicates_skipped_total', description='Duplicate URLs skipped')

    def update_crawler_gauges(self):
        if self.scheduler is None:
            return
        self.metrics.set_gauge('queue_size', len(self.scheduler.queue), description='Items in queue')
        self.metrics.set_gauge('open_requests', self.scheduler.open_requests, description='Requests in flight')

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        current_values = self.metrics.get_current_values()
        runtime = time.time() - self.start_time

        return {
            'runtime_seconds': runtime,
            'metrics': current_values,
            'rates': {
                'urls_per_second': current_values.get('urls_fetched_total', 0) / runtime if runtime > 0 else 0,
            }
        }


def initialize_monitoring(enable_prometheus: bool = False, prometheus_port: int = 8000) -> CrawlerMonitor:
    """Create a monitor, starting the Prometheus exporter when enabled."""
    metrics_collector = MetricsCollector(prometheus_port)
    if enable_prometheus:
        metrics_collector.start_prometheus_server()
    return CrawlerMonitor(metrics_collector)
