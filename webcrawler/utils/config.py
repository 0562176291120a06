"""
Configuration management for the web crawler system.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional, Union
from dataclasses import dataclass, field, fields


DEFAULT_USER_AGENT = "Python/webcrawler 1.0.0"


class ConfigurationError(ValueError):
    """Raised when the crawler configuration is invalid."""


@dataclass
class ProxyConfig:
    """Configuration for an outbound HTTP proxy."""
    enabled: bool = False
    hostname: str = "127.0.0.1"
    port: int = 8123
    user: Optional[str] = None
    password: Optional[str] = None


@dataclass
class AuthConfig:
    """Configuration for HTTP basic auth."""
    enabled: bool = False
    user: str = ""
    password: str = ""


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    host: str = ""
    initial_path: str = "/"
    initial_port: int = 80
    initial_protocol: str = "http"

    interval: float = 0.25
    max_concurrency: int = 5
    timeout: float = 300.0
    listener_ttl: float = 10.0

    user_agent: str = DEFAULT_USER_AGENT
    custom_headers: Dict[str, str] = field(default_factory=dict)
    accept_cookies: bool = True
    decompress_responses: bool = True
    decode_responses: bool = False

    respect_robots_txt: bool = True
    allow_initial_domain_change: bool = False
    filter_by_domain: bool = True
    scan_subdomains: bool = False
    ignore_www_domain: bool = True
    strip_www_domain: bool = False
    domain_whitelist: List[str] = field(default_factory=list)

    strip_querystring: bool = False
    sort_query_parameters: bool = False

    max_resource_size: int = 1024 * 1024 * 16
    allowed_protocols: List[str] = field(default_factory=lambda: [
        r"^https?$",
        r"^(rss|atom|feed)(\+xml)?$",
    ])
    supported_mime_types: List[str] = field(default_factory=lambda: [
        r"^text/",
        r"^application/(rss|html|xhtml)?[+/-]?xml",
        r"^application/javascript",
        r"^xml",
    ])
    download_unsupported: bool = True

    discover_resources: bool = True
    parse_html_comments: bool = True
    parse_script_tags: bool = True

    max_depth: int = 0
    whitelisted_mime_types: List[str] = field(default_factory=lambda: [
        r"^text/(css|javascript|ecmascript)",
        r"^application/javascript",
        r"^application/x-font",
        r"^application/font",
        r"^image/",
        r"^font/",
    ])
    fetch_whitelisted_mime_types_below_max_depth: Union[bool, int] = False

    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlerConfig':
        """Build a CrawlerConfig from a plain mapping, e.g. a YAML section."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown crawler options: {', '.join(sorted(unknown))}")

        data['proxy'] = ProxyConfig(**(data.get('proxy') or {}))
        data['auth'] = AuthConfig(**(data.get('auth') or {}))
        return cls(**data)


@dataclass
class CacheConfig:
    """Configuration for the response cache."""
    type: str = "none"
    location: str = "cache"
    redis: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    max_bytes: int = 50 * 1024 * 1024
    backup_count: int = 5


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


def validate_crawler_config(config: CrawlerConfig):
    """Validate the values the scheduler depends on. Raises ConfigurationError."""
    if not config.host or not str(config.host).strip():
        raise ConfigurationError("A seed host must be provided")

    try:
        port = int(config.initial_port)
    except (TypeError, ValueError):
        raise ConfigurationError("Port must be a number!") from None
    if not 0 < port < 65536:
        raise ConfigurationError(f"Port out of range: {port}")
    config.initial_port = port

    if config.max_concurrency < 1:
        raise ConfigurationError("max_concurrency must be at least 1")

    if config.interval < 0:
        raise ConfigurationError("interval must be non-negative")

    if config.max_depth < 0:
        raise ConfigurationError("max_depth must be non-negative (0 means unlimited)")

    if config.max_resource_size < 1:
        raise ConfigurationError("max_resource_size must be positive")


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file) or {}

        if 'crawler' not in config_data:
            raise ConfigurationError("Configuration is missing the 'crawler' section")

        # Parse configuration sections
        try:
            crawler_config = CrawlerConfig.from_dict(config_data['crawler'])
            cache_config = CacheConfig(**(config_data.get('cache') or {}))
            logging_config = LoggingConfig(**(config_data.get('logging') or {}))
            monitoring_config = MonitoringConfig(**(config_data.get('monitoring') or {}))
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        self._config = Config(
            crawler=crawler_config,
            cache=cache_config,
            logging=logging_config,
            monitoring=monitoring_config
        )

        self._validate_config()
        return self._config

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ConfigurationError("Configuration not loaded")

        validate_crawler_config(self._config.crawler)

        # Validate cache type
        if self._config.cache.type not in ['none', 'file', 'redis']:
            raise ConfigurationError("Cache type must be 'none', 'file' or 'redis'")

        logging.getLogger(__name__).info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self._config


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
