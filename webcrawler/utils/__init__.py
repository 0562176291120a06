"""
Utility modules for the web crawler.
"""

from .config import Config, ConfigManager, CrawlerConfig, ConfigurationError, load_config, get_config

__all__ = ['Config', 'ConfigManager', 'CrawlerConfig', 'ConfigurationError', 'load_config', 'get_config']
