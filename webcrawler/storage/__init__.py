"""
Storage layer for the web crawler.
"""

from .cache import Cache, CacheObject, CacheBackend, FilesystemBackend, RedisBackend

__all__ = ['Cache', 'CacheObject', 'CacheBackend', 'FilesystemBackend', 'RedisBackend']
