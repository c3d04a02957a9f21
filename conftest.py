"""
Root pytest configuration.

Settings are cached with lru_cache; clear the cache before any test imports so
environment overrides made for the test run are picked up.
"""

from chatsync.config import get_settings

get_settings.cache_clear()
