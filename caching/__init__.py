"""
Caching Package.

Response caching for non-streaming chat requests.
"""

from .response_cache import ResponseCache, CacheEntry, COMMON_PATTERNS

__all__ = [
    "ResponseCache",
    "CacheEntry",
    "COMMON_PATTERNS",
]
