"""agentaudit cache package.

Content-hash keyed persistence of per-component analysis results and
extracted references, used by incremental and watch runs.
"""

from .run_cache import CacheDiff, CacheEntry, CacheIndex, RunCache, read_revision

__all__ = [
    "RunCache",
    "CacheIndex",
    "CacheEntry",
    "CacheDiff",
    "read_revision",
]
