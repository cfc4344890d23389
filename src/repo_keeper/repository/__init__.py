"""
Repository management functionality.
"""

from .backend import CommitInfo, GitBackend, VCSBackend
from .cache import Cache, MemoryCache, commit_cache_key
from .manager import RepositoryManager

__all__ = [
    "Cache",
    "CommitInfo",
    "GitBackend",
    "MemoryCache",
    "RepositoryManager",
    "VCSBackend",
    "commit_cache_key",
]
