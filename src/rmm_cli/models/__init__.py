"""Models for RMM dependency data structures."""

from .dependency import (
    DependencySpec,
    ResolvedDependency,
    SourceType,
    classify_source,
    normalize_github_repo,
)
from .lockfile import LOCK_VERSION, DependencyLockEntry, RmmLock

__all__ = [
    "DependencySpec",
    "ResolvedDependency",
    "SourceType",
    "classify_source",
    "normalize_github_repo",
    "LOCK_VERSION",
    "DependencyLockEntry",
    "RmmLock",
]
