"""Dependency management for RMM projects."""

from .consistency import ConsistencyReport, Finding, FindingKind, NoticeKind
from .fetcher import ArtifactCache, fetch
from .lockfile import LockStore, read_lockfile, resolved_to_lock_entry, write_lockfile
from .manager import (
    DependencyManager,
    DependencyState,
    DependencyStatus,
    InstallReport,
    SyncReport,
)
from .manifest import load_manifest, parse_dependencies_from_manifest, save_manifest
from .resolver import ResolverSet

__all__ = [
    'ArtifactCache',
    'ConsistencyReport',
    'DependencyManager',
    'DependencyState',
    'DependencyStatus',
    'Finding',
    'FindingKind',
    'InstallReport',
    'LockStore',
    'NoticeKind',
    'ResolverSet',
    'SyncReport',
    'fetch',
    'load_manifest',
    'parse_dependencies_from_manifest',
    'read_lockfile',
    'resolved_to_lock_entry',
    'save_manifest',
    'write_lockfile',
]
