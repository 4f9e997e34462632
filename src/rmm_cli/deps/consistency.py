"""Drift detection between manifest, lockfile and installed modules."""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from ..core.versioning import coerce_tag, normalize_version
from ..models.dependency import DependencySpec
from ..models.lockfile import RmmLock
from .installer import installed_module_version


class FindingKind:
    MISSING_LOCK = "missing_lock"
    ORPHAN_LOCK = "orphan_lock"
    VERSION_DRIFT = "version_drift"


class NoticeKind:
    NOT_INSTALLED = "not_installed"
    INSTALL_MISSING = "install_missing"


@dataclass
class Finding:
    kind: str
    id: str
    message: str
    details: Dict[str, str] = field(default_factory=dict)


@dataclass
class ConsistencyReport:
    """Drift findings, non-fatal lifecycle notices and any repairs made."""
    findings: List[Finding] = field(default_factory=list)
    notices: List[Finding] = field(default_factory=list)
    repairs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.findings


# Commit SHAs and content hashes can look like versions to the tag coercion
_DIGEST_RE = re.compile(r"^[0-9a-f]{40}(?:[0-9a-f]{24})?$")


def _comparable(version: Optional[str]) -> bool:
    if not version or _DIGEST_RE.match(version):
        return False
    return coerce_tag(version) is not None


def check_consistency(
    project_root: Union[str, Path],
    declared: Sequence[DependencySpec],
    lock: RmmLock,
) -> ConsistencyReport:
    """Compare declarations, lock entries and installed module markers.

    Version drift is only reported for entries whose locked version is a
    semantic version; commit SHAs and content hashes have no marker to
    compare against.
    """
    report = ConsistencyReport()
    declared_ids = {spec.id: spec for spec in declared}

    for dep_id in sorted(declared_ids):
        if dep_id not in lock:
            report.findings.append(Finding(
                FindingKind.MISSING_LOCK, dep_id,
                f"{dep_id} is declared in the manifest but has no lock entry",
                {"declared": str(declared_ids[dep_id])},
            ))

    for entry in lock:
        if entry.id not in declared_ids:
            report.findings.append(Finding(
                FindingKind.ORPHAN_LOCK, entry.id,
                f"{entry.id} is locked but no longer declared in the manifest",
                {"locked": entry.resolved_version},
            ))
            continue

        if not entry.installed_path:
            report.notices.append(Finding(
                NoticeKind.NOT_INSTALLED, entry.id,
                f"{entry.id} is locked but not installed",
            ))
            continue
        if not (Path(project_root) / entry.installed_path).exists():
            report.notices.append(Finding(
                NoticeKind.INSTALL_MISSING, entry.id,
                f"{entry.id} was installed to {entry.installed_path}, which no longer exists",
            ))
            continue

        marker = installed_module_version(project_root, entry.installed_path)
        if marker and _comparable(entry.resolved_version) \
                and normalize_version(marker) != normalize_version(entry.resolved_version):
            report.findings.append(Finding(
                FindingKind.VERSION_DRIFT, entry.id,
                f"{entry.id} is locked at {entry.resolved_version} but module.prop says {marker}",
                {"locked": entry.resolved_version, "installed": marker},
            ))

    return report
