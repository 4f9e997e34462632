"""Version constraint parsing and release tag selection.

Constraints use npm range syntax (``^1.2.0``, ``~1.2``, ``>=1.0.0 <2.0.0``,
``1.x``, ``1.2.3``). ``latest``, ``*`` or no constraint at all select the
highest available version. Release tags are coerced into semantic versions
(``v1.2`` becomes ``1.2.0``); tags that are not versions are ignored.
"""

import re
from typing import Iterable, List, Optional, Tuple

from semantic_version import NpmSpec, Version

LATEST_ALIASES = ("", "latest", "*", "x")

_V_PREFIX = re.compile(r"(?<![\w.])[vV](?=\d)")


def is_latest(constraint: Optional[str]) -> bool:
    """Check whether a constraint means "highest available version"."""
    return constraint is None or constraint.strip().lower() in LATEST_ALIASES


def parse_constraint(constraint: Optional[str]) -> Optional[NpmSpec]:
    """Parse a constraint expression.

    Returns:
        NpmSpec, or None when the constraint means "latest".

    Raises:
        ValueError: If the expression is not a valid range.
    """
    if is_latest(constraint):
        return None
    expression = _V_PREFIX.sub("", constraint.strip())
    try:
        return NpmSpec(expression)
    except ValueError as e:
        raise ValueError(f"Invalid version constraint '{constraint}': {e}")


def coerce_tag(tag: str) -> Optional[Version]:
    """Turn a release tag into a Version, or None when it is not a version."""
    if not tag:
        return None
    text = tag.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    if not text or not text[0].isdigit():
        return None
    try:
        return Version(text)
    except ValueError:
        pass
    try:
        return Version.coerce(text)
    except ValueError:
        return None


def _release_triple(version: Version) -> Version:
    return Version(major=version.major, minor=version.minor, patch=version.patch)


# Stands in for "any component" when stepping below a release triple
_UNBOUNDED = 10 ** 9


def _release_below(version: Version) -> Optional[Version]:
    """Highest plausible release strictly below the release triple of ``version``."""
    if version.patch:
        return Version(major=version.major, minor=version.minor, patch=version.patch - 1)
    if version.minor:
        return Version(major=version.major, minor=version.minor - 1, patch=_UNBOUNDED)
    if version.major:
        return Version(major=version.major - 1, minor=_UNBOUNDED, patch=_UNBOUNDED)
    return None


def _prerelease_in_range(spec: NpmSpec, version: Version) -> bool:
    """A prerelease qualifies when its triple is in range and it sits above the lower bound.

    ``1.3.0-beta.1`` satisfies ``^1.2.0``; ``1.2.0-beta.1`` does not, since it
    precedes ``1.2.0``.
    """
    if not spec.match(_release_triple(version)):
        return False
    below = _release_below(version)
    return below is not None and spec.match(below)


def matching_versions(
    tags: Iterable[str],
    constraint: Optional[str],
    allow_prerelease: bool = False,
    prerelease_tags: Iterable[str] = (),
) -> List[Tuple[Version, str]]:
    """Return (version, tag) pairs satisfying ``constraint``, highest first.

    Args:
        tags: Available release tags.
        constraint: Constraint expression, None/"latest" for any version.
        allow_prerelease: Whether prerelease versions may be selected.
        prerelease_tags: Tags the host flags as prerelease even without a
            semver prerelease identifier.
    """
    spec = parse_constraint(constraint)
    flagged = set(prerelease_tags)
    seen = {}
    for tag in tags:
        version = coerce_tag(tag)
        if version is None:
            continue
        is_pre = bool(version.prerelease) or tag in flagged
        if is_pre and not allow_prerelease:
            continue
        if spec is not None and not spec.match(version):
            if not (allow_prerelease and version.prerelease and _prerelease_in_range(spec, version)):
                continue
        # First tag wins for duplicates like "1.0.0" and "v1.0.0"
        seen.setdefault(version, tag)
    return sorted(seen.items(), key=lambda item: item[0], reverse=True)


def best_match(
    tags: Iterable[str],
    constraint: Optional[str],
    allow_prerelease: bool = False,
    prerelease_tags: Iterable[str] = (),
) -> Optional[str]:
    """Return the tag of the highest version satisfying ``constraint``."""
    matches = matching_versions(tags, constraint, allow_prerelease, prerelease_tags)
    if not matches:
        return None
    return matches[0][1]


def normalize_version(text: Optional[str]) -> str:
    """Normalize a version string for equality checks (strips a leading 'v')."""
    if not text:
        return ""
    text = text.strip()
    version = coerce_tag(text)
    if version is not None:
        return str(version)
    return text
