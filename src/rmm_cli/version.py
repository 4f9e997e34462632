"""Version lookup for RMM CLI."""

import re
from importlib import metadata
from pathlib import Path

DISTRIBUTION = "rmm-cli"


def get_version() -> str:
    """Return the installed distribution version, else the one in pyproject.toml.

    Returns:
        str: Version string, or "unknown".
    """
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        pass

    # Source checkout that was never installed
    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        content = pyproject_path.read_text(encoding="utf-8")
        match = re.search(r'^version\s*=\s*["\']([^"\']+)["\']', content, re.MULTILINE)
        if match:
            return match.group(1)
    return "unknown"


__version__ = get_version()
