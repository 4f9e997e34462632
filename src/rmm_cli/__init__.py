"""RMM CLI: resolve, lock and install module dependencies."""

from .version import get_version

__version__ = get_version()
