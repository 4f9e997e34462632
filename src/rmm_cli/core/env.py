"""Environment configuration: GitHub token, proxy list and retry settings."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional, Union

from dotenv import load_dotenv

from .token_manager import GitHubTokenManager

logger = logging.getLogger(__name__)

DEFAULT_RETRIES_PER_PROXY = 2
DEFAULT_RETRY_INTERVAL = 1.0
DEFAULT_WORKERS = 4
DEFAULT_CACHE_DIR = Path("~/.rmm/cache")


def _parse_proxies(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(";") if item.strip()]


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default


def _env_float(env: Mapping[str, str], name: str, default: float, minimum: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default


@dataclass
class EnvConfig:
    """Parsed environment configuration.

    No token and no proxies means direct, unauthenticated network access.
    """
    github_token: Optional[str] = None
    proxies: List[str] = field(default_factory=list)
    retries_per_proxy: int = DEFAULT_RETRIES_PER_PROXY
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    cache_dir: Path = DEFAULT_CACHE_DIR
    workers: int = DEFAULT_WORKERS

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EnvConfig":
        """Construct an EnvConfig by reading the process environment."""
        if env is None:
            env = os.environ
        cache_dir = (env.get("RMM_CACHE_DIR") or "").strip()
        return cls(
            github_token=GitHubTokenManager().get_token_for_purpose("releases", env),
            proxies=_parse_proxies(env.get("GITHUB_PROXY")),
            retries_per_proxy=_env_int(env, "RMM_RETRIES_PER_PROXY", DEFAULT_RETRIES_PER_PROXY, 1),
            retry_interval=_env_float(env, "RMM_RETRY_INTERVAL", DEFAULT_RETRY_INTERVAL, 0.0),
            cache_dir=Path(cache_dir).expanduser() if cache_dir else DEFAULT_CACHE_DIR.expanduser(),
            workers=_env_int(env, "RMM_WORKERS", DEFAULT_WORKERS, 1),
        )

    def github_token_trimmed(self) -> Optional[str]:
        if self.github_token is None:
            return None
        return self.github_token.strip() or None


def init_from_dotenv(path: Optional[Union[str, Path]] = None) -> bool:
    """Load a ``.env`` file into the process environment if one exists.

    Existing variables are never overridden. A missing file is not an error.

    Returns:
        bool: True if a file was found and loaded.
    """
    dotenv_path = Path(path) if path is not None else Path.cwd() / ".env"
    if not dotenv_path.is_file():
        return False
    return load_dotenv(dotenv_path=dotenv_path, override=False)


def load_config(dotenv_path: Optional[Union[str, Path]] = None) -> EnvConfig:
    """Load ``.env`` (when present) and return the resulting EnvConfig."""
    init_from_dotenv(dotenv_path)
    return EnvConfig.from_env()
