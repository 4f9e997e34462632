"""Proxy-aware network transport with bounded retry and proxy rotation."""

import hashlib
import logging
import threading
import time
import urllib.parse
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import requests

from ..errors import RmmError, TransportError, TransportExhausted
from .env import EnvConfig
from .token_manager import sanitize_secrets

logger = logging.getLogger(__name__)

T = TypeVar("T")

NETWORK_ERRORS: Tuple[Type[BaseException], ...] = (requests.exceptions.RequestException, ValueError)

USER_AGENT = "rmm-cli"
CHUNK_SIZE = 64 * 1024
_AUTH_HOSTS = ("api.github.com", "github.com")


def is_retryable(exc: BaseException) -> bool:
    """Whether a failure is worth retrying (possibly through another proxy)."""
    if isinstance(exc, (requests.exceptions.ConnectionError,
                        requests.exceptions.Timeout,
                        requests.exceptions.ChunkedEncodingError)):
        return True
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        if status >= 500 or status == 429:
            return True
        if status == 403 and exc.response.headers.get("X-RateLimit-Remaining") == "0":
            return True
    return False


class ProxyManager:
    """Rotates over configured proxies, retrying each a bounded number of times.

    The current proxy index survives across calls, so a later operation starts
    from the proxy that last worked instead of a known-bad one.
    """

    def __init__(
        self,
        proxies: Optional[List[str]] = None,
        retries_per_proxy: int = 2,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._proxies = list(proxies or [])
        self.retries_per_proxy = max(1, retries_per_proxy)
        self.retry_delay = max(0.0, retry_delay)
        self._sleep = sleep
        self._idx = 0
        self._lock = threading.Lock()

    @classmethod
    def from_env_config(cls, cfg: EnvConfig, **kwargs: Any) -> "ProxyManager":
        return cls(cfg.proxies, retries_per_proxy=cfg.retries_per_proxy, retry_delay=cfg.retry_interval, **kwargs)

    @property
    def proxies(self) -> List[str]:
        return list(self._proxies)

    def __len__(self) -> int:
        return len(self._proxies)

    def is_empty(self) -> bool:
        return not self._proxies

    def current(self) -> Optional[str]:
        """The current proxy, or None for a direct connection."""
        if not self._proxies:
            return None
        with self._lock:
            return self._proxies[self._idx]

    def advance(self) -> Optional[str]:
        """Move to the next proxy (wrapping) and return it."""
        if not self._proxies:
            return None
        with self._lock:
            self._idx = (self._idx + 1) % len(self._proxies)
            return self._proxies[self._idx]

    def run_with_retry(
        self,
        operation: Callable[[Optional[str]], T],
        retries_per_proxy: Optional[int] = None,
        retry_delay: Optional[float] = None,
        description: str = "network operation",
        catch: Tuple[Type[BaseException], ...] = NETWORK_ERRORS,
        retryable: Callable[[BaseException], bool] = is_retryable,
    ) -> T:
        """Run ``operation(proxy)`` with retries and proxy rotation.

        Each proxy gets ``retries_per_proxy`` attempts with ``retry_delay``
        seconds between attempts; then the next proxy is tried, wrapping around,
        until every proxy has been tried once. Non-retryable failures abort at
        once.

        Exceptions outside ``catch`` propagate untouched; those inside it are
        classified with ``retryable``.

        Raises:
            TransportError: On a non-retryable network failure.
            TransportExhausted: When every proxy failed; keeps the last cause.
        """
        retries = max(1, retries_per_proxy if retries_per_proxy is not None else self.retries_per_proxy)
        delay = self.retry_delay if retry_delay is None else max(0.0, retry_delay)
        count = len(self._proxies)
        with self._lock:
            start = self._idx

        attempts = 0
        last_error: Optional[BaseException] = None
        for offset in range(count or 1):
            slot = (start + offset) % count if count else 0
            proxy = self._proxies[slot] if count else None
            for _ in range(retries):
                if attempts and delay:
                    self._sleep(delay)
                attempts += 1
                try:
                    result = operation(proxy)
                except RmmError:
                    raise
                except catch as exc:
                    if not retryable(exc):
                        raise TransportError(
                            f"{description} failed: {sanitize_secrets(str(exc))}",
                            cause=exc,
                            context={"proxy": proxy or "direct"},
                        ) from exc
                    last_error = exc
                    logger.debug("Attempt %d of %s via %s failed: %s",
                                 attempts, description, proxy or "direct", sanitize_secrets(str(exc)))
                    continue
                if count:
                    with self._lock:
                        self._idx = slot
                return result
            if count:
                with self._lock:
                    self._idx = (slot + 1) % count
                logger.debug("Rotating away from proxy %s", proxy)

        raise TransportExhausted(
            f"{description} failed after {attempts} attempt(s) across "
            f"{count or 1} route(s): {sanitize_secrets(str(last_error))}",
            attempts=attempts,
            last_error=last_error,
        )


def _proxy_map(proxy: Optional[str]) -> Optional[Dict[str, str]]:
    if not proxy:
        return None
    return {"http": proxy, "https": proxy}


class HttpTransport:
    """HTTP client that routes every request through a ProxyManager."""

    def __init__(
        self,
        proxy_manager: Optional[ProxyManager] = None,
        session: Optional[requests.Session] = None,
        token: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.proxy_manager = proxy_manager or ProxyManager()
        self.session = session or requests.Session()
        self.token = token
        self.timeout = timeout

    @classmethod
    def from_env_config(cls, cfg: EnvConfig, **kwargs: Any) -> "HttpTransport":
        return cls(ProxyManager.from_env_config(cfg), token=cfg.github_token_trimmed(), **kwargs)

    def _headers(self, url: str, accept: str) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": accept}
        host = urllib.parse.urlparse(url).hostname or ""
        if self.token and host in _AUTH_HOSTS:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a JSON document.

        Raises:
            TransportError: On non-retryable HTTP errors or malformed JSON.
            TransportExhausted: When all retries and proxies failed.
        """
        def _op(proxy: Optional[str]) -> Any:
            response = self.session.get(
                url,
                params=params,
                headers=self._headers(url, "application/vnd.github+json"),
                proxies=_proxy_map(proxy),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()

        return self.proxy_manager.run_with_retry(_op, description=f"GET {url}")

    def download(self, url: str, dest: Path) -> Tuple[str, int]:
        """Stream ``url`` into ``dest`` (truncated on every attempt).

        Returns:
            tuple: (sha256 hex digest, size in bytes) of the written content.
        """
        def _op(proxy: Optional[str]) -> Tuple[str, int]:
            digest = hashlib.sha256()
            size = 0
            with self.session.get(
                url,
                headers=self._headers(url, "application/octet-stream"),
                proxies=_proxy_map(proxy),
                timeout=self.timeout,
                stream=True,
            ) as response:
                response.raise_for_status()
                with open(dest, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        fh.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)
            return digest.hexdigest(), size

        return self.proxy_manager.run_with_retry(_op, description=f"download {url}")
