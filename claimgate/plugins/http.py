"""
Outbound HTTP for plugins — bounded timeout, retry with exponential backoff.

Only transport failures (connect errors, timeouts, protocol errors) are
retried. A response with an error status is final: it fails the plugin and
is never re-sent. Nothing above this layer retries.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from claimgate.errors import ExternalDependencyError

logger = logging.getLogger(__name__)


class OutboundHttp:
    """Thin synchronous wrapper around one httpx.Client."""

    def __init__(self, timeout: float = 10.0, max_retries: int = 2,
                 backoff_base: float = 0.25,
                 transport: Optional[httpx.BaseTransport] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._sleep = sleep
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def request(self, method: str, url: str, *,
                params: Optional[Dict[str, Any]] = None,
                json: Any = None,
                headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        """Send one request, retrying transport errors only.

        Raises:
            ExternalDependencyError: on a non-2xx status, or when every
                attempt failed at the transport level.
        """
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                resp = self._client.request(method, url, params=params,
                                            json=json, headers=headers)
                resp.raise_for_status()
                return resp
            except httpx.HTTPStatusError as exc:
                logger.warning("[API] %s %s -> HTTP %d", method, url,
                               exc.response.status_code)
                raise ExternalDependencyError(
                    f"Request failed with status code {exc.response.status_code}") from exc
            except httpx.TransportError as exc:
                if attempt == attempts:
                    logger.warning("[API] %s %s failed after %d attempts: %s",
                                   method, url, attempts, exc)
                    raise ExternalDependencyError(str(exc) or type(exc).__name__) from exc
                backoff = self._backoff_base * (2 ** (attempt - 1))
                logger.info("[API] %s %s attempt %d/%d failed: %s. Backoff %.2fs",
                            method, url, attempt, attempts, exc, backoff)
                self._sleep(backoff)

    def get_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        resp = self.request("GET", url, headers=headers)
        try:
            return resp.json()
        except ValueError as exc:
            raise ExternalDependencyError(f"Invalid JSON from {url}") from exc
