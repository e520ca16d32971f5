from __future__ import annotations

"""HTTP fetching with bounded timeouts, retry-on-timeout and throttling."""

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from stock_harvest.errors import FetchTimeoutError, FetchUnreachableError

from .sources import SourceDescriptor

logger = logging.getLogger(__name__)


_HTTP_ENV = {
    "timeout_seconds": "HARVEST_HTTP_TIMEOUT_SECONDS",
    "max_retries": "HARVEST_HTTP_MAX_RETRIES",
    "backoff_seconds": "HARVEST_HTTP_BACKOFF_SECONDS",
    "throttle_seconds": "HARVEST_HTTP_THROTTLE_SECONDS",
}


@dataclass(frozen=True)
class HttpSettings:
    timeout_seconds: float = 15.0
    max_retries: int = 2
    backoff_seconds: float = 1.0
    throttle_seconds: float = 0.5

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "HttpSettings":
        """Resolve each setting env -> ``config["http"]`` -> default, read at call time."""
        http_cfg = (config or {}).get("http") or {}
        base = cls()

        def pick(key: str, cast: Callable[[Any], Any]) -> Any:
            env_value = os.getenv(_HTTP_ENV[key], "").strip()
            raw = env_value if env_value else http_cfg.get(key, getattr(base, key))
            try:
                return cast(raw)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid http.{key}={raw!r}.") from exc

        settings = cls(
            timeout_seconds=pick("timeout_seconds", float),
            max_retries=pick("max_retries", int),
            backoff_seconds=pick("backoff_seconds", float),
            throttle_seconds=pick("throttle_seconds", float),
        )
        if settings.timeout_seconds <= 0:
            raise ValueError(f"Invalid http.timeout_seconds={settings.timeout_seconds}. Expected > 0.")
        if settings.max_retries < 0:
            raise ValueError(f"Invalid http.max_retries={settings.max_retries}. Expected >= 0.")
        if settings.backoff_seconds < 0 or settings.throttle_seconds < 0:
            raise ValueError("Invalid http backoff/throttle seconds. Expected >= 0.")
        return settings


class HttpFetcher:
    """Fetch raw response bytes for a source descriptor.

    Timeouts are retried ``max_retries`` times with exponential backoff.
    Connection failures and non-success status codes are not retried: the
    source is treated as unreachable for this run.
    """

    def __init__(
        self,
        settings: Optional[HttpSettings] = None,
        get: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or HttpSettings()
        self._get = get or requests.get
        self._sleep = sleep
        self._throttle_lock = threading.Lock()
        self._last_request = 0.0

    def _throttle(self) -> None:
        # Shared across worker threads: spaces out requests to the scraped hosts.
        if self.settings.throttle_seconds <= 0:
            return
        with self._throttle_lock:
            wait = self._last_request + self.settings.throttle_seconds - time.monotonic()
            if wait > 0:
                self._sleep(wait)
            self._last_request = time.monotonic()

    def fetch(self, descriptor: SourceDescriptor, code: str, run_date: str) -> bytes:
        url = descriptor.url_for(code, run_date)
        attempts = self.settings.max_retries + 1
        for attempt in range(attempts):
            self._throttle()
            try:
                response = self._get(
                    url,
                    headers=dict(descriptor.headers),
                    timeout=(5, self.settings.timeout_seconds),
                )
                response.raise_for_status()
                return response.content
            except requests.Timeout as exc:
                if attempt < attempts - 1:
                    delay = self.settings.backoff_seconds * (2**attempt)
                    logger.warning(
                        "fetch_retry source=%s code=%s attempt=%s delay_s=%.1f reason=%r",
                        descriptor.name,
                        code,
                        attempt + 1,
                        delay,
                        exc,
                    )
                    self._sleep(delay)
                    continue
                raise FetchTimeoutError(
                    f"{descriptor.name} timed out for {code} after {attempts} attempts: {exc}",
                    source=descriptor.name,
                ) from exc
            except requests.HTTPError as exc:
                status = getattr(exc.response, "status_code", None)
                raise FetchUnreachableError(
                    f"{descriptor.name} returned status={status} for {code}",
                    source=descriptor.name,
                    status_code=status,
                ) from exc
            except requests.RequestException as exc:
                raise FetchUnreachableError(
                    f"{descriptor.name} request failed for {code}: {exc}",
                    source=descriptor.name,
                ) from exc

        raise FetchTimeoutError(f"{descriptor.name} exhausted retries for {code}", source=descriptor.name)
