"""HTTP client for applications integrating with the provisioned service."""
from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple, TypeVar

import requests

from provisioner.client.resilience import CircuitBreaker, retry_with_backoff
from provisioner.common.logging import json_log
from provisioner.core.config import Settings, get_settings
from provisioner.core.models.status import HealthStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class TransientServiceError(Exception):
    """A 5xx response or transport failure worth retrying."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResponseCache:
    """Time-to-live cache for idempotent GET responses."""

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def _purge_expired(self, now: float) -> None:
        for key, (expires_at, _) in list(self._entries.items()):
            if now >= expires_at:
                self._entries.pop(key, None)

    def get(self, key: str) -> Any | None:
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            entry = self._entries.get(key)
            return None if entry is None else entry[1]

    def put(self, key: str, value: Any) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self._ttl, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._entries)


class ServiceClient:
    """Call the service API with retries, a circuit breaker and a GET cache."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        settings: Settings | None = None,
        session: requests.Session | None = None,
        breaker: CircuitBreaker | None = None,
        cache: ResponseCache | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self.base_url = (base_url or f"http://{self._settings.health_host}:{self._settings.service_port}").rstrip("/")
        self._session = session or requests.Session()
        if api_key:
            self._session.headers["X-API-Key"] = api_key
        self.breaker = breaker or CircuitBreaker(
            self._settings.breaker_failure_threshold,
            self._settings.breaker_reset_timeout_s,
            name=self.base_url,
        )
        self.cache = cache or ResponseCache(self._settings.client_cache_ttl_s)
        self._sleep = sleep

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            response = self._session.request(
                method,
                self._url(path),
                timeout=self._settings.client_timeout_s,
                **kwargs,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientServiceError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 500:
            raise TransientServiceError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Send a request through the breaker, retrying transient failures."""

        response = retry_with_backoff(
            lambda: self.breaker.call(lambda: self._send(method, path, **kwargs)),
            attempts=self._settings.client_max_retries,
            delay=self._settings.client_backoff_s,
            exceptions=TransientServiceError,
            sleep=self._sleep,
        )
        response.raise_for_status()
        return response

    def get_json(self, path: str, params: Mapping[str, Any] | None = None, *, use_cache: bool = True) -> Any:
        key = f"{path}?{json.dumps(dict(params or {}), sort_keys=True, default=str)}"
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                json_log(logger, logging.DEBUG, "client.cache_hit", path=path)
                return cached
        payload = self.request("GET", path, params=params).json()
        if use_cache:
            self.cache.put(key, payload)
        return payload

    def post_json(self, path: str, payload: Mapping[str, Any]) -> Any:
        return self.request("POST", path, json=dict(payload)).json()

    def health(self) -> HealthStatus:
        """Single uncached health check through the client's resilience stack."""

        payload = self.get_json(self._settings.health_path, use_cache=False)
        if not isinstance(payload, dict):
            return HealthStatus.unreachable(detail="health body is not a JSON object")
        return HealthStatus.from_payload(payload)

    def map_concurrent(self, func: Callable[[T], R], items: Iterable[T]) -> List[R]:
        """Apply ``func`` to ``items`` with at most ``client_max_concurrency`` calls in flight.

        Results keep input order; the first exception raised by ``func`` propagates.
        """

        work = list(items)
        if not work:
            return []
        workers = min(self._settings.client_max_concurrency, len(work))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="service-client") as executor:
            return list(executor.map(func, work))

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "ServiceClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["ResponseCache", "ServiceClient", "TransientServiceError"]
