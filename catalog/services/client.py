"""
ResilientClient - Async HTTP client with resilience patterns.

Combines:
- Retry with exponential backoff and a hard per-attempt timeout
- RequestDeduplicator for concurrent identical requests
- ConnectionMonitor for connection-quality tracking
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx
from loguru import logger

from catalog.services.config import FetchConfig
from catalog.services.connection import ConnectionMonitor, ConnectionState
from catalog.services.deduplicator import RequestDeduplicator
from catalog.services.errors import (
    NetworkError,
    RequestTimeoutError,
    ValidationError,
)
from catalog.services.retry import RetryPolicy, retry_with_backoff

T = TypeVar("T")

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


@dataclass
class HttpResponse(Generic[T]):
    """Decoded 2xx response."""

    status: int
    headers: dict[str, str]
    data: T
    url: str
    elapsed_ms: float


class ResilientClient:
    """
    HTTP client with retries, deduplication and connection tracking.

    Usage:
        client = ResilientClient(FetchConfig(), base_url="https://api.example.com")

        response = await client.get("/api/benefits", params={"limit": 10})
        print(response.data)

        await client.close()

    Non-2xx responses are always errors. Callers see a single NetworkError
    once the retry budget is spent, never the intermediate failures.
    """

    def __init__(
        self,
        config: FetchConfig | None = None,
        base_url: str = "",
        default_headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        debug: bool = False,
    ):
        self._config = config or FetchConfig()
        self.base_url = base_url
        self._default_headers = dict(DEFAULT_HEADERS)
        if default_headers:
            self._default_headers.update(default_headers)
        self._sleep = sleep
        self._debug = debug

        self._retry_policy = RetryPolicy.from_config(self._config)
        self._deduplicator = RequestDeduplicator(
            window=self._config.dedup_window_ms / 1000, debug=debug
        )
        self._connection = ConnectionMonitor(self._config.slow_threshold_ms)

        # HTTP client (lazy initialization unless injected)
        self._http_client = http_client
        self._owns_http_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.request_timeout),
                follow_redirects=True,
            )
            self._owns_http_client = True
        return self._http_client

    @property
    def connection(self) -> ConnectionMonitor:
        return self._connection

    def connection_state(self) -> ConnectionState:
        return self._connection.get()

    def notify_network_down(self) -> None:
        """External signal: the network went away."""
        self._connection.notify_network_down()

    def notify_connectivity_restored(self) -> None:
        """External signal: the network is back."""
        self._connection.notify_connectivity_restored()

    def build_url(self, url: str, params: dict[str, Any] | None = None) -> str:
        """Resolve ``url`` against base_url and append sorted query params."""
        if url.startswith(("http://", "https://")) or not self.base_url:
            full_url = url
        else:
            path = url if url.startswith("/") else f"/{url}"
            full_url = f"{self.base_url.rstrip('/')}{path}"

        if params:
            merged = httpx.URL(full_url).copy_merge_params(
                {k: params[k] for k in sorted(params)}
            )
            return str(merged)
        return full_url

    @staticmethod
    def request_key(
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | bytes | None,
    ) -> str:
        """Fingerprint for deduplication: method + url + headers + body."""
        header_part = json.dumps(
            sorted((k.lower(), v) for k, v in headers.items()), separators=(",", ":")
        )
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        return f"{method.upper()}:{url}:{header_part}:{body or ''}"

    async def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_data: Any = None,
        content: str | bytes | None = None,
        timeout: float | None = None,
        deadline: float | None = None,
    ) -> HttpResponse[Any]:
        """
        Make an HTTP request with resilience patterns.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Absolute URL, or a path relative to base_url
            params: Query parameters
            headers: Additional headers
            json_data: Structured body, serialized as JSON
            content: Raw body (ignored if json_data is given)
            timeout: Override per-attempt timeout in seconds
            deadline: Caller deadline as a time.monotonic() timestamp; each
                attempt's timeout is capped by the time left until it

        Returns:
            HttpResponse with decoded body

        Raises:
            NetworkError: All attempts failed (non-2xx, transport, timeout)
            ValidationError: Response body could not be decoded
        """
        method = method.upper()
        full_url = self.build_url(url, params)

        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)

        body: str | bytes | None
        if json_data is not None:
            body = json.dumps(json_data, sort_keys=True, separators=(",", ":"), default=str)
        else:
            body = content

        key = self.request_key(method, full_url, req_headers, body)

        async def do_request() -> HttpResponse[Any]:
            return await retry_with_backoff(
                lambda: self._execute_request(
                    method, full_url, req_headers, body, timeout, deadline
                ),
                self._retry_policy,
                on_retry=lambda e, attempt, delay: logger.warning(
                    f"Request {method} {full_url} failed (attempt {attempt}/"
                    f"{self._retry_policy.max_attempts}), retrying in {delay:.2f}s: {e}"
                ),
                sleep=self._sleep,
                deadline=deadline,
                description=f"{method} {full_url}",
            )

        return await self._deduplicator.dedupe(key, do_request)

    async def get(self, url: str, **kwargs: Any) -> HttpResponse[Any]:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, json_data: Any = None, **kwargs: Any) -> HttpResponse[Any]:
        return await self.request("POST", url, json_data=json_data, **kwargs)

    async def put(self, url: str, json_data: Any = None, **kwargs: Any) -> HttpResponse[Any]:
        return await self.request("PUT", url, json_data=json_data, **kwargs)

    async def patch(self, url: str, json_data: Any = None, **kwargs: Any) -> HttpResponse[Any]:
        return await self.request("PATCH", url, json_data=json_data, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> HttpResponse[Any]:
        return await self.request("DELETE", url, **kwargs)

    def _attempt_timeout(self, timeout: float | None, deadline: float | None) -> float:
        attempt_timeout = timeout if timeout is not None else self._config.request_timeout
        if deadline is not None:
            attempt_timeout = min(attempt_timeout, deadline - time.monotonic())
        return attempt_timeout

    async def _execute_request(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | bytes | None,
        timeout: float | None,
        deadline: float | None,
    ) -> HttpResponse[Any]:
        """Execute a single attempt."""
        attempt_timeout = self._attempt_timeout(timeout, deadline)
        if attempt_timeout <= 0:
            raise RequestTimeoutError(url, 0)

        client = await self._get_http_client()
        started = time.monotonic()

        try:
            response = await asyncio.wait_for(
                client.request(
                    method,
                    url,
                    headers=headers,
                    content=body,
                    timeout=attempt_timeout,
                ),
                timeout=attempt_timeout,
            )

        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            self._connection.record_timeout()
            raise RequestTimeoutError(url, attempt_timeout) from e

        except httpx.TransportError as e:
            self._connection.record_no_response()
            raise NetworkError(
                f"Network request failed: {e}", context={"url": url}
            ) from e

        except httpx.DecodingError as e:
            # The server answered but the body cannot be decoded
            self._connection.record_exchange((time.monotonic() - started) * 1000)
            raise ValidationError(
                f"Failed to decode response from {url}: {e}", context={"url": url}
            ) from e

        except httpx.RequestError as e:
            raise NetworkError(
                f"Request failed: {e}", context={"url": url}
            ) from e

        elapsed_ms = (time.monotonic() - started) * 1000
        self._connection.record_exchange(elapsed_ms)

        if not response.is_success:
            raise NetworkError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                context={
                    "url": url,
                    "duration_ms": round(elapsed_ms),
                    "body": response.text[:200],
                },
                status=response.status_code,
            )

        data = self._decode(response, url)
        self._log(f"{method} {url} -> {response.status_code} ({elapsed_ms:.0f}ms)")

        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            data=data,
            url=url,
            elapsed_ms=elapsed_ms,
        )

    @staticmethod
    def _decode(response: httpx.Response, url: str) -> Any:
        """JSON for JSON content types, text otherwise."""
        content_type = response.headers.get("content-type", "")
        if "json" not in content_type.lower():
            return response.text
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ValidationError(
                f"Invalid JSON in response from {url}: {e}",
                context={"url": url, "content_type": content_type},
            ) from e

    def clear_in_flight(self) -> None:
        """Drop every deduplication registration."""
        self._deduplicator.clear()

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        await self._deduplicator.cancel_all()

        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

        logger.debug("ResilientClient closed")

    async def __aenter__(self) -> "ResilientClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    def get_health_status(self) -> dict[str, Any]:
        """Connection and deduplication status."""
        return {
            "connection": self._connection.get_status(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
        }

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[ResilientClient] {message}")
