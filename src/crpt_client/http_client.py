from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time

import httpx

from .config import Settings
from .models import Document
from .rate_limit import AsyncRateLimiter, RateLimiter


logger = logging.getLogger(__name__)

USER_AGENT = "crpt-client/0.1"


class CrptApiError(Exception):
    def __init__(self, status_code: int, body: str, url: str | None = None) -> None:
        super().__init__(f"{status_code} from {url or 'CRPT API'}: {body[:200]}")
        self.status_code = status_code
        self.body = body
        self.url = url


@dataclass(slots=True)
class RequestTelemetry:
    total_requests: int = 0
    successful_requests: int = 0
    api_errors: int = 0
    transport_errors: int = 0
    total_latency_seconds: float = 0.0
    total_wait_seconds: float = 0.0

    @property
    def mean_latency_ms(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.total_latency_seconds / self.total_requests) * 1000.0

    @property
    def mean_wait_ms(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.total_wait_seconds / self.total_requests) * 1000.0


def _request_headers(signature: str) -> dict[str, str]:
    return {"Content-Type": "application/json", "Signature": signature}


def _check_response(response: httpx.Response, telemetry: RequestTelemetry) -> str:
    if response.status_code >= 400:
        telemetry.api_errors += 1
        logger.warning("CRPT API returned %d for %s", response.status_code, response.request.url)
        raise CrptApiError(response.status_code, response.text, str(response.request.url))
    telemetry.successful_requests += 1
    return response.text


class CrptClient:
    """Blocking client for the CRPT document API, safe to share between threads."""

    def __init__(
        self,
        settings: Settings,
        telemetry: RequestTelemetry | None = None,
        transport: httpx.BaseTransport | None = None,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self.telemetry = telemetry or RequestTelemetry()
        self._telemetry_lock = threading.Lock()
        self._owns_limiter = limiter is None
        self._limiter = limiter or RateLimiter(
            limit=settings.request_limit,
            window=settings.window_seconds,
            poll_interval=settings.poll_interval_seconds,
        )
        self._client = httpx.Client(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            headers={"User-Agent": USER_AGENT},
            http2=settings.http2,
            transport=transport,
        )

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    def __enter__(self) -> CrptClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()
        if self._owns_limiter:
            self._limiter.shutdown()

    def create_document(self, document: Document, signature: str) -> str:
        """Wait for a rate-limit slot, then POST ``document``; returns the response body."""
        body = document.to_json()

        wait_started = time.monotonic()
        self._limiter.acquire()
        waited = time.monotonic() - wait_started

        started_at = time.monotonic()
        try:
            response = self._client.post(
                self.settings.create_document_path,
                content=body,
                headers=_request_headers(signature),
            )
        except httpx.HTTPError as exc:
            with self._telemetry_lock:
                self._record(waited, started_at)
                self.telemetry.transport_errors += 1
            logger.warning("CRPT request failed: %s", exc)
            raise

        with self._telemetry_lock:
            self._record(waited, started_at)
            return _check_response(response, self.telemetry)

    def _record(self, waited: float, started_at: float) -> None:
        self.telemetry.total_requests += 1
        self.telemetry.total_wait_seconds += waited
        self.telemetry.total_latency_seconds += time.monotonic() - started_at


class AsyncCrptClient:
    """Coroutine flavour of :class:`CrptClient`; construct it inside a running event loop."""

    def __init__(
        self,
        settings: Settings,
        telemetry: RequestTelemetry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        limiter: AsyncRateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self.telemetry = telemetry or RequestTelemetry()
        self._owns_limiter = limiter is None
        self._limiter = limiter or AsyncRateLimiter(
            limit=settings.request_limit,
            window=settings.window_seconds,
            poll_interval=settings.poll_interval_seconds,
        )
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            headers={"User-Agent": USER_AGENT},
            http2=settings.http2,
            transport=transport,
        )

    @property
    def limiter(self) -> AsyncRateLimiter:
        return self._limiter

    async def __aenter__(self) -> AsyncCrptClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()
        if self._owns_limiter:
            await self._limiter.aclose()

    async def create_document(self, document: Document, signature: str) -> str:
        body = document.to_json()

        wait_started = time.monotonic()
        await self._limiter.acquire()
        self.telemetry.total_wait_seconds += time.monotonic() - wait_started

        started_at = time.monotonic()
        self.telemetry.total_requests += 1
        try:
            response = await self._client.post(
                self.settings.create_document_path,
                content=body,
                headers=_request_headers(signature),
            )
        except httpx.HTTPError as exc:
            self.telemetry.transport_errors += 1
            logger.warning("CRPT request failed: %s", exc)
            raise
        finally:
            self.telemetry.total_latency_seconds += time.monotonic() - started_at

        return _check_response(response, self.telemetry)
