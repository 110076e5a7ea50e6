"""
Watermark Pipeline Backend — Remote Watermark Service Client
==============================================================

What:  Signed HTTPS client for the external document-watermarking service.
How:   httpx.AsyncClient + RequestSigner. Every attempt carries a freshly
       computed Date header and signature. Responses are parsed into a
       tagged body (StructuredBody | RawBody) before interpretation.
Who:   Instantiated once at app startup (main.create_app); shared by the
       pipeline (task creation) and the worker pool (status polling).

Remote endpoints:
    POST /dlp/file_process/add_watermark_task      {file_url, content, biz_id}
    POST /dlp/file_process/extract_watermark_task  {file_url, biz_id}
    GET  /dlp/file_process/task?task_id=...

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter
       - task creation: connection-level failures only (ConnectError,
         ConnectTimeout), where the request never reached the service
       - status queries: any transport error (idempotent)
    2. Circuit breaker in front of every call
    3. Explicit per-request timeout (settings.http_timeout_seconds)
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type, Union

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from watermark_pipeline.config import settings
from watermark_pipeline.exceptions import CircuitBreakerOpenError, RemoteServiceError
from watermark_pipeline.services.remote_base import (
    REMOTE_UNKNOWN,
    RemoteTaskStatus,
    WatermarkRemote,
)
from watermark_pipeline.services.signing import RequestSigner, build_canonical_query

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Response Bodies
# ══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StructuredBody:
    """A response body that parsed as JSON."""
    payload: Any


@dataclass(frozen=True)
class RawBody:
    """A response body that did not parse as JSON; kept verbatim."""
    text: str


RemoteBody = Union[StructuredBody, RawBody]


def parse_remote_body(text: str) -> RemoteBody:
    try:
        return StructuredBody(json.loads(text))
    except (ValueError, TypeError):
        return RawBody(text)


def body_detail(body: RemoteBody) -> Any:
    """Best-effort representation of a body for error details."""
    if isinstance(body, StructuredBody):
        return body.payload
    return {"raw": body.text}


def extract_task_id(body: RemoteBody) -> Optional[str]:
    """Task id of a creation response: `taskId`, else `data` (string or {task_id})."""
    if not isinstance(body, StructuredBody) or not isinstance(body.payload, dict):
        return None
    payload = body.payload
    candidate = payload.get("taskId")
    if candidate in (None, ""):
        candidate = payload.get("data")
    if isinstance(candidate, dict):
        candidate = candidate.get("task_id") or candidate.get("taskId")
    if isinstance(candidate, bool) or candidate in (None, ""):
        return None
    if isinstance(candidate, (str, int)):
        return str(candidate)
    return None


def interpret_task_status(body: RemoteBody) -> RemoteTaskStatus:
    """
    Map a query response to RemoteTaskStatus.

    Expected shape:
        {"success": true, "data": {"task_status": "finished",
                                   "result": {"code": 0, "data": "...", "message": "..."}}}
    Anything unreadable is reported as 'unknown' so the poller tries again.
    """
    if not isinstance(body, StructuredBody) or not isinstance(body.payload, dict):
        return RemoteTaskStatus(status=REMOTE_UNKNOWN, body=body_detail(body))

    data = body.payload.get("data")
    if not isinstance(data, dict) or not data.get("task_status"):
        return RemoteTaskStatus(
            status=REMOTE_UNKNOWN,
            message=body.payload.get("message"),
            body=body.payload,
        )

    result = data.get("result") if isinstance(data.get("result"), dict) else {}
    result_data = result.get("data")
    return RemoteTaskStatus(
        status=str(data["task_status"]).lower(),
        result_data=str(result_data) if result_data is not None else None,
        message=result.get("message") or body.payload.get("message"),
        body=body.payload,
    )


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Circuit breaker guarding the remote watermark service.

    State Machine:
        CLOSED → failure_count reaches threshold → OPEN
        OPEN   → every call raises CircuitBreakerOpenError until
                 recovery_timeout has elapsed → HALF_OPEN
        HALF_OPEN → one call through; success → CLOSED, failure → OPEN

    Not thread-safe; all callers share one event loop.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Raises:
            CircuitBreakerOpenError if OPEN and the recovery timeout has not elapsed.
        """
        if self.state == self.OPEN:
            elapsed = time.monotonic() - (self.last_failure_time or 0)
            if elapsed < self.recovery_timeout:
                raise CircuitBreakerOpenError(recovery_time=int(self.recovery_timeout - elapsed))
            logger.info("Circuit breaker transitioning to HALF_OPEN after %.1fs", elapsed)
            self.state = self.HALF_OPEN
        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold and self.state != self.OPEN:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Client
# ══════════════════════════════════════════════════════════════════════════

# Failures where the request provably never reached the service
_CONNECT_ERRORS: Tuple[Type[Exception], ...] = (httpx.ConnectError, httpx.ConnectTimeout)


class WatermarkServiceClient(WatermarkRemote):
    """
    httpx implementation of WatermarkRemote.

    Error Handling Chain:
        transport failure → tenacity retries (per-call retry policy)
        → retries exhausted → circuit breaker failure → RemoteServiceError
        non-2xx → RemoteServiceError(status_code, detail); 5xx counts as a
        circuit breaker failure, 4xx does not
        SigningError propagates untouched and is never retried
    """

    EMBED_PATH = "/dlp/file_process/add_watermark_task"
    EXTRACT_PATH = "/dlp/file_process/extract_watermark_task"
    QUERY_PATH = "/dlp/file_process/task"

    def __init__(
        self,
        base_url: Optional[str] = None,
        signer: Optional[RequestSigner] = None,
        host_header: Optional[str] = None,
        timeout: Optional[float] = None,
        verify: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_attempts: Optional[int] = None,
        min_wait: Optional[float] = None,
        max_wait: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.watermark_api_base_url).rstrip("/")
        self.signer = signer or RequestSigner(
            access_key=settings.watermark_access_key,
            secret_key=settings.watermark_secret_key,
            algorithm=settings.watermark_algorithm,
        )
        self.host_header = host_header if host_header is not None else settings.watermark_api_host_header
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )
        self.max_attempts = max_attempts or settings.retry_max_attempts
        self.min_wait = settings.retry_min_wait if min_wait is None else min_wait
        self.max_wait = settings.retry_max_wait if max_wait is None else max_wait

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.http_timeout_seconds,
            verify=settings.watermark_verify_ssl if verify is None else verify,
            transport=transport,
        )

        logger.info(
            "WatermarkServiceClient initialized with base_url=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            self.base_url,
            self.circuit_breaker.failure_threshold,
            self.circuit_breaker.recovery_timeout,
        )

    async def close(self) -> None:
        await self.client.aclose()
        logger.info("WatermarkServiceClient closed")

    # ── Public operations ─────────────────────────────────────────────────

    async def create_embed_task(
        self, file_url: str, content: str, biz_id: Optional[str] = None
    ) -> str:
        body = await self._request(
            "POST",
            self.EMBED_PATH,
            json_body={"file_url": file_url, "content": content, "biz_id": biz_id},
            retry_on=_CONNECT_ERRORS,
        )
        return self._require_task_id(body, "embed")

    async def create_extract_task(self, file_url: str, biz_id: Optional[str] = None) -> str:
        body = await self._request(
            "POST",
            self.EXTRACT_PATH,
            json_body={"file_url": file_url, "biz_id": biz_id},
            retry_on=_CONNECT_ERRORS,
        )
        return self._require_task_id(body, "extract")

    async def query_task(self, task_id: str) -> RemoteTaskStatus:
        body = await self._request(
            "GET",
            self.QUERY_PATH,
            params={"task_id": task_id},
            retry_on=(httpx.TransportError,),
        )
        status = interpret_task_status(body)
        if status.status == REMOTE_UNKNOWN:
            logger.warning("Unreadable status body for remote task %s", task_id)
        return status

    async def health_check(self) -> bool:
        """Reachability probe: any HTTP answer counts as reachable."""
        try:
            await self.client.request("GET", "/", headers=self._base_headers(), timeout=5)
            return True
        except httpx.HTTPError as e:
            logger.warning("Watermark service health check failed: %s", str(e))
            return False

    # ── Internals ─────────────────────────────────────────────────────────

    def _base_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.host_header:
            headers["Host"] = self.host_header
        return headers

    def _require_task_id(self, body: RemoteBody, operation: str) -> str:
        task_id = extract_task_id(body)
        if task_id is None:
            logger.error("Remote %s task creation returned no task id", operation)
            raise RemoteServiceError(
                message=f"Watermark service did not return a task id for the {operation} task",
                detail=body_detail(body),
            )
        return task_id

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        retry_on: Tuple[Type[Exception], ...] = _CONNECT_ERRORS,
    ) -> RemoteBody:
        self.circuit_breaker.can_execute()

        query = build_canonical_query(params or {})
        url = f"{path}?{query}" if query else path
        content = (
            json.dumps(json_body, ensure_ascii=False).encode("utf-8")
            if json_body is not None
            else None
        )

        start_time = time.monotonic()
        try:
            response = await self._send_with_retry(method, path, url, query, content, retry_on)
        except httpx.TransportError as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "%s %s failed after retries: %s: %s", method, path, type(e).__name__, str(e)
            )
            raise RemoteServiceError(
                message=f"Watermark service unreachable: {type(e).__name__}",
                detail=str(e),
            ) from e

        duration_ms = (time.monotonic() - start_time) * 1000
        body = parse_remote_body(response.text)

        if not response.is_success:
            if response.status_code >= 500:
                self.circuit_breaker.record_failure()
            else:
                self.circuit_breaker.record_success()
            logger.error(
                "%s %s returned HTTP %d in %.0fms", method, path, response.status_code, duration_ms
            )
            raise RemoteServiceError(
                message=f"Watermark service returned HTTP {response.status_code}",
                status_code=response.status_code,
                detail=body_detail(body),
            )

        self.circuit_breaker.record_success()
        logger.debug("%s %s completed in %.0fms", method, path, duration_ms)
        return body

    async def _send_with_retry(
        self,
        method: str,
        path: str,
        url: str,
        query: str,
        content: Optional[bytes],
        retry_on: Tuple[Type[Exception], ...],
    ) -> httpx.Response:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(retry_on),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.min_wait,
                max=self.max_wait,
                jitter=1 if self.max_wait else 0,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                # Fresh Date + signature for every attempt
                headers = self._base_headers()
                headers.update(self.signer.auth_headers(method, path, query))
                if content is not None:
                    headers["Content-Type"] = "application/json"
                return await self.client.request(method, url, headers=headers, content=content)
        raise AssertionError("unreachable")  # pragma: no cover
