"""Resilient Backend Client: wraps httpx.AsyncClient with timeouts, bounded retry, and error mapping.

Invariants:
    - Every request is bounded by request_timeout_seconds
    - Idempotent reads (GET) retry transient failures with exponential backoff and jitter
    - Mutations (POST/PUT/DELETE) are never retried here; callers own that decision
    - HTTP mapping: 409 or "already enrolled" -> EnrollmentConflictError,
      400/422 -> ValidationError, other 4xx -> ServerRejectedError,
      5xx / timeout / transport error -> ServerUnreachableError
    - Authenticated calls carry "Authorization: Bearer <token>" from the injected session

Design Decisions:
    - Wrapper over raw client: CourseStore never sees httpx types
    - Transport injectable so tests can route to an in-process ASGI app
"""

import asyncio
import logging
import random
from typing import Any

import httpx

from skillchain.core.errors import (
    EnrollmentConflictError,
    ErrorContext,
    ServerRejectedError,
    ServerUnreachableError,
    ValidationError,
)
from skillchain.core.repository_protocols import AuthSession

logger = logging.getLogger(__name__)

_ALREADY_ENROLLED_MARKER = "already enrolled"


def _response_message(response: httpx.Response) -> str:
    """Backend errors are JSON with a `message` field; fall back to status text."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text or response.reason_phrase or f"HTTP {response.status_code}"


def map_error_response(response: httpx.Response, course_id: str | None = None):
    """Translate a non-2xx response into the marketplace error hierarchy."""
    status = response.status_code
    message = _response_message(response)
    ctx = ErrorContext(course_id=course_id, http_status=status)
    if status == 409 or (
        400 <= status < 500 and _ALREADY_ENROLLED_MARKER in message.lower()
    ):
        return EnrollmentConflictError(course_id or "", message, ctx)
    if status in (400, 422):
        return ValidationError(message, context=ctx)
    if 400 <= status < 500:
        return ServerRejectedError(message, status, ctx)
    return ServerUnreachableError(message, status, ctx)


class BackendClient:
    """REST client for the course backend."""

    def __init__(
        self,
        base_url: str,
        session: AuthSession,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        base_delay_ms: int = 500,
        max_delay_ms: int = 5_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
        )
        self.session = session
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms

    async def aclose(self) -> None:
        await self.client.aclose()

    # ─── Endpoints ──────────────────────────────────────────────

    async def list_courses(self, include_drafts: bool = False) -> Any:
        if include_drafts:
            return await self._get("/courses/all", auth=True)
        return await self._get("/courses")

    async def get_course(self, course_id: str) -> Any:
        return await self._get(f"/courses/{course_id}", course_id=course_id)

    async def list_enrolled(self) -> Any:
        return await self._get("/courses/student/enrolled", auth=True)

    async def create_course(self, payload: dict) -> Any:
        return await self._send("POST", "/courses", json=payload)

    async def update_course(self, course_id: str, payload: dict) -> Any:
        return await self._send(
            "PUT", f"/courses/{course_id}", json=payload, course_id=course_id,
        )

    async def delete_course(self, course_id: str) -> Any:
        return await self._send(
            "DELETE", f"/courses/{course_id}", course_id=course_id,
        )

    async def enroll(self, course_id: str, payment_reference: str | None) -> Any:
        body = {"paymentReference": payment_reference} if payment_reference else {}
        return await self._send(
            "POST", f"/courses/{course_id}/enroll", json=body, course_id=course_id,
        )

    # ─── Transport ──────────────────────────────────────────────

    async def _get(
        self, path: str, *, auth: bool = False, course_id: str | None = None,
    ) -> Any:
        """GET with retry on transient failure."""
        for attempt in range(self.max_retries + 1):
            try:
                return await self._send("GET", path, auth=auth, course_id=course_id)
            except ServerUnreachableError as e:
                if attempt >= self.max_retries:
                    raise
                delay = self._backoff(attempt)
                logger.warning(
                    f"Transient backend error, retry after {delay}ms: {e.message}",
                    extra={"path": path, "attempt": attempt + 1},
                )
                await asyncio.sleep(delay / 1000)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        auth: bool = True,
        course_id: str | None = None,
    ) -> Any:
        headers = self._headers() if auth else {}
        try:
            response = await self.client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise ServerUnreachableError(
                f"Backend timeout on {method} {path}",
                context=ErrorContext(course_id=course_id, debug_info={"error": str(e)}),
            )
        except httpx.TransportError as e:
            raise ServerUnreachableError(
                f"Backend unreachable on {method} {path}: {e}",
                context=ErrorContext(course_id=course_id),
            )

        if response.is_success:
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                raise ServerUnreachableError(
                    f"Backend returned a non-JSON body on {method} {path}",
                    response.status_code,
                    ErrorContext(course_id=course_id),
                )

        error = map_error_response(response, course_id)
        logger.info(
            f"Backend rejected {method} {path}: {error.message}",
            extra={
                "method": method, "path": path,
                "http_status": response.status_code, "error_code": error.code,
            },
        )
        raise error

    def _headers(self) -> dict[str, str]:
        token = getattr(self.session, "token", None)
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _backoff(self, attempt: int) -> int:
        """Exponential backoff with ±25% jitter."""
        delay = min(self.max_delay_ms, (2 ** attempt) * self.base_delay_ms)
        return int(delay * random.uniform(0.75, 1.25))  # nosec B311
