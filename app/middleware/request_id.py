"""Per-request id propagation for log correlation."""

import logging
import re
import time
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

# Caller-supplied ids end up in every log line of the request
_VALID_REQUEST_ID = re.compile(r"[A-Za-z0-9._:\-]{1,128}")


def get_request_id() -> str | None:
    """Return the id of the request being served, if any."""
    return request_id_ctx.get()


def accept_request_id(candidate: str | None) -> str:
    """Keep a well-formed caller id, otherwise mint a fresh UUID4."""
    if candidate and _VALID_REQUEST_ID.fullmatch(candidate):
        return candidate
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of a request and echo it back.

    Each request is logged once at DEBUG with its status and duration so
    billing runs can be traced end to end by id.
    """

    header_name = "X-Request-ID"

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        rid = accept_request_id(request.headers.get(self.header_name))
        token = request_id_ctx.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            logger.debug(
                "%s %s -> %d",
                request.method,
                request.url.path,
                response.status_code,
                extra={"duration_ms": round((time.perf_counter() - started) * 1000, 1)},
            )
            return response
        finally:
            request_id_ctx.reset(token)
