"""
Request correlation.

Every request carries an X-Correlation-ID (taken from the client or
generated). It is bound to the logging context so task events emitted while
serving the request, including worker drains started from trigger endpoints,
share the same ID.
"""
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from imgflow.utils.logger import correlation_id_var, logger

HEADER = "X-Correlation-ID"
# Clients poll task status every few seconds
_POLLING_PREFIX = "/api/tasks"


def _elapsed_ms(started: float) -> int:
    return round((time.monotonic() - started) * 1000)


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get(HEADER) or uuid.uuid4().hex
        token = correlation_id_var.set(cid)
        started = time.monotonic()
        fields = {
            "method": request.method,
            "path": request.url.path,
            "user_id": request.headers.get("x-user-id", ""),
        }

        logger.debug(
            "request.started",
            extra={**fields, "client_ip": request.client.host if request.client else ""},
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request.failed",
                extra={
                    **fields,
                    "duration_ms": _elapsed_ms(started),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            raise
        finally:
            correlation_id_var.reset(token)

        status = response.status_code
        if status >= 400:
            log = logger.warning
        elif request.method == "GET" and fields["path"].startswith(_POLLING_PREFIX):
            log = logger.debug
        else:
            log = logger.info
        log(
            "request.completed",
            extra={**fields, "status": status, "duration_ms": _elapsed_ms(started), "correlation_id": cid},
        )

        response.headers[HEADER] = cid
        return response
