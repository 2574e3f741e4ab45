import json
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("booking_service.access")


def _access_line(request: Request, status: int, started: float) -> str:
    return json.dumps(
        {
            "request_id": request.state.request_id,
            "method": request.method,
            "path": request.url.path,
            "status": status,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "user_sub": getattr(request.state, "user_sub", None),
            "user_roles": getattr(request.state, "user_roles", None),
        }
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON access line per request; X-Request-Id is reused or minted."""

    async def dispatch(self, request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(_access_line(request, 500, started))
            raise

        response.headers["X-Request-Id"] = request.state.request_id
        logger.info(_access_line(request, response.status_code, started))
        return response
