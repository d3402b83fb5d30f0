"""Per-request context: request id propagation and client address lookup."""

from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from mediadrop.core.logging import clear_request_id, set_request_id

REQUEST_ID_HEADER = "X-Request-ID"
UNKNOWN_CLIENT = "unknown"


def get_client_ip(request: Request, trust_forwarded: bool = True) -> str:
    """Resolve the address used as the admission key for a request.

    Args:
        request: Incoming request.
        trust_forwarded: Honour X-Forwarded-For / X-Real-IP set by a proxy.

    Returns:
        First X-Forwarded-For hop, then X-Real-IP, then the socket peer,
        or "unknown" when none is available.
    """
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        real_ip = request.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip

    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of each request.

    An incoming X-Request-ID is reused, otherwise a new one is generated.
    The id is echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming: Optional[str] = request.headers.get(REQUEST_ID_HEADER)
        request_id = set_request_id(incoming or None)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
