import logging
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Tags each console call so a screen's error report can be matched to the log line.
    A caller-supplied id is kept; otherwise a uuid4 is minted.
    """

    def __init__(self, app, header_name: str = "X-Request-Id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[self.header_name] = request_id
        if response.status_code >= 400:
            logger.info(
                "[console] %s %s -> %s request_id=%s",
                request.method, request.url.path, response.status_code, request_id,
            )
        return response
