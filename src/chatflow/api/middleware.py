from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


class TraceLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns every request a trace id (`X-Trace-Id` in, or a new one) and logs
    one `api_request` event per request. When no `thread_id` is supplied the
    graph runners reuse the trace id as the conversation id.
    """

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("x-trace-id") or uuid4().hex
        request.state.trace_id = trace_id
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Trace-Id"] = trace_id
            return response
        finally:
            payload = {
                "event": "api_request",
                "trace_id": trace_id,
                "method": request.method,
                "path": request.url.path,
                "graph_id": request.path_params.get("graph_id"),
                "status_code": status_code,
                "latency_ms": int((time.perf_counter() - start) * 1000),
            }
            level = logging.ERROR if status_code >= 500 else logging.INFO
            logging.getLogger(__name__).log(level, json.dumps(payload, ensure_ascii=False))


def setup_middlewares(app) -> None:
    app.add_middleware(TraceLoggingMiddleware)
