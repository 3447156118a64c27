from __future__ import annotations

import logging
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chatflow.api.errors import APIError
from chatflow.graph import GraphError, SnapshotNotFound


def _error_response(request: Request, *, status_code: int, content: dict) -> JSONResponse:
    trace_id = getattr(request.state, "trace_id", None)
    response = JSONResponse(status_code=status_code, content={**content, "trace_id": trace_id})
    if trace_id:
        response.headers["X-Trace-Id"] = trace_id
    return response


def register_exception_handlers(app) -> None:
    logger = logging.getLogger(__name__)

    @app.exception_handler(RequestValidationError)
    async def handle_validation(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            status_code=422,
            content={"error": "validation_error", "details": exc.errors()},
        )

    @app.exception_handler(SnapshotNotFound)
    async def handle_not_found(request: Request, exc: SnapshotNotFound):
        return _error_response(
            request,
            status_code=404,
            content={"error": exc.code, "message": str(exc.args[0]) if exc.args else "not found"},
        )

    @app.exception_handler(GraphError)
    async def handle_graph_error(request: Request, exc: GraphError):
        logger.warning("graph_error", extra={"code": exc.code, "path": request.url.path})
        return _error_response(
            request,
            status_code=exc.status_code,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(APIError)
    async def handle_api_error(request: Request, exc: APIError):
        return _error_response(
            request,
            status_code=exc.status_code,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def handle_unknown(request: Request, exc: Exception):  # noqa: ARG001
        trace_id = getattr(request.state, "trace_id", None)
        logger.exception("Unhandled error", extra={"trace_id": trace_id, "path": request.url.path})
        return _error_response(request, status_code=500, content={"error": "internal_error"})
