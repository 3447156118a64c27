from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from chatflow.api.deps import AppDeps, get_deps
from chatflow.api.errors import APIError
from chatflow.api.schemas import RunRequest, RunResponse
from chatflow.graph import Graph, GraphError, format_sse

router = APIRouter()


async def _load_graph(deps: AppDeps, graph_id: str) -> Graph:
    graph = await deps.new_graph().load(deps.store, graph_id)
    return graph.compile()


def _history(payload: RunRequest, window: int) -> Optional[list]:
    """Seed transcript limited to the last `window` messages (0 keeps all)."""
    if not payload.messages:
        return None
    messages = payload.messages[-window:] if window > 0 else payload.messages
    return [m.model_dump(exclude_none=True) for m in messages]


def _run_kwargs(payload: RunRequest, deps: AppDeps, thread_id: Optional[str]) -> dict:
    return {
        "messages": _history(payload, deps.settings.history_window),
        "prompt": payload.prompt.model_dump(exclude_none=True) if payload.prompt else None,
        "thread_id": thread_id,
        "metadata": payload.metadata,
        "max_iterations": payload.max_iterations or deps.settings.max_iterations,
        "node_timeout_s": deps.settings.node_timeout_s,
    }


@router.post("/graphs/{graph_id}/run", response_model=RunResponse, summary="Run a stored graph")
async def run_graph(
    graph_id: str,
    payload: RunRequest,
    request: Request,
    deps: AppDeps = Depends(get_deps),
) -> RunResponse:
    logger = logging.getLogger(__name__)
    start = time.perf_counter()
    if payload.reply and not payload.thread_id:
        raise APIError("thread_id is required to send a reply", status_code=400, code="missing_thread_id")
    thread_id = payload.thread_id or getattr(request.state, "trace_id", None)
    graph = await _load_graph(deps, graph_id)
    result = await graph.invoke(**_run_kwargs(payload, deps, thread_id))

    replied = False
    if payload.reply and result.output:
        await deps.sender.send_message(payload.thread_id, result.output)
        replied = True

    logger.info(
        json.dumps(
            {
                "event": "graph_run_response",
                "graph_id": graph_id,
                "thread_id": thread_id,
                "termination": result.termination.value,
                "iterations": result.iterations,
                "errors_count": len(result.errors),
                "answer_chars": len(result.output or ""),
                "replied": replied,
                "latency_ms_total": int((time.perf_counter() - start) * 1000),
            },
            ensure_ascii=False,
        )
    )
    return RunResponse(
        graph_id=graph_id,
        thread_id=thread_id,
        output=result.output,
        termination=result.termination.value,
        iterations=result.iterations,
        errors=result.errors,
        replied=replied,
    )


@router.post("/graphs/{graph_id}/stream", summary="Run a stored graph, streaming state events as SSE")
async def stream_graph(
    graph_id: str,
    payload: RunRequest,
    request: Request,
    deps: AppDeps = Depends(get_deps),
) -> StreamingResponse:
    thread_id = payload.thread_id or getattr(request.state, "trace_id", None)
    graph = await _load_graph(deps, graph_id)
    queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
    graph.on_state_change(lambda snapshot: queue.put_nowait(format_sse(snapshot)))

    async def _run() -> None:
        try:
            await graph.stream_events(**_run_kwargs(payload, deps, thread_id))
        except GraphError as exc:
            queue.put_nowait(format_sse({"error": exc.code, "message": str(exc)}, event="graph.error"))
        finally:
            queue.put_nowait(None)

    async def _events() -> AsyncIterator[str]:
        task = asyncio.create_task(_run())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
            await task
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(_events(), media_type="text/event-stream")
