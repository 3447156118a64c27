from __future__ import annotations

from contextlib import asynccontextmanager
import json
import logging

from fastapi import FastAPI

from chatflow.api.deps import get_deps
from chatflow.api.exception_handlers import register_exception_handlers
from chatflow.api.middleware import setup_middlewares
from chatflow.api.routes import router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    # fail fast on bad config
    deps = get_deps()
    deps.settings.graphs_dir.mkdir(parents=True, exist_ok=True)
    logging.info(
        json.dumps(
            {
                "event": "startup",
                "graphs_dir": str(deps.settings.graphs_dir),
                "llm_configured": deps.llm is not None,
                "tools": [t.name for t in deps.tool_actions.list()],
            },
            ensure_ascii=False,
        )
    )
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="chatflow",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    setup_middlewares(app)
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
