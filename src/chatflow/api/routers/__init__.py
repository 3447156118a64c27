from chatflow.api.routers.graphs import router as graphs_router
from chatflow.api.routers.health import router as health_router

__all__ = [
    "graphs_router",
    "health_router",
]
