from fastapi import APIRouter

from chatflow.api.routers import graphs_router, health_router

router = APIRouter(prefix="/v1")
router.include_router(health_router)
router.include_router(graphs_router)
