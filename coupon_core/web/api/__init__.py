from fastapi import APIRouter

from . import claim, stats

router = APIRouter(
    prefix="/api",
    tags=["/api"],
)

router.include_router(claim.router)
router.include_router(stats.router)
