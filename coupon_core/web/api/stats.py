import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from coupon_core.service.statistics import StatisticsReader
from coupon_core.web.dependencies import get_statistics_reader

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/stats",
)


class StatsResponse(BaseModel):
    success: bool = True
    total: int
    claimed: int


@router.get("", response_model=StatsResponse)
async def get_stats(reader: StatisticsReader = Depends(get_statistics_reader)):
    try:
        stats = await reader.stats()
    except Exception:
        log.exception("reading stats failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Internal server error"},
        )
    return StatsResponse(total=stats.total, claimed=stats.claimed)
