import logging

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from coupon_core.service.statistics import StatisticsReader
from coupon_core.util.misc import format_error
from coupon_core.web.dependencies import get_statistics_reader

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
)


class Health(BaseModel):
    status: str


@router.get("", response_model=Health)
async def health(response: Response, reader: StatisticsReader = Depends(get_statistics_reader)):
    try:
        await reader.stats()
    except Exception as e:
        log.warning(f"health check failed: {format_error(e)}")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return Health(status="store unavailable")
    return Health(status="ok")
