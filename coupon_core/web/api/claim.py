import logging
from datetime import datetime
from typing import Optional

import gconf
from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from coupon_core.data_model.coupon import ClaimGranted, RejectReason
from coupon_core.service.allocation import AllocationEngine
from coupon_core.util.misc import str_to_bool
from coupon_core.web.dependencies import get_allocation_engine, get_client_id

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/claim",
)

NEXT_CLAIM_TIME_COOKIE = "nextClaimTime"


class ClaimResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    coupon: str
    claimed_at: datetime = Field(alias="claimedAt")


class ClaimFailure(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = False
    message: str
    next_claim_time: Optional[datetime] = Field(default=None, alias="nextClaimTime")


def failure_response(status_code: int, message: str, next_claim_time: datetime = None) -> JSONResponse:
    body = ClaimFailure(message=message, next_claim_time=next_claim_time)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@router.post("", response_model=ClaimResponse, responses={
    status.HTTP_410_GONE: {"model": ClaimFailure},
    status.HTTP_429_TOO_MANY_REQUESTS: {"model": ClaimFailure},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ClaimFailure},
})
async def claim_coupon(
        response: Response,
        client_id: str = Depends(get_client_id),
        engine: AllocationEngine = Depends(get_allocation_engine),
):
    try:
        decision = await engine.claim(client_id)
    except Exception:
        log.exception(f"claim for {client_id} failed")
        return failure_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    if isinstance(decision, ClaimGranted):
        next_claim_time = engine.next_claim_time(decision.claimed_at)
        # Only a hint for the client UI. The engine never reads it back.
        response.set_cookie(
            NEXT_CLAIM_TIME_COOKIE,
            next_claim_time.isoformat(),
            expires=next_claim_time,
            path="/",
            secure=str_to_bool(gconf.get("cookie.secure", default=False)),
            httponly=True,
        )
        return ClaimResponse(coupon=decision.code, claimed_at=decision.claimed_at)

    if decision.reason == RejectReason.RATE_LIMITED:
        return failure_response(
            status.HTTP_429_TOO_MANY_REQUESTS,
            f"You can claim again at {decision.retry_after:%H:%M:%S} UTC",
            decision.retry_after,
        )
    return failure_response(status.HTTP_410_GONE, "All coupons have been claimed")
