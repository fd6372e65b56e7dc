from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, model_validator


class Coupon(BaseModel):
    id: int
    code: str
    claimed: bool = False
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    claim_ref: Optional[str] = None

    def __str__(self):
        return f"Coupon[{self.id}, {self.code}]"

    @model_validator(mode="after")
    def check_claim_fields(self):
        has_claim = self.claimed_by is not None and self.claimed_at is not None
        has_partial_claim = self.claimed_by is not None or self.claimed_at is not None
        if self.claimed and not has_claim:
            raise ValueError("a claimed coupon needs claimed_by and claimed_at")
        if not self.claimed and has_partial_claim:
            raise ValueError("an unclaimed coupon must not have claimed_by or claimed_at")
        return self


class RejectReason(str, Enum):
    RATE_LIMITED = "rate_limited"
    POOL_EXHAUSTED = "pool_exhausted"


class ClaimGranted(BaseModel):
    coupon_id: int
    code: str
    claimed_at: datetime


class ClaimRejected(BaseModel):
    reason: RejectReason
    retry_after: Optional[datetime] = None


ClaimDecision = Union[ClaimGranted, ClaimRejected]


class Stats(BaseModel):
    total: int
    claimed: int
