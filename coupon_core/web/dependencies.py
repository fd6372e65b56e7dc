from fastapi import Header, Request

from coupon_core.service.allocation import AllocationEngine
from coupon_core.service.statistics import StatisticsReader

UNKNOWN_CLIENT = "unknown"


def get_client_id(
        x_forwarded_for: str = Header(None),
        cf_connecting_ip: str = Header(None),
        x_real_ip: str = Header(None),
) -> str:
    if x_forwarded_for:
        first = x_forwarded_for.split(",")[0].strip()
        if first:
            return first
    return cf_connecting_ip or x_real_ip or UNKNOWN_CLIENT


def get_allocation_engine(request: Request) -> AllocationEngine:
    return request.app.state.allocation_engine


def get_statistics_reader(request: Request) -> StatisticsReader:
    return request.app.state.statistics_reader
