"""Bring-your-own-number endpoints.

BYON errors are raised after the verification record has been updated
(attempt counted, record failed or expired).  Those updates must survive
the error response, so the handlers commit before re-raising.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import Annotated, Any, TypeVar

from did_engine.byon import ByonService
from did_engine.errors import ByonError
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import AdminDep, ClockDep, CustomerDep, OtpDep, SessionDep, SettingsDep
from api.schemas import ByonInitiateRequest, ByonVerifyRequest, DidResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["byon"])

_T = TypeVar("_T")


async def _keeping_bookkeeping(session: AsyncSession, call: Awaitable[_T]) -> _T:
    try:
        return await call
    except ByonError:
        await session.commit()
        raise


def get_byon_service(session: SessionDep, otp: OtpDep, clock: ClockDep, settings: SettingsDep) -> ByonService:
    return ByonService(session, otp=otp, clock=clock, default_limit=settings.byon_default_limit)


ByonServiceDep = Annotated[ByonService, Depends(get_byon_service)]


@router.post("/byon/initiate")
async def initiate(
    body: ByonInitiateRequest,
    customer_id: CustomerDep,
    service: ByonServiceDep,
    session: SessionDep,
) -> dict[str, Any]:
    """Send a verification code to the number."""
    return await _keeping_bookkeeping(session, service.initiate(customer_id, body.phone_number))


@router.post("/byon/verify", response_model=DidResponse, status_code=201)
async def verify(
    body: ByonVerifyRequest,
    customer_id: CustomerDep,
    service: ByonServiceDep,
    session: SessionDep,
) -> DidResponse:
    """Check the code; on success the number becomes the customer's DID."""
    did = await _keeping_bookkeeping(session, service.verify(customer_id, body.phone_number, body.code))
    return DidResponse.model_validate(did)


@router.get("/byon/status")
async def status(
    customer_id: CustomerDep,
    service: ByonServiceDep,
) -> dict[str, Any]:
    result = await service.get_status(customer_id)
    return result.to_dict()


@router.post("/admin/byon/{did_id}/release", response_model=DidResponse)
async def release(
    did_id: int,
    admin: AdminDep,
    service: ByonServiceDep,
) -> DidResponse:
    """Detach a BYON number from its customer."""
    logger.info("BYON DID %s release requested by %s", did_id, admin)
    did = await service.release_byon(did_id)
    return DidResponse.model_validate(did)
