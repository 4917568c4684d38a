from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import structlog

from ..core.config import settings
from ..core.security import Principal
from ..models.database import get_db
from ..models.enums import RequestStatus, UrgencyLevel
from ..models.schemas import (
    ApiResponse,
    BloodRequestCreate,
    BloodRequestOut,
    BloodRequestPage,
    DeliveryConfirmation,
    Pagination,
    RequestStatusUpdate,
)
from ..services.blood_requests import BloodRequestService
from .deps import require_hospital, require_ngo

logger = structlog.get_logger()
router = APIRouter(prefix="/blood-requests", tags=["blood-requests"])


@router.post("", response_model=ApiResponse[BloodRequestOut], status_code=201)
async def create_blood_request(
    payload: BloodRequestCreate,
    principal: Principal = Depends(require_hospital),
    db: AsyncSession = Depends(get_db)
):
    """Hospital asks an NGO for units of one or more blood groups."""
    request = await BloodRequestService(db).create(
        principal,
        ngo_id=payload.ngo_id,
        blood_groups=payload.blood_groups,
        urgency=payload.urgency,
        notes=payload.notes
    )
    return ApiResponse(message="Blood request created successfully", data=BloodRequestOut.from_model(request))


@router.get("/ngo", response_model=ApiResponse[BloodRequestPage])
async def list_ngo_blood_requests(
    status: Optional[RequestStatus] = None,
    urgency: Optional[UrgencyLevel] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    requests, total = await BloodRequestService(db).list_for_ngo(
        principal, status=status, urgency=urgency, page=page, limit=limit
    )
    return ApiResponse(
        message="Blood requests fetched successfully",
        data=BloodRequestPage(
            requests=[BloodRequestOut.from_model(r) for r in requests],
            pagination=Pagination.build(total, page, limit, len(requests))
        )
    )


@router.get("/hospital", response_model=ApiResponse[BloodRequestPage])
async def list_hospital_blood_requests(
    status: Optional[RequestStatus] = None,
    urgency: Optional[UrgencyLevel] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    principal: Principal = Depends(require_hospital),
    db: AsyncSession = Depends(get_db)
):
    requests, total = await BloodRequestService(db).list_for_hospital(
        principal, status=status, urgency=urgency, page=page, limit=limit
    )
    return ApiResponse(
        message="Blood requests fetched successfully",
        data=BloodRequestPage(
            requests=[BloodRequestOut.from_model(r) for r in requests],
            pagination=Pagination.build(total, page, limit, len(requests))
        )
    )


@router.patch("/{request_id}/status", response_model=ApiResponse[BloodRequestOut])
async def update_blood_request_status(
    request_id: str,
    payload: RequestStatusUpdate,
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    """Advance a request along Pending, Accepted, Processing, En Route, Delivered, Completed."""
    request = await BloodRequestService(db).advance_status(
        principal,
        request_id,
        payload.status,
        notes=payload.notes,
        estimated_delivery_time=payload.estimated_delivery_time,
        delivered_by=payload.delivered_by
    )
    return ApiResponse(message="Blood request status updated successfully", data=BloodRequestOut.from_model(request))


@router.post("/{request_id}/confirm-delivery", response_model=ApiResponse[BloodRequestOut])
async def confirm_blood_delivery(
    request_id: str,
    payload: DeliveryConfirmation,
    principal: Principal = Depends(require_hospital),
    db: AsyncSession = Depends(get_db)
):
    request = await BloodRequestService(db).confirm_delivery(
        principal,
        request_id,
        received_by=payload.received_by,
        confirmation_code=payload.confirmation_code,
        notes=payload.notes
    )
    return ApiResponse(message="Blood delivery confirmed successfully", data=BloodRequestOut.from_model(request))
