from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import structlog

from ..core.config import settings
from ..core.security import Principal
from ..models.database import get_db
from ..models.enums import BloodGroup, UnitStatus
from ..models.schemas import (
    ApiResponse,
    BloodUnitCreate,
    BloodUnitDetail,
    BloodUnitOut,
    BloodUnitPage,
    InventorySummary,
    Pagination,
    UnitStatusUpdate,
    UnitTransferCreate,
)
from ..services.blood_units import BloodUnitService
from .deps import require_ngo

logger = structlog.get_logger()
router = APIRouter(prefix="/blood", tags=["blood-units"])


@router.post("/units", response_model=ApiResponse[BloodUnitOut], status_code=201)
async def register_blood_unit(
    payload: BloodUnitCreate,
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    """
    Register a donation collected at one of the calling NGO's centers.

    The unit starts in ``processing`` and is held by the collecting center.
    """
    unit = await BloodUnitService(db).register(
        principal,
        donor_id=payload.donor_id,
        center_id=payload.center_id,
        blood_group=payload.blood_group,
        volume_ml=payload.volume_ml,
        collection_date=payload.collection_date,
        health_metrics=payload.health_metrics.dict() if payload.health_metrics else None,
        notes=payload.notes
    )
    return ApiResponse(message="Blood unit registered successfully", data=BloodUnitOut.from_model(unit))


@router.get("/units", response_model=ApiResponse[BloodUnitPage])
async def list_blood_units(
    center_id: Optional[str] = None,
    status: Optional[UnitStatus] = None,
    blood_group: Optional[BloodGroup] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    """List the calling NGO's units, newest first."""
    units, total = await BloodUnitService(db).list_units(
        principal,
        center_id=center_id,
        status=status,
        blood_group=blood_group,
        page=page,
        limit=limit
    )
    return ApiResponse(
        message="Blood units fetched successfully",
        data=BloodUnitPage(
            units=[BloodUnitOut.from_model(u) for u in units],
            pagination=Pagination.build(total, page, limit, len(units))
        )
    )


@router.get("/units/{unit_id}", response_model=ApiResponse[BloodUnitDetail])
async def get_blood_unit(
    unit_id: str,
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    """Unit detail with its full transfer ledger."""
    unit, transfers = await BloodUnitService(db).get_detail(principal, unit_id)
    return ApiResponse(
        message="Blood unit details fetched successfully",
        data=BloodUnitDetail.from_model(unit, transfers)
    )


@router.patch("/units/{unit_id}/status", response_model=ApiResponse[BloodUnitOut])
async def update_blood_unit_status(
    unit_id: str,
    payload: UnitStatusUpdate,
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    unit = await BloodUnitService(db).set_status(principal, unit_id, payload.status, payload.notes)
    return ApiResponse(message="Blood unit status updated successfully", data=BloodUnitOut.from_model(unit))


@router.post("/units/{unit_id}/transfer", response_model=ApiResponse[BloodUnitOut])
async def transfer_blood_unit(
    unit_id: str,
    payload: UnitTransferCreate,
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    """
    Transfer an available unit to an NGO, center or hospital.

    Naming a ``request_id`` on a hospital transfer advances that request to
    Processing when it is still Pending or Accepted.
    """
    unit = await BloodUnitService(db).transfer(
        principal,
        unit_id,
        to_entity_id=payload.to_entity_id,
        to_entity_kind=payload.to_entity_kind,
        reason=payload.reason,
        request_id=payload.request_id
    )
    return ApiResponse(message="Blood unit transferred successfully", data=BloodUnitOut.from_model(unit))


@router.get("/expiring", response_model=ApiResponse[List[BloodUnitOut]])
async def list_expiring_blood_units(
    days: int = Query(settings.EXPIRING_SOON_DAYS, ge=0),
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    units = await BloodUnitService(db).list_expiring_soon(principal, days)
    return ApiResponse(
        message="Expiring blood units fetched successfully",
        data=[BloodUnitOut.from_model(u) for u in units]
    )


@router.get("/inventory", response_model=ApiResponse[InventorySummary])
async def get_blood_inventory(
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    """Per-center and NGO-wide inventory with units close to expiry."""
    summary = await BloodUnitService(db).inventory_summary(principal)
    return ApiResponse(message="Blood inventory fetched successfully", data=summary)
