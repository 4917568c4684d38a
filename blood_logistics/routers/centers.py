from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, List, Optional
import structlog

from ..core.config import settings
from ..core.security import Principal
from ..models.database import get_db
from ..models.enums import CenterType
from ..models.schemas import (
    ApiResponse,
    CenterCreate,
    CenterOut,
    CenterPage,
    InventoryCounts,
    NearbyCenterOut,
    Pagination,
)
from ..services.centers import CenterService
from ..services.inventory import InventoryAggregator
from .deps import get_current_principal, require_ngo

logger = structlog.get_logger()
router = APIRouter(prefix="/centers", tags=["centers"])


@router.post("", response_model=ApiResponse[CenterOut], status_code=201)
async def add_center(
    payload: CenterCreate,
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    """Create a blood bank or donation camp owned by the calling NGO."""
    center = await CenterService(db).add(principal, **payload.dict())
    return ApiResponse(message="Center created successfully", data=CenterOut.from_model(center))


@router.get("", response_model=ApiResponse[CenterPage])
async def list_centers(
    type: Optional[CenterType] = None,
    city: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    centers, total = await CenterService(db).list_for_ngo(
        principal, center_type=type, city=city, page=page, limit=limit
    )
    return ApiResponse(
        message="Centers fetched successfully",
        data=CenterPage(
            centers=[CenterOut.from_model(c) for c in centers],
            pagination=Pagination.build(total, page, limit, len(centers))
        )
    )


@router.get("/nearby", response_model=ApiResponse[List[NearbyCenterOut]])
async def find_nearby_centers(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(settings.NEARBY_DEFAULT_RADIUS_KM, gt=0),
    type: Optional[CenterType] = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db)
):
    """Active centers within ``radius_km`` of a point, nearest first."""
    matches = await CenterService(db).nearby(latitude, longitude, radius_km, center_type=type)
    return ApiResponse(
        message="Nearby centers fetched successfully",
        data=[NearbyCenterOut.from_model(center, distance) for center, distance in matches]
    )


@router.get("/{center_id}", response_model=ApiResponse[CenterOut])
async def get_center(
    center_id: str,
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    center = await CenterService(db).get(principal, center_id)
    return ApiResponse(message="Center fetched successfully", data=CenterOut.from_model(center))


@router.get("/{center_id}/inventory", response_model=ApiResponse[Dict[str, InventoryCounts]])
async def get_center_inventory(
    center_id: str,
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    """Cached per-blood-group counts for one center."""
    center = await CenterService(db).get(principal, center_id)
    counts = await InventoryAggregator(db).cached_counts(center.id)
    return ApiResponse(
        message="Center inventory fetched successfully",
        data=counts
    )


@router.delete("/{center_id}", response_model=ApiResponse[dict])
async def delete_center(
    center_id: str,
    principal: Principal = Depends(require_ngo),
    db: AsyncSession = Depends(get_db)
):
    """Delete a center; centers with unit history are deactivated instead."""
    deleted = await CenterService(db).delete(principal, center_id)
    message = "Center deleted successfully" if deleted else "Center deactivated successfully"
    return ApiResponse(message=message, data={"deleted": deleted})
