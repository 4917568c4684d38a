from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Generic, TypeVar
from datetime import datetime
import re

from .enums import (
    BloodGroup,
    CenterType,
    CenterStatus,
    UnitStatus,
    HolderKind,
    UrgencyLevel,
    RequestStatus,
)

DataT = TypeVar("DataT")

CONFIRMATION_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$")


class ApiResponse(BaseModel, Generic[DataT]):
    """Envelope wrapping every successful response."""
    status: str = Field("success", description="Outcome of the call")
    message: str = Field(..., description="Human-readable summary")
    data: Optional[DataT] = Field(None, description="Payload")


class ErrorResponse(BaseModel):
    """Envelope for failed calls."""
    status: str = Field("error", description="Always 'error'")
    message: str = Field(..., description="Human-readable error message")


class Pagination(BaseModel):
    total: int = Field(..., description="Total matching records")
    total_pages: int = Field(..., description="Number of pages")
    current_page: int = Field(..., description="Page returned")
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, total: int, page: int, limit: int, returned: int) -> "Pagination":
        skip = (page - 1) * limit
        return cls(
            total=total,
            total_pages=(total + limit - 1) // limit,
            current_page=page,
            has_next_page=skip + returned < total,
            has_prev_page=page > 1
        )


# Blood units

class HealthMetrics(BaseModel):
    """Donor health readings taken at collection time."""
    hemoglobin: Optional[float] = Field(None, ge=0, description="Hemoglobin (g/dL)")
    blood_pressure: Optional[str] = Field(None, description="Blood pressure, e.g. 120/80")
    pulse: Optional[int] = Field(None, ge=0, description="Pulse (bpm)")
    temperature: Optional[float] = Field(None, description="Body temperature")


class BloodUnitCreate(BaseModel):
    """Registration of a new donation at one of the caller's centers."""
    donor_id: str = Field(..., min_length=1, description="Donor identifier")
    center_id: str = Field(..., min_length=1, description="Collecting center identifier")
    blood_group: BloodGroup = Field(..., description="Blood group")
    volume_ml: Optional[int] = Field(None, ge=100, description="Volume collected (mL)")
    collection_date: Optional[datetime] = Field(None, description="Collection date, defaults to now")
    health_metrics: Optional[HealthMetrics] = None
    notes: Optional[str] = None


class UnitStatusUpdate(BaseModel):
    status: UnitStatus = Field(..., description="New unit status")
    notes: Optional[str] = None


class UnitTransferCreate(BaseModel):
    """Move a unit to a new holder."""
    to_entity_id: str = Field(..., min_length=1, description="Destination entity identifier")
    to_entity_kind: HolderKind = Field(..., description="Destination entity kind")
    reason: Optional[str] = Field(None, description="Reason recorded in the ledger")
    request_id: Optional[str] = Field(None, description="Blood request fulfilled by this transfer")


class HolderOut(BaseModel):
    entity_id: str
    entity_kind: HolderKind
    updated_at: Optional[datetime] = None


class TransferRecordOut(BaseModel):
    from_id: str
    from_kind: HolderKind
    to_id: str
    to_kind: HolderKind
    transferred_at: datetime
    reason: str
    performed_by: Optional[str] = None

    @classmethod
    def from_model(cls, record) -> "TransferRecordOut":
        return cls(
            from_id=record.from_id,
            from_kind=record.from_kind,
            to_id=record.to_id,
            to_kind=record.to_kind,
            transferred_at=record.transferred_at,
            reason=record.reason,
            performed_by=record.performed_by
        )


class BloodUnitOut(BaseModel):
    id: str
    donor_id: str
    ngo_id: str
    center_id: str
    center_type: CenterType
    donation_center: Optional[str] = None
    blood_group: BloodGroup
    volume_ml: int
    collection_date: datetime
    expiry_date: datetime
    status: UnitStatus
    current_location: HolderOut
    health_metrics: Optional[dict] = None
    notes: Optional[str] = None
    last_verified_by: Optional[str] = None
    last_verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def unit_fields(cls, unit) -> dict:
        return dict(
            id=unit.id,
            donor_id=unit.donor_id,
            ngo_id=unit.ngo_id,
            center_id=unit.center_id,
            center_type=unit.center_type,
            donation_center=unit.donation_center,
            blood_group=unit.blood_group,
            volume_ml=unit.volume_ml,
            collection_date=unit.collection_date,
            expiry_date=unit.expiry_date,
            status=unit.status,
            current_location=HolderOut(
                entity_id=unit.holder_id,
                entity_kind=unit.holder_kind,
                updated_at=unit.holder_updated_at
            ),
            health_metrics=unit.health_metrics,
            notes=unit.notes,
            last_verified_by=unit.last_verified_by,
            last_verified_at=unit.last_verified_at,
            created_at=unit.created_at,
            updated_at=unit.updated_at
        )

    @classmethod
    def from_model(cls, unit) -> "BloodUnitOut":
        return cls(**cls.unit_fields(unit))


class BloodUnitDetail(BloodUnitOut):
    transfer_history: List[TransferRecordOut] = Field(default_factory=list)

    @classmethod
    def from_model(cls, unit, transfers=()) -> "BloodUnitDetail":
        return cls(
            transfer_history=[TransferRecordOut.from_model(t) for t in transfers],
            **cls.unit_fields(unit)
        )


class BloodUnitPage(BaseModel):
    units: List[BloodUnitOut]
    pagination: Pagination


# Inventory

class InventoryCounts(BaseModel):
    total: int = 0
    available: int = 0


class CenterInventoryOut(BaseModel):
    center_id: str
    center_name: str
    center_type: CenterType
    inventory: Dict[str, InventoryCounts]


class ExpiringUnitOut(BaseModel):
    id: str
    blood_group: BloodGroup
    expiry_date: datetime
    days_remaining: int
    center_id: str
    center_name: Optional[str] = None


class InventorySummary(BaseModel):
    """Per-center and NGO-wide unit counts with units close to expiry."""
    total: Dict[str, InventoryCounts]
    by_center: List[CenterInventoryOut]
    expiring_soon: List[ExpiringUnitOut]


# Blood requests

class BloodRequestLineIn(BaseModel):
    blood_group: BloodGroup = Field(..., description="Requested blood group")
    units: int = Field(..., ge=1, description="Number of units requested")


class BloodRequestCreate(BaseModel):
    ngo_id: str = Field(..., min_length=1, description="NGO the request is addressed to")
    blood_groups: List[BloodRequestLineIn] = Field(..., description="Requested groups and quantities")
    urgency: UrgencyLevel = Field(UrgencyLevel.REGULAR, description="Urgency level")
    notes: Optional[str] = None

    @validator('blood_groups')
    def validate_blood_groups(cls, v):
        if not v:
            raise ValueError('At least one blood group is required')
        return v


class RequestStatusUpdate(BaseModel):
    status: RequestStatus = Field(..., description="Next request status")
    notes: Optional[str] = None
    estimated_delivery_time: Optional[datetime] = None
    delivered_by: Optional[str] = Field(None, description="Courier, recorded when the request goes En Route")


class DeliveryConfirmation(BaseModel):
    received_by: str = Field(..., min_length=1, description="Name of the receiving staff member")
    confirmation_code: Optional[str] = Field(None, description="Six upper-case letters or digits")
    notes: Optional[str] = None

    @validator('confirmation_code')
    def validate_confirmation_code(cls, v):
        if v is not None and not CONFIRMATION_CODE_PATTERN.match(v):
            raise ValueError('Confirmation code must be 6 upper-case letters or digits')
        return v


class BloodRequestLineOut(BaseModel):
    blood_group: BloodGroup
    units: int


class DeliveryDetailsOut(BaseModel):
    estimated_delivery_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None
    delivered_by: Optional[str] = None
    received_by: Optional[str] = None
    confirmation_code: Optional[str] = None


class BloodRequestOut(BaseModel):
    id: str
    hospital_id: str
    ngo_id: str
    blood_groups: List[BloodRequestLineOut]
    urgency: UrgencyLevel
    status: RequestStatus
    notes: Optional[str] = None
    delivery_details: DeliveryDetailsOut
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, request) -> "BloodRequestOut":
        return cls(
            id=request.id,
            hospital_id=request.hospital_id,
            ngo_id=request.ngo_id,
            blood_groups=[
                BloodRequestLineOut(blood_group=line.blood_group, units=line.units)
                for line in request.lines
            ],
            urgency=request.urgency,
            status=request.status,
            notes=request.notes,
            delivery_details=DeliveryDetailsOut(
                estimated_delivery_time=request.estimated_delivery_time,
                actual_delivery_time=request.actual_delivery_time,
                delivered_by=request.delivered_by,
                received_by=request.received_by,
                confirmation_code=request.confirmation_code
            ),
            created_at=request.created_at,
            updated_at=request.updated_at
        )


class BloodRequestPage(BaseModel):
    requests: List[BloodRequestOut]
    pagination: Pagination


# Centers

class CenterCreate(BaseModel):
    """New blood bank or donation camp; type-specific fields are checked on create."""
    name: str = Field(..., min_length=1)
    type: CenterType
    description: Optional[str] = None
    status: CenterStatus = CenterStatus.PLANNING
    address: Optional[str] = None
    city: str = Field(..., min_length=1)
    pin_code: str = Field(..., min_length=1)
    country: str = "India"
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    campaign_name: Optional[str] = None
    target_donations: Optional[int] = Field(None, ge=1)
    registration_deadline: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    license_number: Optional[str] = None
    license_expiry: Optional[datetime] = None
    storage_capacity: Optional[int] = Field(None, ge=1)


class CenterOut(BaseModel):
    id: str
    ngo_id: str
    name: str
    type: CenterType
    description: Optional[str] = None
    status: CenterStatus
    is_active: bool
    address: Optional[str] = None
    city: str
    pin_code: str
    country: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    campaign_name: Optional[str] = None
    target_donations: Optional[int] = None
    registration_deadline: Optional[datetime] = None
    license_number: Optional[str] = None
    license_expiry: Optional[datetime] = None
    storage_capacity: Optional[int] = None
    total_donations: int = 0
    total_donors: int = 0
    last_donation_date: Optional[datetime] = None

    @classmethod
    def center_fields(cls, center) -> dict:
        return dict(
            id=center.id,
            ngo_id=center.ngo_id,
            name=center.name,
            type=center.type,
            description=center.description,
            status=center.status,
            is_active=center.is_active,
            address=center.address,
            city=center.city,
            pin_code=center.pin_code,
            country=center.country,
            latitude=center.latitude,
            longitude=center.longitude,
            campaign_name=center.campaign_name,
            target_donations=center.target_donations,
            registration_deadline=center.registration_deadline,
            license_number=center.license_number,
            license_expiry=center.license_expiry,
            storage_capacity=center.storage_capacity,
            total_donations=center.total_donations,
            total_donors=center.total_donors,
            last_donation_date=center.last_donation_date
        )

    @classmethod
    def from_model(cls, center) -> "CenterOut":
        return cls(**cls.center_fields(center))


class NearbyCenterOut(CenterOut):
    distance_km: float

    @classmethod
    def from_model(cls, center, distance_km: float = 0.0) -> "NearbyCenterOut":
        return cls(distance_km=round(distance_km, 3), **cls.center_fields(center))


class CenterPage(BaseModel):
    centers: List[CenterOut]
    pagination: Pagination


# Operations

class HealthCheckResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Health status")
    timestamp: datetime = Field(default_factory=datetime.now, description="Check timestamp")
    version: str = Field(..., description="Service version")
    database_status: str = Field(..., description="Database connection status")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
