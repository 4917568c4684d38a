"""
Database models, enums and Pydantic schemas for the Blood Logistics Service.
"""

from .database import (
    Base,
    get_db,
    get_db_session,
    init_database,
    NGO,
    Hospital,
    Donor,
    Center,
    CenterInventory,
    BloodUnit,
    TransferRecord,
    BloodRequest,
    BloodRequestLine,
)
from .enums import (
    BloodGroup,
    CenterType,
    CenterStatus,
    UnitStatus,
    HolderKind,
    UrgencyLevel,
    RequestStatus,
)
from .schemas import ApiResponse, ErrorResponse, HealthCheckResponse

__all__ = [
    "Base",
    "get_db",
    "get_db_session",
    "init_database",
    "NGO",
    "Hospital",
    "Donor",
    "Center",
    "CenterInventory",
    "BloodUnit",
    "TransferRecord",
    "BloodRequest",
    "BloodRequestLine",
    "BloodGroup",
    "CenterType",
    "CenterStatus",
    "UnitStatus",
    "HolderKind",
    "UrgencyLevel",
    "RequestStatus",
    "ApiResponse",
    "ErrorResponse",
    "HealthCheckResponse",
]
