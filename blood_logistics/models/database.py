from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Boolean, Text, JSON, ForeignKey, Enum,
    Index, UniqueConstraint
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, relationship, declarative_base
from contextlib import asynccontextmanager
from tenacity import retry, stop_after_attempt, wait_fixed
import uuid
import structlog

from ..core.config import settings
from ..utils.timeutils import utcnow
from .enums import (
    BloodGroup,
    CenterType,
    CenterStatus,
    UnitStatus,
    HolderKind,
    UrgencyLevel,
    RequestStatus,
)

logger = structlog.get_logger()

Base = declarative_base()

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    future=True
)

# Create async session factory
AsyncSessionLocal = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


@retry(
    stop=stop_after_attempt(settings.MAX_RETRY_ATTEMPTS),
    wait=wait_fixed(settings.RETRY_DELAY),
    reraise=True
)
async def init_database():
    """Initialize database tables, retrying while the database comes up."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized")


@asynccontextmanager
async def get_db_session() -> AsyncSession:
    """Get database session context manager."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# Dependency for FastAPI
async def get_db() -> AsyncSession:
    """Database dependency for FastAPI."""
    async with get_db_session() as session:
        yield session


def new_id() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls):
    """Store enum values (e.g. "A+", "En Route") rather than member names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


class NGO(Base):
    """NGO operating blood banks and donation camps."""
    __tablename__ = "ngos"

    id = Column(String, primary_key=True, index=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)
    city = Column(String, nullable=True)
    total_donations_collected = Column(Integer, nullable=False, default=0)
    total_hospitals_served = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Hospital(Base):
    """Hospital that requests and receives blood units."""
    __tablename__ = "hospitals"

    id = Column(String, primary_key=True, index=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)
    city = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Donor(Base):
    """Individual blood donor."""
    __tablename__ = "donors"

    id = Column(String, primary_key=True, index=True, default=new_id)
    full_name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)
    blood_group = Column(_enum(BloodGroup), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Center(Base):
    """Blood bank or donation camp owned by a single NGO."""
    __tablename__ = "centers"

    id = Column(String, primary_key=True, index=True, default=new_id)
    ngo_id = Column(String, ForeignKey("ngos.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(_enum(CenterType), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(_enum(CenterStatus), nullable=False, default=CenterStatus.PLANNING)
    is_active = Column(Boolean, nullable=False, default=True)

    # Location
    address = Column(String, nullable=True)
    city = Column(String, nullable=False, index=True)
    pin_code = Column(String, nullable=False)
    country = Column(String, nullable=False, default="India")
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Donation camp fields
    campaign_name = Column(String, nullable=True)
    target_donations = Column(Integer, nullable=True)
    registration_deadline = Column(DateTime, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)

    # Blood bank fields
    license_number = Column(String, nullable=True, unique=True)
    license_expiry = Column(DateTime, nullable=True)
    storage_capacity = Column(Integer, nullable=True)

    # Statistics
    total_donations = Column(Integer, nullable=False, default=0)
    total_donors = Column(Integer, nullable=False, default=0)
    last_donation_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_centers_type_status", "type", "status"),
    )


class CenterInventory(Base):
    """Cached per-blood-group counts for a center, rebuilt from blood units."""
    __tablename__ = "center_inventory"

    id = Column(Integer, primary_key=True, autoincrement=True)
    center_id = Column(String, ForeignKey("centers.id"), nullable=False, index=True)
    blood_group = Column(_enum(BloodGroup), nullable=False)
    units = Column(Integer, nullable=False, default=0)
    available_units = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("center_id", "blood_group", name="uq_center_inventory_group"),
    )


class BloodUnit(Base):
    """One physical blood donation tracked through its lifecycle."""
    __tablename__ = "blood_units"

    id = Column(String, primary_key=True, index=True, default=new_id)
    donor_id = Column(String, ForeignKey("donors.id"), nullable=False)
    ngo_id = Column(String, ForeignKey("ngos.id"), nullable=False)
    center_id = Column(String, ForeignKey("centers.id"), nullable=False)
    center_type = Column(_enum(CenterType), nullable=False)
    donation_center = Column(String, nullable=True)
    blood_group = Column(_enum(BloodGroup), nullable=False, index=True)
    volume_ml = Column(Integer, nullable=False, default=450)
    collection_date = Column(DateTime, nullable=False, default=utcnow)
    expiry_date = Column(DateTime, nullable=False)
    status = Column(_enum(UnitStatus), nullable=False, default=UnitStatus.PROCESSING)
    health_metrics = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    # Current holder; matches the destination of the latest transfer record
    holder_id = Column(String, nullable=False)
    holder_kind = Column(_enum(HolderKind), nullable=False, default=HolderKind.CENTER)
    holder_updated_at = Column(DateTime, default=utcnow)

    last_verified_by = Column(String, nullable=True)
    last_verified_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_blood_units_ngo_status", "ngo_id", "status"),
        Index("ix_blood_units_center_group", "center_id", "blood_group"),
        Index("ix_blood_units_status_expiry", "status", "expiry_date"),
        Index("ix_blood_units_holder", "holder_id", "holder_kind"),
    )


class TransferRecord(Base):
    """Append-only ledger entry recording a change of holder for a blood unit."""
    __tablename__ = "transfer_records"

    # Autoincrement id doubles as the append sequence within a timestamp
    id = Column(Integer, primary_key=True, autoincrement=True)
    unit_id = Column(String, ForeignKey("blood_units.id"), nullable=False, index=True)
    from_id = Column(String, nullable=False)
    from_kind = Column(_enum(HolderKind), nullable=False)
    to_id = Column(String, nullable=False)
    to_kind = Column(_enum(HolderKind), nullable=False)
    transferred_at = Column(DateTime, nullable=False, default=utcnow)
    reason = Column(Text, nullable=False)
    performed_by = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_transfer_records_unit_time", "unit_id", "transferred_at"),
    )


class BloodRequest(Base):
    """A hospital's request to one NGO for quantities of specific blood groups."""
    __tablename__ = "blood_requests"

    id = Column(String, primary_key=True, index=True, default=new_id)
    hospital_id = Column(String, ForeignKey("hospitals.id"), nullable=False, index=True)
    ngo_id = Column(String, ForeignKey("ngos.id"), nullable=False, index=True)
    urgency = Column(_enum(UrgencyLevel), nullable=False, default=UrgencyLevel.REGULAR)
    status = Column(_enum(RequestStatus), nullable=False, default=RequestStatus.PENDING)
    notes = Column(Text, nullable=True)

    # Delivery details
    estimated_delivery_time = Column(DateTime, nullable=True)
    actual_delivery_time = Column(DateTime, nullable=True)
    delivered_by = Column(String, nullable=True)
    received_by = Column(String, nullable=True)
    confirmation_code = Column(String(6), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    lines = relationship(
        "BloodRequestLine",
        lazy="selectin",
        order_by="BloodRequestLine.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}


class BloodRequestLine(Base):
    """One blood group and quantity within a request."""
    __tablename__ = "blood_request_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String, ForeignKey("blood_requests.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    blood_group = Column(_enum(BloodGroup), nullable=False)
    units = Column(Integer, nullable=False)
