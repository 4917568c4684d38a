import enum


class BloodGroup(str, enum.Enum):
    """ABO/Rh blood group."""
    A_POSITIVE = "A+"
    A_NEGATIVE = "A-"
    B_POSITIVE = "B+"
    B_NEGATIVE = "B-"
    AB_POSITIVE = "AB+"
    AB_NEGATIVE = "AB-"
    O_POSITIVE = "O+"
    O_NEGATIVE = "O-"


class CenterType(str, enum.Enum):
    """Kind of facility operated by an NGO."""
    BLOOD_BANK = "BloodBank"
    DONATION_CAMP = "DonationCamp"


class CenterStatus(str, enum.Enum):
    PLANNING = "Planning"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    SUSPENDED = "Suspended"


class UnitStatus(str, enum.Enum):
    """Lifecycle status of a single blood unit."""
    PROCESSING = "processing"
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    USED = "used"
    EXPIRED = "expired"
    DISCARDED = "discarded"


class HolderKind(str, enum.Enum):
    """Kind of entity that can physically hold a blood unit."""
    NGO = "NGO"
    CENTER = "Center"
    HOSPITAL = "Hospital"


class UrgencyLevel(str, enum.Enum):
    EMERGENCY = "Emergency"
    REGULAR = "Regular"
    FUTURE_NEED = "Future Need"


class RequestStatus(str, enum.Enum):
    """Fulfillment status of a hospital blood request."""
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    PROCESSING = "Processing"
    EN_ROUTE = "En Route"
    DELIVERED = "Delivered"
    COMPLETED = "Completed"


# Units in these states still count against a center.
ACTIVE_UNIT_STATUSES = (UnitStatus.PROCESSING, UnitStatus.AVAILABLE)

REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: (RequestStatus.ACCEPTED, RequestStatus.REJECTED),
    RequestStatus.ACCEPTED: (RequestStatus.PROCESSING,),
    RequestStatus.PROCESSING: (RequestStatus.EN_ROUTE,),
    RequestStatus.EN_ROUTE: (RequestStatus.DELIVERED,),
    RequestStatus.DELIVERED: (RequestStatus.COMPLETED,),
    RequestStatus.REJECTED: (),
    RequestStatus.COMPLETED: (),
}

# A hospital transfer tied to a request moves it from these states to Processing.
TRANSFER_BINDABLE_REQUEST_STATUSES = (RequestStatus.PENDING, RequestStatus.ACCEPTED)
