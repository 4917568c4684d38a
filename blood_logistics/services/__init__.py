"""
Business logic services for blood unit and blood request logistics.
"""

from .inventory import InventoryAggregator
from .blood_units import BloodUnitService
from .blood_requests import BloodRequestService
from .centers import CenterService

__all__ = ["InventoryAggregator", "BloodUnitService", "BloodRequestService", "CenterService"]
