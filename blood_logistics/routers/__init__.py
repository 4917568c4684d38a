"""
API routers for the Blood Logistics Service.
"""

from . import blood_requests, blood_units, centers, health

__all__ = ["blood_requests", "blood_units", "centers", "health"]
