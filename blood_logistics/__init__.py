"""
Blood Logistics Service

Backend for NGOs, blood centers and hospitals. It tracks donated blood units
from collection to delivery, keeps an append-only custody ledger per unit,
maintains per-center inventory counts and runs hospital blood requests
through their fulfilment workflow.

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "High Five"
__description__ = "Blood unit lifecycle, custody ledger and request fulfilment service"
