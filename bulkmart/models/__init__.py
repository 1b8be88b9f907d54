# bulkmart/models/__init__.py
"""
统一导出 ORM 模型。
"""

from bulkmart.models.audit_event import AuditEvent
from bulkmart.models.inventory_commit import InventoryCommit
from bulkmart.models.listing import Listing
from bulkmart.models.payment_event import PaymentEvent
from bulkmart.models.rating import Rating
from bulkmart.models.reservation import Reservation
from bulkmart.models.user import User

__all__ = [
    "AuditEvent",
    "InventoryCommit",
    "Listing",
    "PaymentEvent",
    "Rating",
    "Reservation",
    "User",
]
