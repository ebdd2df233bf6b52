"""Database package for PropLinka."""
from .connection import get_db, init_db
from .models import (
    AuditLog,
    Base,
    ContentFlag,
    Conversation,
    Country,
    Favorite,
    Lawyer,
    LawyerReview,
    Message,
    Notification,
    Offer,
    Payment,
    PaymentEvent,
    PlatformSetting,
    Profile,
    Property,
    PropertyImage,
    PropertyReview,
    ReconciliationRun,
    Transaction,
    Viewing,
)

__all__ = [
    "Base",
    "AuditLog",
    "ContentFlag",
    "Conversation",
    "Country",
    "Favorite",
    "Lawyer",
    "LawyerReview",
    "Message",
    "Notification",
    "Offer",
    "Payment",
    "PaymentEvent",
    "PlatformSetting",
    "Profile",
    "Property",
    "PropertyImage",
    "PropertyReview",
    "ReconciliationRun",
    "Transaction",
    "Viewing",
    "get_db",
    "init_db",
]
