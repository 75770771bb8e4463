"""Value types shared across hrcompanion components."""
from .association import AssociationInfo
from .broadcast import POLAR_COMPANY_ID, HrBroadcast
from .connection_state import ConnectionState
from .lifecycle_event import EventKind, LifecycleEvent
from .notification_record import NotificationChannel, NotificationRecord, notification_key

__all__ = [
    "AssociationInfo",
    "ConnectionState",
    "EventKind",
    "HrBroadcast",
    "LifecycleEvent",
    "NotificationChannel",
    "NotificationRecord",
    "POLAR_COMPANY_ID",
    "notification_key",
]
