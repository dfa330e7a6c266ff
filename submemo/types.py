"""
Shared enums for the SubMemo backend.
"""

from __future__ import annotations

from enum import Enum


class TransitionKind(str, Enum):
    TRIAL_EXPIRED = "trial_expired"
    PAYMENT_DUE = "payment_due"


class NotificationType(str, Enum):
    TRIAL_ENDING = "trial_ending"
    PAYMENT_REMINDER = "payment_reminder"


class NotificationStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class ChangeEvent(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


SUBSCRIPTIONS_TABLE = "subscriptions"
PAYMENT_HISTORY_TABLE = "payment_history"

CATEGORIES = (
    "AI",
    "Music",
    "Hobby",
    "Business",
    "Entertainment",
    "English",
    "Other",
)

DEFAULT_TRIAL_NOTIFICATION_DAYS = (2, 1)
DEFAULT_PAYMENT_NOTIFICATION_DAYS = (3, 1)
DEFAULT_NOTIFICATION_TIME = "21:00:00"
DEFAULT_TIMEZONE = "Asia/Tokyo"
