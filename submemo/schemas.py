"""
Pydantic schemas for the SubMemo API.
"""

from __future__ import annotations

from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from submemo.types import (
    CATEGORIES,
    DEFAULT_NOTIFICATION_TIME,
    DEFAULT_PAYMENT_NOTIFICATION_DAYS,
    DEFAULT_TIMEZONE,
    DEFAULT_TRIAL_NOTIFICATION_DAYS,
)


def _known_category(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in CATEGORIES:
        raise ValueError(f"category must be one of: {', '.join(CATEGORIES)}")
    return value


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is not None and not value.strip():
        return None
    return value


class SubscriptionResponse(BaseModel):
    id: str
    name: str
    price: int
    category: str
    card_name: Optional[str] = None
    is_trial_period: bool
    trial_end_date: Optional[date] = None
    next_payment: date
    created_at: float
    updated_at: float


class SubscriptionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    price: int = Field(..., ge=0)
    category: str = Field(..., min_length=1, max_length=50)
    card_name: Optional[str] = Field(default=None, max_length=100)
    is_trial_period: bool = False
    trial_end_date: Optional[date] = None
    next_payment: Optional[date] = None

    @field_validator("category")
    @classmethod
    def check_category(cls, value: Optional[str]) -> Optional[str]:
        return _known_category(value)

    @field_validator("card_name")
    @classmethod
    def blank_card_is_none(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)

    @model_validator(mode="after")
    def check_dates(self) -> "SubscriptionCreate":
        if self.is_trial_period and not self.trial_end_date:
            raise ValueError("trial_end_date is required for trial subscriptions")
        if not self.is_trial_period and not self.next_payment:
            raise ValueError("next_payment is required for paid subscriptions")
        return self


class SubscriptionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    price: Optional[int] = Field(default=None, ge=0)
    category: Optional[str] = Field(default=None, min_length=1, max_length=50)
    card_name: Optional[str] = Field(default=None, max_length=100)
    is_trial_period: Optional[bool] = None
    trial_end_date: Optional[date] = None
    next_payment: Optional[date] = None

    @field_validator("category")
    @classmethod
    def check_category(cls, value: Optional[str]) -> Optional[str]:
        return _known_category(value)

    @field_validator("card_name")
    @classmethod
    def blank_card_is_none(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)


class SubscriptionListResponse(BaseModel):
    subscriptions: list[SubscriptionResponse]


class TransitionResponse(BaseModel):
    subscription_id: str
    name: str
    kind: str
    ok: bool
    next_payment: Optional[date] = None
    payment_recorded: bool
    error: Optional[str] = None


class EvaluateResponse(BaseModel):
    evaluated_on: date
    transitions: list[TransitionResponse]


class UpcomingPaymentResponse(BaseModel):
    subscription: SubscriptionResponse
    days_until: int
    urgency: str


class UpcomingPaymentsResponse(BaseModel):
    payments: list[UpcomingPaymentResponse]


class SummaryResponse(BaseModel):
    total_monthly_spend: int
    total_trial_value: int
    paid_count: int
    trial_count: int
    this_month: list[SubscriptionResponse]


class PaymentResponse(BaseModel):
    id: str
    subscription_id: str
    amount: int
    payment_date: date
    category: str
    created_at: float
    subscription_name: Optional[str] = None


class PaymentCreate(BaseModel):
    subscription_id: str
    amount: int = Field(..., ge=0)
    payment_date: date
    category: str = Field(..., min_length=1, max_length=50)

    @field_validator("category")
    @classmethod
    def check_category(cls, value: str) -> str:
        return _known_category(value)


class PaymentListResponse(BaseModel):
    payments: list[PaymentResponse]


class MonthlySpendingResponse(BaseModel):
    month: str
    total: int
    categories: dict[str, int]


class MonthlySpendingListResponse(BaseModel):
    months: list[MonthlySpendingResponse]


class NotificationSettingsPayload(BaseModel):
    email_notifications_enabled: bool = True
    trial_notification_days: list[int] = Field(
        default_factory=lambda: list(DEFAULT_TRIAL_NOTIFICATION_DAYS)
    )
    payment_notification_days: list[int] = Field(
        default_factory=lambda: list(DEFAULT_PAYMENT_NOTIFICATION_DAYS)
    )
    notification_time: str = Field(
        default=DEFAULT_NOTIFICATION_TIME, pattern=r"^\d{2}:\d{2}(:\d{2})?$"
    )
    timezone: str = DEFAULT_TIMEZONE
    email: Optional[str] = Field(default=None, max_length=320)

    @field_validator("trial_notification_days", "payment_notification_days")
    @classmethod
    def positive_unique_days(cls, value: list[int]) -> list[int]:
        if any(day < 1 or day > 30 for day in value):
            raise ValueError("notification days must be between 1 and 30")
        return sorted(set(value), reverse=True)


class NotificationHistoryItem(BaseModel):
    id: str
    subscription_id: str
    subscription_name: Optional[str] = None
    notification_type: str
    days_before: int
    target_date: date
    sent_at: float
    email_address: str
    subject: str
    status: str
    error_message: Optional[str] = None


class NotificationHistoryResponse(BaseModel):
    history: list[NotificationHistoryItem]


class NotificationRunResponse(BaseModel):
    success: Literal[True] = True
    triggered: bool = True
    message: Optional[str] = None
    local_time: Optional[str] = None
    processed_date: Optional[date] = None
    notifications_sent: int = 0
    notifications_failed: int = 0
    notifications_skipped: int = 0
    details: list[dict] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: Literal["ok"]
