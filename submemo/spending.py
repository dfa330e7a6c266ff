"""
Read-side views over subscriptions and payment history: monthly spending,
upcoming payments and dashboard totals.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Iterable
from zoneinfo import ZoneInfo

from submemo.db import PaymentRecord, SubscriptionRecord

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class MonthlySpending:
    month: str
    total: int = 0
    categories: dict[str, int] = field(default_factory=dict)


@dataclass
class UpcomingPayment:
    subscription: SubscriptionRecord
    days_until: int
    urgency: str


@dataclass
class SpendingSummary:
    total_monthly_spend: int
    total_trial_value: int
    paid_count: int
    trial_count: int


def days_until(target: date, now: datetime, tz_name: str) -> int:
    """Whole days from ``now`` until midnight of ``target`` in ``tz_name``, rounded up."""
    tz = ZoneInfo(tz_name)
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    midnight = datetime.combine(target, time.min, tzinfo=tz)
    return math.ceil((midnight - now).total_seconds() / SECONDS_PER_DAY)


def urgency(days: int) -> str:
    if days <= 1:
        return "critical"
    if days <= 3:
        return "soon"
    if days <= 7:
        return "upcoming"
    return "later"


def monthly_spending(payments: Iterable[PaymentRecord]) -> list[MonthlySpending]:
    months: dict[str, MonthlySpending] = {}
    for payment in payments:
        key = payment.payment_date.strftime("%Y-%m")
        bucket = months.setdefault(key, MonthlySpending(month=key))
        bucket.total += payment.amount
        bucket.categories[payment.category] = (
            bucket.categories.get(payment.category, 0) + payment.amount
        )
    return sorted(months.values(), key=lambda m: m.month, reverse=True)


def upcoming_payments(
    subscriptions: Iterable[SubscriptionRecord],
    now: datetime,
    tz_name: str,
    limit: int = 5,
) -> list[UpcomingPayment]:
    items = []
    for sub in subscriptions:
        days = days_until(sub.next_payment, now, tz_name)
        if days >= 0:
            items.append(UpcomingPayment(subscription=sub, days_until=days, urgency=urgency(days)))
    items.sort(key=lambda item: item.days_until)
    return items[:limit]


def this_month_payments(
    subscriptions: Iterable[SubscriptionRecord], today: date
) -> list[SubscriptionRecord]:
    due = [
        sub
        for sub in subscriptions
        if sub.next_payment.year == today.year and sub.next_payment.month == today.month
    ]
    return sorted(due, key=lambda sub: sub.next_payment)


def spending_summary(subscriptions: Iterable[SubscriptionRecord]) -> SpendingSummary:
    subscriptions = list(subscriptions)
    paid = [sub for sub in subscriptions if not sub.is_trial_period]
    trials = [sub for sub in subscriptions if sub.is_trial_period]
    return SpendingSummary(
        total_monthly_spend=sum(sub.price for sub in paid),
        total_trial_value=sum(sub.price for sub in trials),
        paid_count=len(paid),
        trial_count=len(trials),
    )
