"""
Subscription lifecycle: trial expiry and recurring-payment rollover.

``evaluate`` is pure: it looks at a set of subscriptions and a calendar date
and returns the transitions that are due. ``apply_transitions`` writes them,
one subscription at a time, relying on the (subscription_id, payment_date)
unique key so that repeated passes on the same day never duplicate a
payment entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from submemo.db import (
    DbClient,
    DuplicatePaymentError,
    PaymentRecord,
    SubscriptionRecord,
)
from submemo.types import TransitionKind

logger = logging.getLogger(__name__)


def add_months(value: date, months: int = 1) -> date:
    """Same day of month, ``months`` later; clamps to the end of shorter months."""
    return value + relativedelta(months=months)


def local_today(now: datetime, tz_name: str) -> date:
    """Calendar date of ``now`` in ``tz_name``. Naive datetimes are taken as local already."""
    if now.tzinfo is None:
        return now.date()
    return now.astimezone(ZoneInfo(tz_name)).date()


@dataclass(frozen=True)
class PaymentEntry:
    amount: int
    payment_date: date
    category: str


@dataclass(frozen=True)
class Transition:
    subscription_id: str
    user_id: str
    name: str
    kind: TransitionKind
    updates: dict = field(hash=False)
    payment: PaymentEntry


@dataclass
class TransitionResult:
    transition: Transition
    subscription: Optional[SubscriptionRecord] = None
    payment: Optional[PaymentRecord] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _trial_transition(sub: SubscriptionRecord, today: date) -> Optional[Transition]:
    if not sub.trial_end_date or not sub.trial_end_date < today:
        return None
    return Transition(
        subscription_id=sub.id,
        user_id=sub.user_id,
        name=sub.name,
        kind=TransitionKind.TRIAL_EXPIRED,
        updates={
            "is_trial_period": False,
            "trial_end_date": None,
            "next_payment": add_months(sub.trial_end_date),
            "last_billed_on": today,
        },
        payment=PaymentEntry(amount=sub.price, payment_date=today, category=sub.category),
    )


def _rollover_transition(
    sub: SubscriptionRecord, today: date, catch_up: bool
) -> Optional[Transition]:
    if sub.next_payment > today or sub.last_billed_on == today:
        return None
    next_payment = add_months(sub.next_payment)
    if catch_up:
        months = 1
        while next_payment <= today:
            months += 1
            # Always step from the original date so month-end clamping doesn't drift.
            next_payment = add_months(sub.next_payment, months)
    return Transition(
        subscription_id=sub.id,
        user_id=sub.user_id,
        name=sub.name,
        kind=TransitionKind.PAYMENT_DUE,
        updates={"next_payment": next_payment, "last_billed_on": today},
        payment=PaymentEntry(amount=sub.price, payment_date=today, category=sub.category),
    )


def evaluate(
    subscriptions: Iterable[SubscriptionRecord],
    today: date,
    *,
    catch_up: bool = False,
) -> list[Transition]:
    """
    Decide which subscriptions need a state transition on ``today``.

    Trials whose end date is strictly before today become paid subscriptions
    billed one month after the trial ended. Paid subscriptions whose payment
    date is today or earlier are billed today and rolled forward one month,
    or, with ``catch_up``, as many months as needed to land after today. A
    subscription already billed today is left alone, so repeated passes on
    the same day change nothing.
    """
    transitions: list[Transition] = []
    for sub in subscriptions:
        if sub.is_trial_period:
            transition = _trial_transition(sub, today)
        else:
            transition = _rollover_transition(sub, today, catch_up)
        if transition:
            transitions.append(transition)
    return transitions


def record_payment(
    db: DbClient, user_id: str, subscription_id: str, entry: PaymentEntry
) -> Optional[PaymentRecord]:
    """Insert a payment entry; returns None when one already exists for that date."""
    try:
        return db.add_payment(
            user_id,
            subscription_id,
            amount=entry.amount,
            payment_date=entry.payment_date,
            category=entry.category,
        )
    except DuplicatePaymentError:
        logger.info(
            "Payment for %s on %s already recorded",
            subscription_id,
            entry.payment_date.isoformat(),
        )
        return None


def _apply_one(db: DbClient, transition: Transition) -> TransitionResult:
    result = TransitionResult(transition=transition)
    if transition.kind == TransitionKind.TRIAL_EXPIRED:
        updated = db.update_subscription(
            transition.user_id, transition.subscription_id, transition.updates
        )
        if not updated:
            result.error = "subscription not found"
            return result
        result.subscription = updated
        result.payment = record_payment(
            db, transition.user_id, transition.subscription_id, transition.payment
        )
        logger.info(
            "Trial ended for %s, next payment %s",
            transition.name,
            updated.next_payment.isoformat(),
        )
    else:
        result.payment = record_payment(
            db, transition.user_id, transition.subscription_id, transition.payment
        )
        updated = db.update_subscription(
            transition.user_id, transition.subscription_id, transition.updates
        )
        if not updated:
            result.error = "subscription not found"
            return result
        result.subscription = updated
        logger.info(
            "Recurring payment processed for %s, next payment %s",
            transition.name,
            updated.next_payment.isoformat(),
        )
    return result


def apply_transitions(
    db: DbClient, transitions: Iterable[Transition]
) -> list[TransitionResult]:
    """Write each transition; a failure on one subscription doesn't stop the rest."""
    results: list[TransitionResult] = []
    for transition in transitions:
        try:
            results.append(_apply_one(db, transition))
        except Exception as exc:
            logger.exception(
                "Failed to apply %s for %s", transition.kind.value, transition.name
            )
            results.append(TransitionResult(transition=transition, error=str(exc)))
    return results


def run_lifecycle(
    db: DbClient,
    user_id: str,
    today: date,
    *,
    catch_up: bool = False,
) -> list[TransitionResult]:
    """Evaluate and apply transitions for one user's subscriptions straight from the database."""
    transitions = evaluate(db.list_subscriptions(user_id), today, catch_up=catch_up)
    if not transitions:
        return []
    return apply_transitions(db, transitions)
