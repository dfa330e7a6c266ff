"""
Per-user subscription mirror and the periodic lifecycle task that runs against it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from submemo.db import DbClient, SubscriptionRecord
from submemo.lifecycle import (
    PaymentEntry,
    TransitionResult,
    apply_transitions,
    evaluate,
    local_today,
    record_payment,
)
from submemo.realtime import ChangeFeed, ChangeMessage, Unsubscribe
from submemo.types import (
    PAYMENT_HISTORY_TABLE,
    SUBSCRIPTIONS_TABLE,
    ChangeEvent,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MutationResult:
    """Outcome of a store command. ``notice`` is the user-facing message."""

    ok: bool
    notice: str
    subscription: Optional[SubscriptionRecord] = None
    not_found: bool = False


class SubscriptionStore:
    """
    In-memory list of one user's subscriptions, mirrored from the database.

    Writes go to the database first; the local list only changes once the
    write is acknowledged. Change notifications from other sessions trigger a
    full refetch.
    """

    def __init__(
        self,
        user_id: str,
        db: DbClient,
        feed: ChangeFeed,
        *,
        clock: Clock = utc_now,
        tz_name: str = "Asia/Tokyo",
        catch_up: bool = False,
    ):
        self.user_id = user_id
        self.db = db
        self.feed = feed
        self.clock = clock
        self.tz_name = tz_name
        self.catch_up = catch_up
        self.subscriptions: list[SubscriptionRecord] = []
        self._lock = threading.RLock()
        self._unsubscribers: list[Unsubscribe] = []

    def today(self) -> date:
        return local_today(self.clock(), self.tz_name)

    def refresh(self, *, raise_errors: bool = False) -> list[SubscriptionRecord]:
        """Refetch from the database. On failure the previous snapshot is kept."""
        try:
            records = self.db.list_subscriptions(self.user_id)
        except Exception:
            if raise_errors:
                raise
            logger.exception("Failed to fetch subscriptions for %s", self.user_id)
            return self.snapshot()
        with self._lock:
            self.subscriptions = records
        return self.snapshot()

    def snapshot(self) -> list[SubscriptionRecord]:
        with self._lock:
            return list(self.subscriptions)

    def start(self) -> None:
        """Load once and listen for remote changes."""
        self.refresh()
        for table in (SUBSCRIPTIONS_TABLE, PAYMENT_HISTORY_TABLE):
            self._unsubscribers.append(
                self.feed.subscribe(table, self.user_id, self._on_change)
            )

    def close(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()

    def _on_change(self, message: ChangeMessage) -> None:
        logger.debug("Change received on %s: %s", message.table, message.event.value)
        self.refresh()

    def _publish(self, table: str, event: ChangeEvent, record_id: str) -> None:
        try:
            self.feed.publish(
                ChangeMessage(
                    table=table, user_id=self.user_id, event=event, record_id=record_id
                )
            )
        except Exception:
            logger.exception("Failed to publish %s change for %s", table, record_id)

    def add(
        self,
        *,
        name: str,
        price: int,
        category: str,
        next_payment: date,
        card_name: Optional[str] = None,
        is_trial_period: bool = False,
        trial_end_date: Optional[date] = None,
    ) -> MutationResult:
        try:
            record = self.db.create_subscription(
                self.user_id,
                name=name,
                price=price,
                category=category,
                card_name=card_name,
                is_trial_period=is_trial_period,
                trial_end_date=trial_end_date,
                next_payment=next_payment,
            )
        except Exception:
            logger.exception("Error adding subscription %s", name)
            return MutationResult(ok=False, notice="Failed to add subscription.")

        with self._lock:
            self.subscriptions.insert(0, record)
        if not record.is_trial_period:
            try:
                record_payment(
                    self.db,
                    self.user_id,
                    record.id,
                    PaymentEntry(
                        amount=record.price,
                        payment_date=self.today(),
                        category=record.category,
                    ),
                )
            except Exception:
                logger.exception("Error creating initial payment for %s", name)
        self._publish(SUBSCRIPTIONS_TABLE, ChangeEvent.INSERT, record.id)
        return MutationResult(ok=True, notice="Subscription added.", subscription=record)

    def update(self, subscription_id: str, updates: dict) -> MutationResult:
        try:
            record = self.db.update_subscription(self.user_id, subscription_id, updates)
        except Exception:
            logger.exception("Error updating subscription %s", subscription_id)
            return MutationResult(ok=False, notice="Failed to update subscription.")
        if not record:
            return MutationResult(ok=False, notice="Subscription not found.", not_found=True)
        with self._lock:
            self.subscriptions = [
                record if sub.id == subscription_id else sub for sub in self.subscriptions
            ]
        self._publish(SUBSCRIPTIONS_TABLE, ChangeEvent.UPDATE, subscription_id)
        return MutationResult(ok=True, notice="Subscription updated.", subscription=record)

    def delete(self, subscription_id: str) -> MutationResult:
        try:
            deleted = self.db.delete_subscription(self.user_id, subscription_id)
        except Exception:
            logger.exception("Error deleting subscription %s", subscription_id)
            return MutationResult(ok=False, notice="Failed to delete subscription.")
        if not deleted:
            return MutationResult(ok=False, notice="Subscription not found.", not_found=True)
        with self._lock:
            self.subscriptions = [
                sub for sub in self.subscriptions if sub.id != subscription_id
            ]
        self._publish(SUBSCRIPTIONS_TABLE, ChangeEvent.DELETE, subscription_id)
        return MutationResult(ok=True, notice="Subscription deleted.")

    def evaluate(self) -> list[TransitionResult]:
        """Run trial expiry and payment rollover over the local mirror."""
        transitions = evaluate(self.snapshot(), self.today(), catch_up=self.catch_up)
        if not transitions:
            return []
        results = apply_transitions(self.db, transitions)
        for result in results:
            if result.subscription:
                self._publish(
                    SUBSCRIPTIONS_TABLE, ChangeEvent.UPDATE, result.subscription.id
                )
            if result.payment:
                self._publish(
                    PAYMENT_HISTORY_TABLE, ChangeEvent.INSERT, result.payment.id
                )
        self.refresh()
        return results


class LifecycleTask:
    """
    Runs ``store.evaluate`` on first use and then every ``interval``, always
    against a fresh read of the database.

    ``run_pending`` is the whole schedule; ``start`` only polls it from a
    background thread, so tests drive it directly with a fake clock.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        *,
        clock: Clock = utc_now,
        interval: timedelta = timedelta(hours=24),
        poll_seconds: float = 60.0,
    ):
        self.store = store
        self.clock = clock
        self.interval = interval
        self.poll_seconds = poll_seconds
        self.last_run: Optional[datetime] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.last_run is None:
            return True
        now = now or self.clock()
        return now - self.last_run >= self.interval

    def run_pending(self) -> Optional[list[TransitionResult]]:
        now = self.clock()
        if not self.is_due(now):
            return None
        # Other processes write without going through this session's feed.
        self.store.refresh(raise_errors=True)
        self.last_run = now
        results = self.store.evaluate()
        if results:
            logger.info(
                "Lifecycle pass for %s applied %d transitions",
                self.store.user_id,
                len(results),
            )
        return results

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_pending()
            except Exception:
                logger.exception("Lifecycle pass failed for %s", self.store.user_id)
            self._stop.wait(self.poll_seconds)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"lifecycle-{self.store.user_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
