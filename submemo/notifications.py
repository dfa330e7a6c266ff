"""
Reminder emails for ending trials and upcoming payments.

A pass scans every user's subscriptions, keeps those whose trial end or next
payment falls on one of the user's reminder offsets, and sends one email per
(subscription, offset, target date). Each send is independent: a failure is
recorded and the pass moves on. There is no retry; a window missed on its day
stays missed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, Optional
from zoneinfo import ZoneInfo

from submemo.db import (
    DbClient,
    NotificationRecord,
    NotificationSettingsRecord,
    SubscriptionRecord,
)
from submemo.lifecycle import add_months, local_today
from submemo.mailer import Mailer
from submemo.spending import days_until
from submemo.types import NotificationStatus, NotificationType

logger = logging.getLogger(__name__)

SIGNATURE = "---\nSubMemo - all your subscriptions in one place"


@dataclass
class PlannedNotification:
    user_id: str
    subscription_id: str
    subscription_name: str
    notification_type: NotificationType
    days_before: int
    target_date: date
    to: str
    subject: str
    body: str


@dataclass
class DeliveryResult:
    notification: PlannedNotification
    success: bool
    error: Optional[str] = None
    provider_response: Optional[dict] = None

    def as_dict(self) -> dict:
        n = self.notification
        return {
            "to": n.to,
            "subject": n.subject,
            "type": n.notification_type.value,
            "subscription_id": n.subscription_id,
            "days_until": n.days_before,
            "target_date": n.target_date.isoformat(),
            "success": self.success,
            "error": self.error,
        }


@dataclass
class RunResult:
    processed_date: date
    skipped: int = 0
    details: list[DeliveryResult] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(1 for d in self.details if d.success)

    @property
    def failed(self) -> int:
        return sum(1 for d in self.details if not d.success)


def _when(days: int) -> str:
    return "tomorrow" if days == 1 else f"in {days} days"


def trial_ending_email(sub: SubscriptionRecord, days: int) -> tuple[str, str]:
    when = _when(days)
    trial_end = sub.trial_end_date.isoformat()
    first_billing = add_months(sub.trial_end_date).isoformat()
    subject = f"[SubMemo] Your {sub.name} free trial ends {when}"
    body = f"""Thank you for using SubMemo.

Your free trial of {sub.name} ends {when} ({trial_end}).

Service details
Service: {sub.name}
Monthly price: ¥{sub.price:,}
Category: {sub.category}
Trial end date: {trial_end}

When the trial ends the subscription switches to the paid plan automatically.
The first billing date will be {first_billing}.

If you do not want to continue, cancel before the trial ends.

{SIGNATURE}"""
    return subject, body


def payment_reminder_email(sub: SubscriptionRecord, days: int) -> tuple[str, str]:
    when = _when(days)
    renewal = sub.next_payment.isoformat()
    card_line = f"\nPayment card: {sub.card_name}" if sub.card_name else ""
    subject = f"[SubMemo] {sub.name} renews {when}"
    body = f"""Thank you for using SubMemo.

{sub.name} is scheduled to renew {when} ({renewal}).

Service details
Service: {sub.name}
Monthly price: ¥{sub.price:,}
Category: {sub.category}
Renewal date: {renewal}{card_line}

Please check the expiry date and balance of your payment card.

{SIGNATURE}"""
    return subject, body


def plan_notifications(
    subscriptions: Iterable[SubscriptionRecord],
    profiles: Dict[str, Optional[str]],
    settings_by_user: Dict[str, NotificationSettingsRecord],
    now: datetime,
    tz_name: str,
) -> list[PlannedNotification]:
    """Pick the subscriptions whose trial end or payment date sits on a reminder offset."""
    planned: list[PlannedNotification] = []
    for sub in subscriptions:
        email = profiles.get(sub.user_id)
        if not email:
            continue
        prefs = settings_by_user.get(sub.user_id) or NotificationSettingsRecord(
            user_id=sub.user_id
        )
        if not prefs.email_notifications_enabled:
            continue

        if sub.is_trial_period:
            if not sub.trial_end_date:
                continue
            target = sub.trial_end_date
            offsets = prefs.trial_notification_days
            kind = NotificationType.TRIAL_ENDING
        else:
            target = sub.next_payment
            offsets = prefs.payment_notification_days
            kind = NotificationType.PAYMENT_REMINDER

        days = days_until(target, now, tz_name)
        if days not in offsets:
            continue

        if kind == NotificationType.TRIAL_ENDING:
            subject, body = trial_ending_email(sub, days)
        else:
            subject, body = payment_reminder_email(sub, days)
        planned.append(
            PlannedNotification(
                user_id=sub.user_id,
                subscription_id=sub.id,
                subscription_name=sub.name,
                notification_type=kind,
                days_before=days,
                target_date=target,
                to=email,
                subject=subject,
                body=body,
            )
        )
    return planned


class NotificationService:
    def __init__(self, db: DbClient, mailer: Mailer, tz_name: str = "Asia/Tokyo"):
        self.db = db
        self.mailer = mailer
        self.tz_name = tz_name

    def run(self, now: datetime) -> RunResult:
        result = RunResult(processed_date=local_today(now, self.tz_name))
        logger.info("Processing notifications for %s", result.processed_date.isoformat())

        planned = plan_notifications(
            self.db.list_all_subscriptions(),
            self.db.list_profiles(),
            self.db.list_notification_settings(),
            now,
            self.tz_name,
        )
        logger.info("Found %d notifications to send", len(planned))

        for notification in planned:
            if self.db.has_sent_notification(
                notification.subscription_id,
                notification.notification_type,
                notification.days_before,
                notification.target_date,
            ):
                result.skipped += 1
                continue
            result.details.append(self._deliver(notification))
        return result

    def _deliver(self, notification: PlannedNotification) -> DeliveryResult:
        try:
            response = self.mailer.send(
                notification.to, notification.subject, notification.body
            )
        except Exception as exc:
            logger.exception("Failed to send email to %s", notification.to)
            delivery = DeliveryResult(notification, success=False, error=str(exc))
        else:
            logger.info("Email sent successfully to %s", notification.to)
            delivery = DeliveryResult(notification, success=True, provider_response=response)

        try:
            self.db.add_notification(
                NotificationRecord(
                    user_id=notification.user_id,
                    subscription_id=notification.subscription_id,
                    notification_type=notification.notification_type,
                    days_before=notification.days_before,
                    target_date=notification.target_date,
                    email_address=notification.to,
                    subject=notification.subject,
                    status=NotificationStatus.SENT
                    if delivery.success
                    else NotificationStatus.FAILED,
                    error_message=delivery.error,
                )
            )
        except Exception:
            logger.exception(
                "Failed to record notification for %s", notification.subscription_id
            )
        return delivery


@dataclass
class TriggerResult:
    triggered: bool
    local_time: datetime
    message: str
    run: Optional[RunResult] = None


class DailyTrigger:
    """
    Hourly hook that runs the notification pass only at the target local hour.

    If the hook is skipped or late that day, nothing catches up.
    """

    def __init__(self, service: NotificationService, *, tz_name: str, hour: int = 21):
        self.service = service
        self.tz_name = tz_name
        self.hour = hour

    def local_time(self, now: datetime) -> datetime:
        tz = ZoneInfo(self.tz_name)
        if now.tzinfo is None:
            return now.replace(tzinfo=tz)
        return now.astimezone(tz)

    def is_scheduled(self, now: datetime) -> bool:
        return self.local_time(now).hour == self.hour

    def seconds_until_next_hour(self, now: datetime) -> float:
        """Seconds from ``now`` to the start of the next local hour."""
        local = self.local_time(now)
        hour_start = local.replace(minute=0, second=0, microsecond=0)
        return 3600 - (local - hour_start).total_seconds()

    def handle(self, now: datetime) -> TriggerResult:
        local = self.local_time(now)
        logger.info("Scheduler triggered at %s hour: %d", self.tz_name, local.hour)
        if not self.is_scheduled(local):
            return TriggerResult(
                triggered=False,
                local_time=local,
                message=f"Not scheduled time. Current hour: {local.hour}, target: {self.hour}",
            )
        logger.info("Triggering email notifications")
        run = self.service.run(now)
        return TriggerResult(
            triggered=True,
            local_time=local,
            message=f"Sent {run.sent}, failed {run.failed}, skipped {run.skipped}",
            run=run,
        )
