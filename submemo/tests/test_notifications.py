import unittest
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from submemo.db import InMemoryDbClient, NotificationSettingsRecord
from submemo.mailer import InMemoryMailer
from submemo.notifications import (
    DailyTrigger,
    NotificationService,
    payment_reminder_email,
    trial_ending_email,
)
from submemo.types import NotificationStatus, NotificationType

TOKYO = ZoneInfo("Asia/Tokyo")


def at_nine_pm(day):
    return datetime(2025, 6, day, 21, 0, tzinfo=TOKYO)


class NotificationServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.mailer = InMemoryMailer()
        self.service = NotificationService(self.db, self.mailer, tz_name="Asia/Tokyo")
        self.db.save_profile("u1", "one@example.com")

    def _trial(self, trial_end, user_id="u1", name="ChatGPT"):
        return self.db.create_subscription(
            user_id,
            name=name,
            price=3000,
            category="AI",
            is_trial_period=True,
            trial_end_date=trial_end,
            next_payment=trial_end,
        )

    def _paid(self, next_payment, user_id="u1", name="Netflix", card_name=None):
        return self.db.create_subscription(
            user_id,
            name=name,
            price=1490,
            category="Entertainment",
            next_payment=next_payment,
            card_name=card_name,
        )

    def test_trial_reminders_two_days_and_one_day_before(self):
        self._trial(date(2025, 6, 10))

        self.assertEqual(self.service.run(at_nine_pm(7)).sent, 0)  # 3 days out

        two_days = self.service.run(at_nine_pm(8))
        self.assertEqual(two_days.sent, 1)
        self.assertEqual(two_days.details[0].notification.days_before, 2)

        again = self.service.run(at_nine_pm(8))
        self.assertEqual(again.sent, 0)
        self.assertEqual(again.skipped, 1)

        one_day = self.service.run(at_nine_pm(9))
        self.assertEqual(one_day.sent, 1)
        self.assertEqual(one_day.details[0].notification.days_before, 1)

        self.assertEqual(len(self.mailer.outbox), 2)
        self.assertIn("in 2 days", self.mailer.outbox[0]["subject"])
        self.assertIn("tomorrow", self.mailer.outbox[1]["subject"])

    def test_payment_reminders_three_days_and_one_day_before(self):
        self._paid(date(2025, 6, 11))

        sent_days = []
        for day in (7, 8, 9, 10, 11):
            run = self.service.run(at_nine_pm(day))
            sent_days.extend(d.notification.days_before for d in run.details)

        self.assertEqual(sent_days, [3, 1])

    def test_window_uses_ceiling_of_day_difference(self):
        self._paid(date(2025, 6, 11))
        # 00:00 on the 8th is exactly three days before midnight of the 11th.
        run = self.service.run(datetime(2025, 6, 8, 0, 0, tzinfo=TOKYO))
        self.assertEqual(run.sent, 1)

    def test_user_settings_are_respected(self):
        self._trial(date(2025, 6, 10))
        self._paid(date(2025, 6, 11))
        self.db.save_notification_settings(
            NotificationSettingsRecord(
                user_id="u1",
                trial_notification_days=[],
                payment_notification_days=[3],
            )
        )
        run = self.service.run(at_nine_pm(8))
        self.assertEqual(
            [d.notification.notification_type for d in run.details],
            [NotificationType.PAYMENT_REMINDER],
        )

    def test_disabled_user_gets_nothing(self):
        self._trial(date(2025, 6, 10))
        self.db.save_notification_settings(
            NotificationSettingsRecord(user_id="u1", email_notifications_enabled=False)
        )
        self.assertEqual(self.service.run(at_nine_pm(8)).details, [])

    def test_user_without_email_is_skipped(self):
        self._trial(date(2025, 6, 10), user_id="u2")
        self.assertEqual(self.service.run(at_nine_pm(8)).details, [])

    def test_failed_send_does_not_block_others(self):
        self.db.save_profile("u2", "two@example.com")
        self.mailer.fail_for.add("one@example.com")
        self._trial(date(2025, 6, 10), user_id="u1")
        self._trial(date(2025, 6, 10), user_id="u2", name="Claude")

        run = self.service.run(at_nine_pm(8))

        self.assertEqual(run.sent, 1)
        self.assertEqual(run.failed, 1)
        failed = [d for d in run.details if not d.success][0]
        self.assertEqual(failed.notification.to, "one@example.com")
        self.assertIn("Simulated failure", failed.error)

        history = self.db.list_notifications("u1")
        self.assertEqual(history[0].status, NotificationStatus.FAILED)
        self.assertEqual(self.db.list_notifications("u2")[0].status, NotificationStatus.SENT)

    def test_result_details_are_serializable(self):
        self._paid(date(2025, 6, 11))
        run = self.service.run(at_nine_pm(8))
        detail = run.details[0].as_dict()
        self.assertEqual(detail["type"], "payment_reminder")
        self.assertEqual(detail["days_until"], 3)
        self.assertEqual(detail["target_date"], "2025-06-11")
        self.assertTrue(detail["success"])
        self.assertEqual(run.processed_date, date(2025, 6, 8))


class EmailContentTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()

    def test_trial_email_mentions_first_billing_date(self):
        sub = self.db.create_subscription(
            "u1",
            name="ChatGPT",
            price=3000,
            category="AI",
            is_trial_period=True,
            trial_end_date=date(2025, 6, 10),
            next_payment=date(2025, 6, 10),
        )
        subject, body = trial_ending_email(sub, 1)
        self.assertEqual(subject, "[SubMemo] Your ChatGPT free trial ends tomorrow")
        self.assertIn("¥3,000", body)
        self.assertIn("2025-07-10", body)

    def test_payment_email_includes_card_when_known(self):
        sub = self.db.create_subscription(
            "u1",
            name="Netflix",
            price=1490,
            category="Entertainment",
            next_payment=date(2025, 6, 11),
            card_name="Visa",
        )
        subject, body = payment_reminder_email(sub, 3)
        self.assertEqual(subject, "[SubMemo] Netflix renews in 3 days")
        self.assertIn("Payment card: Visa", body)

        sub.card_name = None
        _, body = payment_reminder_email(sub, 3)
        self.assertNotIn("Payment card", body)


class DailyTriggerTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.mailer = InMemoryMailer()
        self.db.save_profile("u1", "one@example.com")
        self.db.create_subscription(
            "u1",
            name="Netflix",
            price=1490,
            category="Entertainment",
            next_payment=date(2025, 6, 11),
        )
        service = NotificationService(self.db, self.mailer, tz_name="Asia/Tokyo")
        self.trigger = DailyTrigger(service, tz_name="Asia/Tokyo", hour=21)

    def test_outside_target_hour_does_nothing(self):
        outcome = self.trigger.handle(datetime(2025, 6, 8, 20, 0, tzinfo=TOKYO))
        self.assertFalse(outcome.triggered)
        self.assertIsNone(outcome.run)
        self.assertIn("target: 21", outcome.message)
        self.assertEqual(self.mailer.outbox, [])

    def test_target_hour_runs_pass(self):
        # 12:00 UTC is 21:00 in Tokyo.
        outcome = self.trigger.handle(datetime(2025, 6, 8, 12, 0, tzinfo=ZoneInfo("UTC")))
        self.assertTrue(outcome.triggered)
        self.assertEqual(outcome.run.sent, 1)
        self.assertEqual(outcome.local_time.hour, 21)

    def test_is_scheduled(self):
        self.assertTrue(self.trigger.is_scheduled(datetime(2025, 6, 8, 21, 59, tzinfo=TOKYO)))
        self.assertFalse(self.trigger.is_scheduled(datetime(2025, 6, 8, 22, 0, tzinfo=TOKYO)))

    def test_seconds_until_next_hour(self):
        self.assertEqual(
            self.trigger.seconds_until_next_hour(datetime(2025, 6, 8, 20, 59, 30, tzinfo=TOKYO)), 30
        )
        self.assertEqual(
            self.trigger.seconds_until_next_hour(datetime(2025, 6, 8, 21, 0, tzinfo=TOKYO)), 3600
        )

    def test_next_hour_follows_local_offset(self):
        trigger = DailyTrigger(self.trigger.service, tz_name="Asia/Kolkata", hour=21)
        # 15:00 UTC is 20:30 in Kolkata.
        now = datetime(2025, 6, 8, 15, 0, tzinfo=timezone.utc)
        self.assertEqual(trigger.seconds_until_next_hour(now), 1800)

    def test_hourly_checks_with_max_delay_hit_target_hour_every_day(self):
        now = datetime(2025, 6, 1, 0, 0, 17, tzinfo=timezone.utc)
        end = now + timedelta(days=60)
        days_seen = set()
        while now < end:
            if self.trigger.is_scheduled(now):
                days_seen.add(self.trigger.local_time(now).date())
            now += timedelta(seconds=self.trigger.seconds_until_next_hour(now) + 30)
        expected = {date(2025, 6, 1) + timedelta(days=n) for n in range(60)}
        self.assertEqual(days_seen, expected)


if __name__ == "__main__":
    unittest.main()
