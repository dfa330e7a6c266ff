import unittest
from datetime import date, datetime, timezone

from submemo.db import InMemoryDbClient
from submemo.lifecycle import (
    add_months,
    apply_transitions,
    evaluate,
    local_today,
    run_lifecycle,
)
from submemo.types import TransitionKind

USER = "user-1"


def make_paid(db, next_payment, name="Netflix", price=1490, category="Entertainment"):
    return db.create_subscription(
        USER,
        name=name,
        price=price,
        category=category,
        next_payment=next_payment,
    )


def make_trial(db, trial_end, name="ChatGPT", price=3000, category="AI"):
    return db.create_subscription(
        USER,
        name=name,
        price=price,
        category=category,
        is_trial_period=True,
        trial_end_date=trial_end,
        next_payment=trial_end,
    )


class AddMonthsTests(unittest.TestCase):
    def test_keeps_day_of_month(self):
        self.assertEqual(add_months(date(2025, 6, 7)), date(2025, 7, 7))

    def test_crosses_year(self):
        self.assertEqual(add_months(date(2025, 12, 15)), date(2026, 1, 15))

    def test_clamps_to_month_end(self):
        self.assertEqual(add_months(date(2025, 1, 31)), date(2025, 2, 28))
        self.assertEqual(add_months(date(2024, 1, 31)), date(2024, 2, 29))


class LocalTodayTests(unittest.TestCase):
    def test_uses_timezone_date(self):
        now = datetime(2025, 6, 7, 16, 30, tzinfo=timezone.utc)
        self.assertEqual(local_today(now, "Asia/Tokyo"), date(2025, 6, 8))
        self.assertEqual(local_today(now, "UTC"), date(2025, 6, 7))

    def test_naive_datetime_is_local(self):
        self.assertEqual(local_today(datetime(2025, 6, 7, 23, 0), "Asia/Tokyo"), date(2025, 6, 7))


class EvaluateTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()

    def test_expired_trial_becomes_paid(self):
        sub = make_trial(self.db, date(2025, 6, 7))
        transitions = evaluate([sub], date(2025, 6, 8))

        self.assertEqual(len(transitions), 1)
        transition = transitions[0]
        self.assertEqual(transition.kind, TransitionKind.TRIAL_EXPIRED)
        self.assertEqual(
            transition.updates,
            {
                "is_trial_period": False,
                "trial_end_date": None,
                "next_payment": date(2025, 7, 7),
                "last_billed_on": date(2025, 6, 8),
            },
        )
        self.assertEqual(transition.payment.payment_date, date(2025, 6, 8))
        self.assertEqual(transition.payment.amount, 3000)
        self.assertEqual(transition.payment.category, "AI")

    def test_trial_ending_today_is_left_alone(self):
        sub = make_trial(self.db, date(2025, 6, 8))
        self.assertEqual(evaluate([sub], date(2025, 6, 8)), [])

    def test_trial_without_end_date_is_left_alone(self):
        sub = make_trial(self.db, date(2025, 6, 1))
        sub.trial_end_date = None
        self.assertEqual(evaluate([sub], date(2025, 6, 8)), [])

    def test_trial_ignores_past_next_payment(self):
        sub = make_trial(self.db, date(2025, 6, 20))
        sub.next_payment = date(2025, 5, 1)
        self.assertEqual(evaluate([sub], date(2025, 6, 8)), [])

    def test_payment_due_today_rolls_over(self):
        sub = make_paid(self.db, date(2025, 6, 8))
        transitions = evaluate([sub], date(2025, 6, 8))
        self.assertEqual(len(transitions), 1)
        self.assertEqual(transitions[0].kind, TransitionKind.PAYMENT_DUE)
        self.assertEqual(
            transitions[0].updates,
            {"next_payment": date(2025, 7, 8), "last_billed_on": date(2025, 6, 8)},
        )

    def test_future_payment_is_left_alone(self):
        sub = make_paid(self.db, date(2025, 6, 9))
        self.assertEqual(evaluate([sub], date(2025, 6, 8)), [])

    def test_overdue_payment_advances_one_month_per_pass(self):
        sub = make_paid(self.db, date(2025, 6, 1))
        transitions = evaluate([sub], date(2025, 6, 20))
        self.assertEqual(transitions[0].updates["next_payment"], date(2025, 7, 1))

    def test_subscription_billed_today_is_left_alone(self):
        sub = make_paid(self.db, date(2025, 5, 1))
        sub.last_billed_on = date(2025, 6, 20)
        self.assertEqual(evaluate([sub], date(2025, 6, 20)), [])
        self.assertEqual(len(evaluate([sub], date(2025, 6, 21))), 1)

    def test_catch_up_lands_after_today(self):
        sub = make_paid(self.db, date(2025, 4, 10))
        transitions = evaluate([sub], date(2025, 6, 20), catch_up=True)
        self.assertEqual(transitions[0].updates["next_payment"], date(2025, 7, 10))

    def test_catch_up_does_not_drift_at_month_end(self):
        sub = make_paid(self.db, date(2025, 1, 31))
        transitions = evaluate([sub], date(2025, 3, 15), catch_up=True)
        self.assertEqual(transitions[0].updates["next_payment"], date(2025, 3, 31))


class ApplyTransitionsTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()

    def test_trial_expiry_is_written(self):
        sub = make_trial(self.db, date(2025, 6, 7))
        results = run_lifecycle(self.db, USER, date(2025, 6, 8))

        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].ok)
        stored = self.db.get_subscription(USER, sub.id)
        self.assertFalse(stored.is_trial_period)
        self.assertIsNone(stored.trial_end_date)
        self.assertEqual(stored.next_payment, date(2025, 7, 7))

        payments = self.db.list_payments(USER)
        self.assertEqual(len(payments), 1)
        self.assertEqual(payments[0].payment_date, date(2025, 6, 8))
        self.assertEqual(payments[0].amount, 3000)

    def test_rollover_creates_one_payment_and_advances(self):
        sub = make_paid(self.db, date(2025, 6, 1))
        run_lifecycle(self.db, USER, date(2025, 6, 20))

        stored = self.db.get_subscription(USER, sub.id)
        self.assertEqual(stored.next_payment, date(2025, 7, 1))
        payments = self.db.list_payments(USER)
        self.assertEqual(len(payments), 1)
        self.assertEqual(payments[0].payment_date, date(2025, 6, 20))

    def test_second_pass_same_day_adds_nothing(self):
        make_paid(self.db, date(2025, 6, 8))
        make_trial(self.db, date(2025, 6, 1))

        first = run_lifecycle(self.db, USER, date(2025, 6, 8))
        second = run_lifecycle(self.db, USER, date(2025, 6, 8))

        self.assertEqual(len(first), 2)
        self.assertEqual(second, [])
        self.assertEqual(len(self.db.list_payments(USER)), 2)

    def test_repeated_passes_on_long_overdue_subscription(self):
        sub = make_paid(self.db, date(2025, 4, 1))

        first = run_lifecycle(self.db, USER, date(2025, 6, 20))
        second = run_lifecycle(self.db, USER, date(2025, 6, 20))

        self.assertEqual(len(first), 1)
        self.assertEqual(second, [])
        stored = self.db.get_subscription(USER, sub.id)
        self.assertEqual(stored.next_payment, date(2025, 5, 1))
        self.assertEqual(stored.last_billed_on, date(2025, 6, 20))
        self.assertEqual(len(self.db.list_payments(USER)), 1)

        # The next day picks up where the previous pass stopped.
        third = run_lifecycle(self.db, USER, date(2025, 6, 21))
        self.assertEqual(len(third), 1)
        self.assertEqual(
            self.db.get_subscription(USER, sub.id).next_payment, date(2025, 6, 1)
        )
        self.assertEqual(len(self.db.list_payments(USER)), 2)

    def test_converted_trial_is_not_rolled_again_same_day(self):
        make_trial(self.db, date(2025, 4, 1))

        first = run_lifecycle(self.db, USER, date(2025, 6, 20))
        second = run_lifecycle(self.db, USER, date(2025, 6, 20))

        self.assertEqual([r.transition.kind for r in first], [TransitionKind.TRIAL_EXPIRED])
        self.assertEqual(second, [])
        self.assertEqual(len(self.db.list_payments(USER)), 1)

    def test_existing_payment_for_today_is_not_duplicated(self):
        sub = make_paid(self.db, date(2025, 6, 8))
        self.db.add_payment(
            USER, sub.id, amount=sub.price, payment_date=date(2025, 6, 8), category=sub.category
        )

        results = run_lifecycle(self.db, USER, date(2025, 6, 8))

        self.assertEqual(len(results), 1)
        self.assertIsNone(results[0].payment)
        self.assertEqual(results[0].subscription.next_payment, date(2025, 7, 8))
        self.assertEqual(len(self.db.list_payments(USER)), 1)

    def test_failure_on_one_subscription_does_not_stop_others(self):
        broken = make_paid(self.db, date(2025, 6, 1), name="Broken")
        healthy = make_paid(self.db, date(2025, 6, 1), name="Healthy")

        original_update = self.db.update_subscription

        def update(user_id, subscription_id, updates):
            if subscription_id == broken.id:
                raise RuntimeError("permission denied")
            return original_update(user_id, subscription_id, updates)

        self.db.update_subscription = update
        transitions = evaluate(self.db.list_subscriptions(USER), date(2025, 6, 8))
        results = apply_transitions(self.db, transitions)

        by_name = {r.transition.name: r for r in results}
        self.assertFalse(by_name["Broken"].ok)
        self.assertIn("permission denied", by_name["Broken"].error)
        self.assertTrue(by_name["Healthy"].ok)
        self.assertEqual(
            self.db.get_subscription(USER, healthy.id).next_payment, date(2025, 7, 1)
        )

    def test_deleted_subscription_reports_error(self):
        sub = make_trial(self.db, date(2025, 6, 1))
        transitions = evaluate([sub], date(2025, 6, 8))
        self.db.delete_subscription(USER, sub.id)

        results = apply_transitions(self.db, transitions)

        self.assertEqual(results[0].error, "subscription not found")
        self.assertEqual(self.db.list_payments(USER), [])


if __name__ == "__main__":
    unittest.main()
