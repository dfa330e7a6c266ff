"""
HTTP routes for the SubMemo API.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from submemo.config import get_settings
from submemo.db import (
    DbClient,
    DuplicatePaymentError,
    NotificationSettingsRecord,
    PaymentRecord,
    SubscriptionRecord,
)
from submemo.dependencies import (
    build_daily_trigger,
    build_notification_service,
    get_change_feed,
    get_clock,
    get_current_user_id,
    get_db_client,
    get_mailer,
    require_cron_secret,
)
from submemo.lifecycle import local_today
from submemo.mailer import Mailer
from submemo.notifications import RunResult
from submemo.realtime import ChangeFeed, ChangeMessage
from submemo.schemas import (
    EvaluateResponse,
    HealthResponse,
    MonthlySpendingListResponse,
    MonthlySpendingResponse,
    NotificationHistoryItem,
    NotificationHistoryResponse,
    NotificationRunResponse,
    NotificationSettingsPayload,
    PaymentCreate,
    PaymentListResponse,
    PaymentResponse,
    SubscriptionCreate,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionUpdate,
    SummaryResponse,
    TransitionResponse,
    UpcomingPaymentResponse,
    UpcomingPaymentsResponse,
)
from submemo.spending import (
    monthly_spending,
    spending_summary,
    this_month_payments,
    upcoming_payments,
)
from submemo.store import SubscriptionStore
from submemo.types import PAYMENT_HISTORY_TABLE, ChangeEvent

logger = logging.getLogger(__name__)

router = APIRouter()


def _subscription_response(record: SubscriptionRecord) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=record.id,
        name=record.name,
        price=record.price,
        category=record.category,
        card_name=record.card_name,
        is_trial_period=record.is_trial_period,
        trial_end_date=record.trial_end_date,
        next_payment=record.next_payment,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _payment_response(record: PaymentRecord) -> PaymentResponse:
    return PaymentResponse(
        id=record.id,
        subscription_id=record.subscription_id,
        amount=record.amount,
        payment_date=record.payment_date,
        category=record.category,
        created_at=record.created_at,
        subscription_name=record.subscription_name,
    )


def _run_response(run: RunResult) -> NotificationRunResponse:
    return NotificationRunResponse(
        processed_date=run.processed_date,
        notifications_sent=run.sent,
        notifications_failed=run.failed,
        notifications_skipped=run.skipped,
        details=[d.as_dict() for d in run.details],
    )


def _store_for(user_id: str, db: DbClient, feed: ChangeFeed, clock) -> SubscriptionStore:
    settings = get_settings()
    return SubscriptionStore(
        user_id,
        db,
        feed,
        clock=clock,
        tz_name=settings.app_timezone,
        catch_up=settings.lifecycle_catch_up,
    )


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok")


@router.get("/subscriptions", response_model=SubscriptionListResponse)
def list_subscriptions(
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    records = db.list_subscriptions(user_id)
    return SubscriptionListResponse(
        subscriptions=[_subscription_response(r) for r in records]
    )


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=201)
def create_subscription(
    payload: SubscriptionCreate,
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
    feed: ChangeFeed = Depends(get_change_feed),
    clock=Depends(get_clock),
):
    """
    Create a subscription. Paid subscriptions get their first payment entry
    dated today straight away; trials are billed when the trial ends.
    """
    store = _store_for(user_id, db, feed, clock)
    result = store.add(
        name=payload.name,
        price=payload.price,
        category=payload.category,
        card_name=payload.card_name,
        is_trial_period=payload.is_trial_period,
        trial_end_date=payload.trial_end_date if payload.is_trial_period else None,
        # Ignored for billing while in trial; kept so the column is never empty.
        next_payment=payload.next_payment or payload.trial_end_date,
    )
    if not result.ok:
        raise HTTPException(status_code=503, detail=result.notice)
    return _subscription_response(result.subscription)


@router.patch("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def update_subscription(
    subscription_id: str,
    payload: SubscriptionUpdate,
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
    feed: ChangeFeed = Depends(get_change_feed),
    clock=Depends(get_clock),
):
    updates = payload.model_dump(exclude_unset=True)
    for key in ("name", "price", "category", "is_trial_period", "next_payment"):
        if key in updates and updates[key] is None:
            raise HTTPException(status_code=422, detail=f"{key} cannot be null")
    if updates.get("is_trial_period") and "trial_end_date" not in updates:
        existing = db.get_subscription(user_id, subscription_id)
        if existing and not existing.trial_end_date:
            raise HTTPException(
                status_code=422,
                detail="trial_end_date is required for trial subscriptions",
            )
    if updates.get("is_trial_period") is False:
        updates.setdefault("trial_end_date", None)

    store = _store_for(user_id, db, feed, clock)
    result = store.update(subscription_id, updates)
    if not result.ok:
        if result.not_found:
            raise HTTPException(status_code=404, detail=result.notice)
        raise HTTPException(status_code=503, detail=result.notice)
    return _subscription_response(result.subscription)


@router.delete("/subscriptions/{subscription_id}", status_code=204)
def delete_subscription(
    subscription_id: str,
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
    feed: ChangeFeed = Depends(get_change_feed),
    clock=Depends(get_clock),
):
    store = _store_for(user_id, db, feed, clock)
    result = store.delete(subscription_id)
    if not result.ok:
        if result.not_found:
            raise HTTPException(status_code=404, detail=result.notice)
        raise HTTPException(status_code=503, detail=result.notice)
    return Response(status_code=204)


@router.post("/subscriptions/evaluate", response_model=EvaluateResponse)
def evaluate_subscriptions(
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
    feed: ChangeFeed = Depends(get_change_feed),
    clock=Depends(get_clock),
):
    """Run trial expiry and payment rollover for the caller now."""
    store = _store_for(user_id, db, feed, clock)
    store.refresh(raise_errors=True)
    results = store.evaluate()
    return EvaluateResponse(
        evaluated_on=store.today(),
        transitions=[
            TransitionResponse(
                subscription_id=r.transition.subscription_id,
                name=r.transition.name,
                kind=r.transition.kind.value,
                ok=r.ok,
                next_payment=r.subscription.next_payment if r.subscription else None,
                payment_recorded=r.payment is not None,
                error=r.error,
            )
            for r in results
        ],
    )


@router.get("/subscriptions/upcoming", response_model=UpcomingPaymentsResponse)
def list_upcoming_payments(
    limit: int = Query(5, ge=1, le=50),
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
    clock=Depends(get_clock),
):
    settings = get_settings()
    items = upcoming_payments(
        db.list_subscriptions(user_id), clock(), settings.app_timezone, limit=limit
    )
    return UpcomingPaymentsResponse(
        payments=[
            UpcomingPaymentResponse(
                subscription=_subscription_response(item.subscription),
                days_until=item.days_until,
                urgency=item.urgency,
            )
            for item in items
        ]
    )


@router.get("/subscriptions/summary", response_model=SummaryResponse)
def subscription_summary(
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
    clock=Depends(get_clock),
):
    settings = get_settings()
    records = db.list_subscriptions(user_id)
    summary = spending_summary(records)
    today = local_today(clock(), settings.app_timezone)
    return SummaryResponse(
        total_monthly_spend=summary.total_monthly_spend,
        total_trial_value=summary.total_trial_value,
        paid_count=summary.paid_count,
        trial_count=summary.trial_count,
        this_month=[_subscription_response(r) for r in this_month_payments(records, today)],
    )


@router.get("/payment-history", response_model=PaymentListResponse)
def list_payment_history(
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    return PaymentListResponse(
        payments=[_payment_response(p) for p in db.list_payments(user_id)]
    )


@router.post("/payment-history", response_model=PaymentResponse, status_code=201)
def add_payment_history(
    payload: PaymentCreate,
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
    feed: ChangeFeed = Depends(get_change_feed),
):
    if not db.get_subscription(user_id, payload.subscription_id):
        raise HTTPException(status_code=404, detail="Subscription not found")
    try:
        record = db.add_payment(
            user_id,
            payload.subscription_id,
            amount=payload.amount,
            payment_date=payload.payment_date,
            category=payload.category,
        )
    except DuplicatePaymentError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    feed.publish(
        ChangeMessage(
            table=PAYMENT_HISTORY_TABLE,
            user_id=user_id,
            event=ChangeEvent.INSERT,
            record_id=record.id,
        )
    )
    return _payment_response(record)


@router.get("/payment-history/monthly", response_model=MonthlySpendingListResponse)
def list_monthly_spending(
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    months = monthly_spending(db.list_payments(user_id))
    return MonthlySpendingListResponse(
        months=[
            MonthlySpendingResponse(month=m.month, total=m.total, categories=m.categories)
            for m in months
        ]
    )


@router.get("/notification-settings", response_model=NotificationSettingsPayload)
def get_notification_settings(
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    record = db.get_notification_settings(user_id) or NotificationSettingsRecord(
        user_id=user_id
    )
    return NotificationSettingsPayload(
        email_notifications_enabled=record.email_notifications_enabled,
        trial_notification_days=record.trial_notification_days,
        payment_notification_days=record.payment_notification_days,
        notification_time=record.notification_time,
        timezone=record.timezone,
        email=db.get_profile_email(user_id),
    )


@router.put("/notification-settings", response_model=NotificationSettingsPayload)
def save_notification_settings(
    payload: NotificationSettingsPayload,
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    record = db.save_notification_settings(
        NotificationSettingsRecord(
            user_id=user_id,
            email_notifications_enabled=payload.email_notifications_enabled,
            trial_notification_days=payload.trial_notification_days,
            payment_notification_days=payload.payment_notification_days,
            notification_time=payload.notification_time,
            timezone=payload.timezone,
        )
    )
    if "email" in payload.model_fields_set:
        db.save_profile(user_id, payload.email)
    return NotificationSettingsPayload(
        email_notifications_enabled=record.email_notifications_enabled,
        trial_notification_days=record.trial_notification_days,
        payment_notification_days=record.payment_notification_days,
        notification_time=record.notification_time,
        timezone=record.timezone,
        email=db.get_profile_email(user_id),
    )


@router.get("/notification-history", response_model=NotificationHistoryResponse)
def list_notification_history(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    return NotificationHistoryResponse(
        history=[
            NotificationHistoryItem(
                id=n.id,
                subscription_id=n.subscription_id,
                subscription_name=n.subscription_name,
                notification_type=n.notification_type.value,
                days_before=n.days_before,
                target_date=n.target_date,
                sent_at=n.sent_at,
                email_address=n.email_address,
                subject=n.subject,
                status=n.status.value,
                error_message=n.error_message,
            )
            for n in db.list_notifications(user_id, limit=limit)
        ]
    )


@router.post(
    "/notifications/trigger",
    response_model=NotificationRunResponse,
    dependencies=[Depends(require_cron_secret)],
)
def trigger_notifications(
    db: DbClient = Depends(get_db_client),
    mailer: Mailer = Depends(get_mailer),
    clock=Depends(get_clock),
):
    """
    Hourly cron hook. Runs the notification pass only at the configured hour.
    """
    trigger = build_daily_trigger(build_notification_service(db, mailer))
    outcome = trigger.handle(clock())
    if outcome.run is None:
        return NotificationRunResponse(
            triggered=False,
            message=outcome.message,
            local_time=outcome.local_time.isoformat(),
        )
    response = _run_response(outcome.run)
    response.message = outcome.message
    response.local_time = outcome.local_time.isoformat()
    return response


@router.post(
    "/notifications/run",
    response_model=NotificationRunResponse,
    dependencies=[Depends(require_cron_secret)],
)
def run_notifications(
    db: DbClient = Depends(get_db_client),
    mailer: Mailer = Depends(get_mailer),
    clock=Depends(get_clock),
):
    now: datetime = clock()
    run = build_notification_service(db, mailer).run(now)
    return _run_response(run)
