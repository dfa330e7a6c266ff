"""
Database abstraction for Postgres and an in-memory test implementation.

Rows are always scoped by ``user_id``; the managed datastore enforces the same
isolation with row-level policies, this layer just never crosses users except
for the scheduler's cross-user reads.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Float,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from submemo.types import (
    DEFAULT_NOTIFICATION_TIME,
    DEFAULT_PAYMENT_NOTIFICATION_DAYS,
    DEFAULT_TIMEZONE,
    DEFAULT_TRIAL_NOTIFICATION_DAYS,
    NotificationStatus,
    NotificationType,
)

SUBSCRIPTION_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "price",
        "category",
        "card_name",
        "is_trial_period",
        "trial_end_date",
        "next_payment",
        "last_billed_on",
    }
)


class DuplicatePaymentError(Exception):
    """A payment entry already exists for (subscription_id, payment_date)."""

    def __init__(self, subscription_id: str, payment_date: date):
        super().__init__(
            f"Payment for subscription {subscription_id} on {payment_date.isoformat()} already exists"
        )
        self.subscription_id = subscription_id
        self.payment_date = payment_date


@dataclass
class SubscriptionRecord:
    id: str
    user_id: str
    name: str
    price: int
    category: str
    next_payment: date
    card_name: Optional[str] = None
    is_trial_period: bool = False
    trial_end_date: Optional[date] = None
    # Local date of the last lifecycle billing; a second pass that day is a no-op.
    last_billed_on: Optional[date] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "price": self.price,
            "category": self.category,
            "card_name": self.card_name,
            "is_trial_period": self.is_trial_period,
            "trial_end_date": self.trial_end_date.isoformat() if self.trial_end_date else None,
            "next_payment": self.next_payment.isoformat(),
            "last_billed_on": self.last_billed_on.isoformat() if self.last_billed_on else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class PaymentRecord:
    id: str
    subscription_id: str
    user_id: str
    amount: int
    payment_date: date
    category: str
    created_at: float = field(default_factory=lambda: time.time())
    subscription_name: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "amount": self.amount,
            "payment_date": self.payment_date.isoformat(),
            "category": self.category,
            "created_at": self.created_at,
            "subscription_name": self.subscription_name,
        }


@dataclass
class NotificationSettingsRecord:
    user_id: str
    email_notifications_enabled: bool = True
    trial_notification_days: list[int] = field(
        default_factory=lambda: list(DEFAULT_TRIAL_NOTIFICATION_DAYS)
    )
    payment_notification_days: list[int] = field(
        default_factory=lambda: list(DEFAULT_PAYMENT_NOTIFICATION_DAYS)
    )
    notification_time: str = DEFAULT_NOTIFICATION_TIME
    timezone: str = DEFAULT_TIMEZONE
    updated_at: float = field(default_factory=lambda: time.time())


@dataclass
class NotificationRecord:
    user_id: str
    subscription_id: str
    notification_type: NotificationType
    days_before: int
    target_date: date
    email_address: str
    subject: str
    status: NotificationStatus
    error_message: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    sent_at: float = field(default_factory=lambda: time.time())
    subscription_name: Optional[str] = None


class DbClient(Protocol):
    """Interface for database access."""

    def list_subscriptions(self, user_id: str) -> list[SubscriptionRecord]:
        ...

    def list_all_subscriptions(self) -> list[SubscriptionRecord]:
        ...

    def list_user_ids(self) -> list[str]:
        ...

    def get_subscription(
        self, user_id: str, subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        ...

    def create_subscription(
        self,
        user_id: str,
        *,
        name: str,
        price: int,
        category: str,
        next_payment: date,
        card_name: Optional[str] = None,
        is_trial_period: bool = False,
        trial_end_date: Optional[date] = None,
    ) -> SubscriptionRecord:
        ...

    def update_subscription(
        self, user_id: str, subscription_id: str, updates: dict
    ) -> Optional[SubscriptionRecord]:
        ...

    def delete_subscription(self, user_id: str, subscription_id: str) -> bool:
        ...

    def add_payment(
        self,
        user_id: str,
        subscription_id: str,
        *,
        amount: int,
        payment_date: date,
        category: str,
    ) -> PaymentRecord:
        ...

    def list_payments(self, user_id: str) -> list[PaymentRecord]:
        ...

    def get_notification_settings(
        self, user_id: str
    ) -> Optional[NotificationSettingsRecord]:
        ...

    def list_notification_settings(self) -> Dict[str, NotificationSettingsRecord]:
        ...

    def save_notification_settings(
        self, record: NotificationSettingsRecord
    ) -> NotificationSettingsRecord:
        ...

    def save_profile(self, user_id: str, email: Optional[str]) -> None:
        ...

    def list_profiles(self) -> Dict[str, Optional[str]]:
        ...

    def get_profile_email(self, user_id: str) -> Optional[str]:
        ...

    def add_notification(self, record: NotificationRecord) -> None:
        ...

    def has_sent_notification(
        self,
        subscription_id: str,
        notification_type: NotificationType,
        days_before: int,
        target_date: date,
    ) -> bool:
        ...

    def list_notifications(
        self, user_id: str, limit: int = 20
    ) -> list[NotificationRecord]:
        ...


def _check_updates(updates: dict) -> None:
    unknown = set(updates) - SUBSCRIPTION_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")


def _newest_first(records: Iterable, key) -> list:
    # Reverse insertion order first so ties on the timestamp keep newest first.
    return sorted(reversed(list(records)), key=key, reverse=True)


def _copy_settings(
    record: NotificationSettingsRecord, **changes
) -> NotificationSettingsRecord:
    return replace(
        record,
        trial_notification_days=list(record.trial_notification_days),
        payment_notification_days=list(record.payment_notification_days),
        **changes,
    )


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.subscriptions: Dict[str, SubscriptionRecord] = {}
        self.payments: Dict[tuple[str, date], PaymentRecord] = {}
        self.notification_settings: Dict[str, NotificationSettingsRecord] = {}
        self.profiles: Dict[str, Optional[str]] = {}
        self.notifications: list[NotificationRecord] = []

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.subscriptions.clear()
        self.payments.clear()
        self.notification_settings.clear()
        self.profiles.clear()
        self.notifications.clear()

    def list_subscriptions(self, user_id: str) -> list[SubscriptionRecord]:
        owned = [
            replace(sub) for sub in self.subscriptions.values() if sub.user_id == user_id
        ]
        return _newest_first(owned, key=lambda sub: sub.created_at)

    def list_all_subscriptions(self) -> list[SubscriptionRecord]:
        return [replace(sub) for sub in self.subscriptions.values()]

    def list_user_ids(self) -> list[str]:
        return sorted({sub.user_id for sub in self.subscriptions.values()})

    def get_subscription(
        self, user_id: str, subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        sub = self.subscriptions.get(subscription_id)
        if not sub or sub.user_id != user_id:
            return None
        return replace(sub)

    def create_subscription(
        self,
        user_id: str,
        *,
        name: str,
        price: int,
        category: str,
        next_payment: date,
        card_name: Optional[str] = None,
        is_trial_period: bool = False,
        trial_end_date: Optional[date] = None,
    ) -> SubscriptionRecord:
        record = SubscriptionRecord(
            id=uuid.uuid4().hex,
            user_id=user_id,
            name=name,
            price=price,
            category=category,
            card_name=card_name,
            is_trial_period=is_trial_period,
            trial_end_date=trial_end_date,
            next_payment=next_payment,
        )
        self.subscriptions[record.id] = record
        return replace(record)

    def update_subscription(
        self, user_id: str, subscription_id: str, updates: dict
    ) -> Optional[SubscriptionRecord]:
        _check_updates(updates)
        sub = self.subscriptions.get(subscription_id)
        if not sub or sub.user_id != user_id:
            return None
        for key, value in updates.items():
            setattr(sub, key, value)
        sub.updated_at = time.time()
        return replace(sub)

    def delete_subscription(self, user_id: str, subscription_id: str) -> bool:
        sub = self.subscriptions.get(subscription_id)
        if not sub or sub.user_id != user_id:
            return False
        del self.subscriptions[subscription_id]
        for key in [k for k in self.payments if k[0] == subscription_id]:
            del self.payments[key]
        self.notifications = [
            n for n in self.notifications if n.subscription_id != subscription_id
        ]
        return True

    def add_payment(
        self,
        user_id: str,
        subscription_id: str,
        *,
        amount: int,
        payment_date: date,
        category: str,
    ) -> PaymentRecord:
        key = (subscription_id, payment_date)
        if key in self.payments:
            raise DuplicatePaymentError(subscription_id, payment_date)
        record = PaymentRecord(
            id=uuid.uuid4().hex,
            subscription_id=subscription_id,
            user_id=user_id,
            amount=amount,
            payment_date=payment_date,
            category=category,
        )
        self.payments[key] = record
        return replace(record)

    def list_payments(self, user_id: str) -> list[PaymentRecord]:
        items = []
        for payment in self.payments.values():
            if payment.user_id != user_id:
                continue
            sub = self.subscriptions.get(payment.subscription_id)
            items.append(
                replace(payment, subscription_name=sub.name if sub else None)
            )
        return _newest_first(items, key=lambda p: (p.payment_date, p.created_at))

    def get_notification_settings(
        self, user_id: str
    ) -> Optional[NotificationSettingsRecord]:
        record = self.notification_settings.get(user_id)
        return _copy_settings(record) if record else None

    def list_notification_settings(self) -> Dict[str, NotificationSettingsRecord]:
        return {uid: _copy_settings(rec) for uid, rec in self.notification_settings.items()}

    def save_notification_settings(
        self, record: NotificationSettingsRecord
    ) -> NotificationSettingsRecord:
        stored = _copy_settings(record, updated_at=time.time())
        self.notification_settings[record.user_id] = stored
        return _copy_settings(stored)

    def save_profile(self, user_id: str, email: Optional[str]) -> None:
        self.profiles[user_id] = email

    def list_profiles(self) -> Dict[str, Optional[str]]:
        return dict(self.profiles)

    def get_profile_email(self, user_id: str) -> Optional[str]:
        return self.profiles.get(user_id)

    def add_notification(self, record: NotificationRecord) -> None:
        self.notifications.append(replace(record))

    def has_sent_notification(
        self,
        subscription_id: str,
        notification_type: NotificationType,
        days_before: int,
        target_date: date,
    ) -> bool:
        return any(
            n.subscription_id == subscription_id
            and n.notification_type == notification_type
            and n.days_before == days_before
            and n.target_date == target_date
            and n.status == NotificationStatus.SENT
            for n in self.notifications
        )

    def list_notifications(
        self, user_id: str, limit: int = 20
    ) -> list[NotificationRecord]:
        items = []
        for n in self.notifications:
            if n.user_id != user_id:
                continue
            sub = self.subscriptions.get(n.subscription_id)
            items.append(replace(n, subscription_name=sub.name if sub else None))
        return _newest_first(items, key=lambda n: n.sent_at)[:limit]


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @staticmethod
    def _to_subscription(row: "SubscriptionRow") -> SubscriptionRecord:
        return SubscriptionRecord(
            id=row.id,
            user_id=row.user_id,
            name=row.name,
            price=row.price,
            category=row.category,
            card_name=row.card_name,
            is_trial_period=row.is_trial_period,
            trial_end_date=row.trial_end_date,
            next_payment=row.next_payment,
            last_billed_on=row.last_billed_on,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_payment(
        row: "PaymentRow", subscription_name: Optional[str] = None
    ) -> PaymentRecord:
        return PaymentRecord(
            id=row.id,
            subscription_id=row.subscription_id,
            user_id=row.user_id,
            amount=row.amount,
            payment_date=row.payment_date,
            category=row.category,
            created_at=row.created_at,
            subscription_name=subscription_name,
        )

    @staticmethod
    def _to_settings(row: "NotificationSettingsRow") -> NotificationSettingsRecord:
        return NotificationSettingsRecord(
            user_id=row.user_id,
            email_notifications_enabled=row.email_notifications_enabled,
            trial_notification_days=list(row.trial_notification_days or []),
            payment_notification_days=list(row.payment_notification_days or []),
            notification_time=row.notification_time,
            timezone=row.timezone,
            updated_at=row.updated_at,
        )

    def list_subscriptions(self, user_id: str) -> list[SubscriptionRecord]:
        with self.Session() as session:
            stmt = (
                select(SubscriptionRow)
                .where(SubscriptionRow.user_id == user_id)
                .order_by(SubscriptionRow.created_at.desc(), SubscriptionRow.seq.desc())
            )
            return [self._to_subscription(row) for row in session.scalars(stmt)]

    def list_all_subscriptions(self) -> list[SubscriptionRecord]:
        with self.Session() as session:
            stmt = select(SubscriptionRow).order_by(SubscriptionRow.seq.asc())
            return [self._to_subscription(row) for row in session.scalars(stmt)]

    def list_user_ids(self) -> list[str]:
        with self.Session() as session:
            stmt = select(SubscriptionRow.user_id).distinct().order_by(SubscriptionRow.user_id)
            return list(session.scalars(stmt))

    def get_subscription(
        self, user_id: str, subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        with self.Session() as session:
            row = self._owned_row(session, user_id, subscription_id)
            return self._to_subscription(row) if row else None

    @staticmethod
    def _owned_row(
        session: Session, user_id: str, subscription_id: str
    ) -> Optional["SubscriptionRow"]:
        stmt = select(SubscriptionRow).where(
            SubscriptionRow.id == subscription_id,
            SubscriptionRow.user_id == user_id,
        )
        return session.execute(stmt).scalar_one_or_none()

    def create_subscription(
        self,
        user_id: str,
        *,
        name: str,
        price: int,
        category: str,
        next_payment: date,
        card_name: Optional[str] = None,
        is_trial_period: bool = False,
        trial_end_date: Optional[date] = None,
    ) -> SubscriptionRecord:
        now = time.time()
        with self.Session() as session:
            row = SubscriptionRow(
                id=uuid.uuid4().hex,
                user_id=user_id,
                name=name,
                price=price,
                category=category,
                card_name=card_name,
                is_trial_period=is_trial_period,
                trial_end_date=trial_end_date,
                next_payment=next_payment,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_subscription(row)

    def update_subscription(
        self, user_id: str, subscription_id: str, updates: dict
    ) -> Optional[SubscriptionRecord]:
        _check_updates(updates)
        with self.Session() as session:
            row = self._owned_row(session, user_id, subscription_id)
            if not row:
                return None
            for key, value in updates.items():
                setattr(row, key, value)
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_subscription(row)

    def delete_subscription(self, user_id: str, subscription_id: str) -> bool:
        with self.Session() as session:
            row = self._owned_row(session, user_id, subscription_id)
            if not row:
                return False
            session.execute(
                delete(PaymentRow).where(PaymentRow.subscription_id == subscription_id)
            )
            session.execute(
                delete(NotificationHistoryRow).where(
                    NotificationHistoryRow.subscription_id == subscription_id
                )
            )
            session.delete(row)
            session.commit()
            return True

    def add_payment(
        self,
        user_id: str,
        subscription_id: str,
        *,
        amount: int,
        payment_date: date,
        category: str,
    ) -> PaymentRecord:
        with self.Session() as session:
            row = PaymentRow(
                id=uuid.uuid4().hex,
                subscription_id=subscription_id,
                user_id=user_id,
                amount=amount,
                payment_date=payment_date,
                category=category,
                created_at=time.time(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicatePaymentError(subscription_id, payment_date) from exc
            session.refresh(row)
            return self._to_payment(row)

    def list_payments(self, user_id: str) -> list[PaymentRecord]:
        with self.Session() as session:
            stmt = (
                select(PaymentRow, SubscriptionRow.name)
                .outerjoin(SubscriptionRow, SubscriptionRow.id == PaymentRow.subscription_id)
                .where(PaymentRow.user_id == user_id)
                .order_by(PaymentRow.payment_date.desc(), PaymentRow.created_at.desc())
            )
            return [self._to_payment(row, name) for row, name in session.execute(stmt)]

    def get_notification_settings(
        self, user_id: str
    ) -> Optional[NotificationSettingsRecord]:
        with self.Session() as session:
            row = session.get(NotificationSettingsRow, user_id)
            return self._to_settings(row) if row else None

    def list_notification_settings(self) -> Dict[str, NotificationSettingsRecord]:
        with self.Session() as session:
            rows = session.scalars(select(NotificationSettingsRow))
            return {row.user_id: self._to_settings(row) for row in rows}

    def save_notification_settings(
        self, record: NotificationSettingsRecord
    ) -> NotificationSettingsRecord:
        with self.Session() as session:
            row = session.get(NotificationSettingsRow, record.user_id)
            if not row:
                row = NotificationSettingsRow(user_id=record.user_id)
                session.add(row)
            row.email_notifications_enabled = record.email_notifications_enabled
            row.trial_notification_days = list(record.trial_notification_days)
            row.payment_notification_days = list(record.payment_notification_days)
            row.notification_time = record.notification_time
            row.timezone = record.timezone
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_settings(row)

    def save_profile(self, user_id: str, email: Optional[str]) -> None:
        with self.Session() as session:
            row = session.get(ProfileRow, user_id)
            if row:
                row.email = email
            else:
                session.add(ProfileRow(user_id=user_id, email=email))
            session.commit()

    def list_profiles(self) -> Dict[str, Optional[str]]:
        with self.Session() as session:
            return {row.user_id: row.email for row in session.scalars(select(ProfileRow))}

    def get_profile_email(self, user_id: str) -> Optional[str]:
        with self.Session() as session:
            row = session.get(ProfileRow, user_id)
            return row.email if row else None

    def add_notification(self, record: NotificationRecord) -> None:
        with self.Session() as session:
            session.add(
                NotificationHistoryRow(
                    id=record.id,
                    user_id=record.user_id,
                    subscription_id=record.subscription_id,
                    notification_type=record.notification_type.value,
                    days_before=record.days_before,
                    target_date=record.target_date,
                    email_address=record.email_address,
                    subject=record.subject,
                    status=record.status.value,
                    error_message=record.error_message,
                    sent_at=record.sent_at,
                )
            )
            session.commit()

    def has_sent_notification(
        self,
        subscription_id: str,
        notification_type: NotificationType,
        days_before: int,
        target_date: date,
    ) -> bool:
        with self.Session() as session:
            stmt = select(NotificationHistoryRow.id).where(
                NotificationHistoryRow.subscription_id == subscription_id,
                NotificationHistoryRow.notification_type == notification_type.value,
                NotificationHistoryRow.days_before == days_before,
                NotificationHistoryRow.target_date == target_date,
                NotificationHistoryRow.status == NotificationStatus.SENT.value,
            )
            return session.execute(stmt).first() is not None

    def list_notifications(
        self, user_id: str, limit: int = 20
    ) -> list[NotificationRecord]:
        with self.Session() as session:
            stmt = (
                select(NotificationHistoryRow, SubscriptionRow.name)
                .outerjoin(
                    SubscriptionRow,
                    SubscriptionRow.id == NotificationHistoryRow.subscription_id,
                )
                .where(NotificationHistoryRow.user_id == user_id)
                .order_by(NotificationHistoryRow.sent_at.desc())
                .limit(limit)
            )
            results: list[NotificationRecord] = []
            for row, name in session.execute(stmt):
                results.append(
                    NotificationRecord(
                        id=row.id,
                        user_id=row.user_id,
                        subscription_id=row.subscription_id,
                        notification_type=NotificationType(row.notification_type),
                        days_before=row.days_before,
                        target_date=row.target_date,
                        email_address=row.email_address,
                        subject=row.subject,
                        status=NotificationStatus(row.status),
                        error_message=row.error_message,
                        sent_at=row.sent_at,
                        subscription_name=name,
                    )
                )
            return results


Base = declarative_base()


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    # Tie-breaker for rows created within the same clock tick.
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    category = Column(String, nullable=False)
    card_name = Column(String, nullable=True)
    is_trial_period = Column(Boolean, nullable=False, default=False)
    trial_end_date = Column(Date, nullable=True)
    next_payment = Column(Date, nullable=False)
    last_billed_on = Column(Date, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class PaymentRow(Base):
    __tablename__ = "payment_history"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "payment_date", name="uq_payment_history_subscription_date"
        ),
    )

    id = Column(String, primary_key=True)
    subscription_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    payment_date = Column(Date, nullable=False)
    category = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)


class NotificationSettingsRow(Base):
    __tablename__ = "notification_settings"

    user_id = Column(String, primary_key=True)
    email_notifications_enabled = Column(Boolean, nullable=False, default=True)
    trial_notification_days = Column(JSON, nullable=False, default=list)
    payment_notification_days = Column(JSON, nullable=False, default=list)
    notification_time = Column(String, nullable=False, default=DEFAULT_NOTIFICATION_TIME)
    timezone = Column(String, nullable=False, default=DEFAULT_TIMEZONE)
    updated_at = Column(Float, nullable=False, default=time.time)


class ProfileRow(Base):
    __tablename__ = "profiles"

    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=True)


class NotificationHistoryRow(Base):
    __tablename__ = "notification_history"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String, nullable=False, index=True)
    notification_type = Column(String, nullable=False)
    days_before = Column(Integer, nullable=False)
    target_date = Column(Date, nullable=False)
    email_address = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    status = Column(String, nullable=False)
    error_message = Column(String, nullable=True)
    sent_at = Column(Float, nullable=False, index=True)
