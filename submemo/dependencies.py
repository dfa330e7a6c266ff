"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException

from submemo.config import Settings, get_settings
from submemo.db import DbClient, InMemoryDbClient, PostgresDbClient
from submemo.mailer import LoggingMailer, Mailer, ResendMailer
from submemo.notifications import DailyTrigger, NotificationService
from submemo.realtime import ChangeFeed, InMemoryChangeFeed, RedisChangeFeed
from submemo.store import utc_now

_db_client: DbClient | None = None
_change_feed: ChangeFeed | None = None
_mailer: Mailer | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_change_feed() -> ChangeFeed:
    """
    Return a singleton change feed used to notify other sessions of writes.
    """
    global _change_feed
    if _change_feed:
        return _change_feed

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _change_feed = RedisChangeFeed(
            url=settings.redis_url,
            channel_prefix=settings.redis_channel_prefix,
        )
    else:
        _change_feed = InMemoryChangeFeed()
    return _change_feed


def get_mailer() -> Mailer:
    global _mailer
    if _mailer:
        return _mailer

    settings = get_settings()
    if settings.resend_api_key:
        _mailer = ResendMailer(
            api_key=settings.resend_api_key,
            from_email=settings.from_email,
            api_url=settings.resend_api_url,
        )
    else:
        _mailer = LoggingMailer(from_email=settings.from_email)
    return _mailer


def get_clock():
    """Overridable in tests to pin "now"."""
    return utc_now


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """
    The auth provider's session layer forwards the verified user id; we only
    require it to be present.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Guard for the scheduler hooks, which act on every user at once. Callers send
    ``Authorization: Bearer <CRON_SECRET>``.
    """
    scheme, _, token = (authorization or "").partition(" ")
    if (
        not settings.cron_secret
        or scheme.lower() != "bearer"
        or not secrets.compare_digest(token.encode(), settings.cron_secret.encode())
    ):
        raise HTTPException(status_code=401, detail="Not authenticated")


def build_notification_service(
    db: DbClient | None = None, mailer: Mailer | None = None
) -> NotificationService:
    settings = get_settings()
    return NotificationService(
        db or get_db_client(),
        mailer or get_mailer(),
        tz_name=settings.app_timezone,
    )


def build_daily_trigger(service: NotificationService) -> DailyTrigger:
    settings = get_settings()
    return DailyTrigger(
        service, tz_name=settings.app_timezone, hour=settings.notification_hour
    )
