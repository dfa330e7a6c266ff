"""
Session worker that keeps a lifecycle task running for each active user.

Each user gets a ``SubscriptionStore`` subscribed to the change feed and a
``LifecycleTask`` that evaluates trials and due payments once on load and
then every ``lifecycle_interval_seconds``. Users that disappear from the
database have their session closed.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Dict, Optional

from submemo.config import get_settings
from submemo.db import DbClient
from submemo.dependencies import get_change_feed, get_db_client
from submemo.realtime import ChangeFeed
from submemo.store import Clock, LifecycleTask, SubscriptionStore, utc_now

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(
        self,
        db: DbClient,
        feed: ChangeFeed,
        *,
        clock: Clock = utc_now,
        tz_name: str = "Asia/Tokyo",
        interval: timedelta = timedelta(hours=24),
        catch_up: bool = False,
    ):
        self.db = db
        self.feed = feed
        self.clock = clock
        self.tz_name = tz_name
        self.interval = interval
        self.catch_up = catch_up
        self.sessions: Dict[str, tuple[SubscriptionStore, LifecycleTask]] = {}

    def open(self, user_id: str) -> LifecycleTask:
        if user_id in self.sessions:
            return self.sessions[user_id][1]
        store = SubscriptionStore(
            user_id,
            self.db,
            self.feed,
            clock=self.clock,
            tz_name=self.tz_name,
            catch_up=self.catch_up,
        )
        store.start()
        task = LifecycleTask(store, clock=self.clock, interval=self.interval)
        self.sessions[user_id] = (store, task)
        logger.info("Opened session for %s", user_id)
        return task

    def close(self, user_id: str) -> None:
        session = self.sessions.pop(user_id, None)
        if not session:
            return
        store, task = session
        task.stop()
        store.close()
        logger.info("Closed session for %s", user_id)

    def close_all(self) -> None:
        for user_id in list(self.sessions):
            self.close(user_id)

    def sync_users(self) -> None:
        active = set(self.db.list_user_ids())
        for user_id in active - set(self.sessions):
            self.open(user_id)
        for user_id in set(self.sessions) - active:
            self.close(user_id)

    def run_pending(self) -> int:
        """Run every due lifecycle task once. Returns the number of tasks that ran."""
        ran = 0
        for user_id, (_, task) in list(self.sessions.items()):
            try:
                if task.run_pending() is not None:
                    ran += 1
            except Exception:
                logger.exception("Lifecycle pass failed for %s", user_id)
        return ran


def process_pending(manager: SessionManager) -> int:
    manager.sync_users()
    return manager.run_pending()


def build_manager(
    db: Optional[DbClient] = None, feed: Optional[ChangeFeed] = None
) -> SessionManager:
    settings = get_settings()
    return SessionManager(
        db or get_db_client(),
        feed or get_change_feed(),
        tz_name=settings.app_timezone,
        interval=timedelta(seconds=settings.lifecycle_interval_seconds),
        catch_up=settings.lifecycle_catch_up,
    )


def run_loop(poll_interval_seconds: float = 60.0) -> None:
    """
    Simple polling loop. Intended to be run under systemd/supervisor.
    """
    manager = build_manager()
    try:
        while True:
            try:
                process_pending(manager)
            except Exception:
                logger.exception("Session sync failed")
            time.sleep(poll_interval_seconds)
    finally:
        manager.close_all()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_loop()
