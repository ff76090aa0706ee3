"""
Celery Tasks — הרצה מתוזמנת של יצירת הזמנות מנויים ותזכורות.

כל task הוא wrapper סינכרוני סביב coroutine שרץ ב-event loop חדש.
אותה נעילת Redis כמו ב-cron endpoints, כך שריצה ידנית וריצת beat
לא חופפות.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.subscription_service import (
    SUBSCRIPTION_BATCH_LOCK,
    SUBSCRIPTION_REMINDER_LOCK,
    SubscriptionOrderService,
    batch_run_lock,
)
from app.core.exceptions import BatchAlreadyRunningError
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop — client שמחובר
            # ל-loop סגור לא שמיש בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.process_due_subscriptions")
def process_due_subscriptions():
    """
    יצירת הזמנות לכל המנויים שמועדם הגיע.

    אם ריצה אחרת מחזיקה בנעילה — מדלגים (הריצה האחרת תטפל במנויים).
    """

    async def _process():
        try:
            async with batch_run_lock(SUBSCRIPTION_BATCH_LOCK):
                async with get_task_session() as db:
                    result = await SubscriptionOrderService(db).process_all_due_subscriptions()
        except BatchAlreadyRunningError:
            logger.info("Subscription batch already running, skipping")
            return {"skipped": True}

        return {
            "processed": result.processed,
            "success_count": result.success_count,
            "error_count": result.error_count,
            "details": [detail.to_dict() for detail in result.details],
        }

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.send_subscription_reminders")
def send_subscription_reminders():
    """תזכורות במייל למנויים שההזמנה הבאה שלהם מתקרבת"""

    async def _send():
        try:
            async with batch_run_lock(SUBSCRIPTION_REMINDER_LOCK):
                async with get_task_session() as db:
                    result = await SubscriptionOrderService(db).send_upcoming_reminders()
        except BatchAlreadyRunningError:
            logger.info("Subscription reminders already running, skipping")
            return {"skipped": True}

        return {
            "reminders_sent": result.reminders_sent,
            "total_subscriptions": result.total_subscriptions,
            "errors": result.errors,
        }

    return run_async(_send())
