"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "farm_store",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="America/New_York",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,  # 15 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # יצירת הזמנות למנויים שמועדם הגיע — פעם ביום לפני תחילת יום האריזה
    "process-due-subscriptions-daily": {
        "task": "app.workers.tasks.process_due_subscriptions",
        "schedule": crontab(hour="6", minute="0"),
    },
    # תזכורות SUBSCRIPTION_REMINDER_DAYS_AHEAD ימים לפני ההזמנה
    "send-subscription-reminders-daily": {
        "task": "app.workers.tasks.send_subscription_reminders",
        "schedule": crontab(hour="9", minute="0"),
    },
}
