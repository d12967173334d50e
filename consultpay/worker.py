"""Celery worker configuration.

Run a worker for both queues and a single beat process::

    celery -A consultpay.worker worker -Q ledger,notifications
    celery -A consultpay.worker beat

Every periodic job is idempotent, so an overlapping run or a redelivered
message is harmless.
"""

from celery import Celery
from celery.schedules import crontab

from consultpay.config import settings

celery_app = Celery(
    "consultpay_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["consultpay.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,

    # Reminders run on their own queue; everything else is ledger work.
    task_default_queue="ledger",
    task_routes={
        "consultpay.tasks.send_session_reminders": {"queue": "notifications"},
    },

    # A redelivered task re-runs from the database state it finds.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Sweeps call gateways row by row, each bounded by gateway_timeout_seconds.
    task_time_limit=600,
    task_soft_time_limit=540,

    worker_prefetch_multiplier=1,
    worker_concurrency=4,
    result_expires=3600,

    task_default_retry_delay=60,
    task_max_retries=3,

    beat_schedule={
        "sweep-dispute-windows": {
            "task": "consultpay.tasks.sweep_dispute_windows",
            "schedule": crontab(minute="*/5"),
        },
        "send-session-reminders": {
            "task": "consultpay.tasks.send_session_reminders",
            "schedule": crontab(minute="*"),
        },
        "expire-unpaid-bookings": {
            "task": "consultpay.tasks.expire_unpaid_bookings",
            "schedule": crontab(minute="*/5"),
        },
        "auto-complete-sessions": {
            "task": "consultpay.tasks.auto_complete_sessions",
            "schedule": crontab(minute="*/10"),
        },
        # Webhooks are the fast path; polling catches lost deliveries.
        "poll-pending-payments": {
            "task": "consultpay.tasks.poll_pending_payments",
            "schedule": crontab(minute="*/10"),
        },
        "poll-processing-payouts": {
            "task": "consultpay.tasks.poll_processing_payouts",
            "schedule": crontab(minute="*/15"),
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
