from datetime import timedelta

from celery import Celery

from app.config import settings
from app.logging import configure_logging


def build_beat_schedule() -> dict:
    return {
        "expire_lapsed_subscriptions": {
            "task": "app.tasks.billing.expire_lapsed_subscriptions",
            "schedule": timedelta(minutes=max(settings.expiry_sweep_interval_minutes, 1)),
        },
        "sync_subscription_entitlements": {
            "task": "app.tasks.billing.sync_subscription_entitlements",
            "schedule": timedelta(minutes=max(settings.entitlement_sync_interval_minutes, 1)),
        },
        "retry_failed_billing_events": {
            "task": "app.tasks.events.retry_failed_billing_events",
            "schedule": timedelta(minutes=max(settings.event_retry_interval_minutes, 1)),
        },
    }


configure_logging()
celery_app = Celery("marketplace_billing")
celery_app.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    timezone=settings.celery_timezone,
)
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["app.tasks"])
