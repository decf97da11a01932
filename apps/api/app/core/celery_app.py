from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("subscriptions_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "subscriptions-expire-due": {
        "task": "subscriptions.expire_due",
        "schedule": float(settings.expiry_sweep_interval_seconds),
    },
}


@celery_app.task(name="subscriptions.expire_due")
def expire_due_task() -> dict[str, int]:
    from app.business.subscription.tasks import run_expiry_sweep

    return run_expiry_sweep()
