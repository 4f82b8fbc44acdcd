import logging
from contextlib import contextmanager

from celery import shared_task

from django.core.cache import cache

from main.services.rental_service import build_rental_service

logger = logging.getLogger(__name__)


@contextmanager
def task_lock(key: str, timeout: int = 60 * 30):
    """
    Cache-based mutex so overlapping beat runs skip instead of doubling up.
    Yields False if another worker holds the lock.
    """
    acquired = cache.add(key, "1", timeout=timeout)
    try:
        yield acquired
    finally:
        if acquired:
            cache.delete(key)


# ---------- scheduled jobs ----------
@shared_task(name="purifier_backend.celery_tasks.tasks.send_rental_renewal_reminders")
def send_rental_renewal_reminders():
    with task_lock("rentals:locks:renewal_reminders") as acquired:
        if not acquired:
            logger.info("[reminders] skipped: another worker holds the lock")
            return {"sent": 0, "locked": True}
        sent = build_rental_service().send_renewal_reminders()
    return {"sent": sent, "locked": False}


@shared_task(name="purifier_backend.celery_tasks.tasks.expire_lapsed_rentals")
def expire_lapsed_rentals():
    with task_lock("rentals:locks:expire_lapsed", timeout=60 * 10) as acquired:
        if not acquired:
            logger.info("[expiry] skipped: another worker holds the lock")
            return {"expired": 0, "locked": True}
        expired = build_rental_service().expire_lapsed_rentals()
    return {"expired": expired, "locked": False}
