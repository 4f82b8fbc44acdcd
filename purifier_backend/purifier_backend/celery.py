import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "purifier_backend.settings")

app = Celery("purifier_backend")

# Load config from Django settings (CELERY_BROKER_URL, etc.)
app.config_from_object("django.conf:settings", namespace="CELERY")

# Autodiscover tasks in installed apps
app.autodiscover_tasks()

# Ensure our tasks module is registered
app.conf.imports = tuple(
    {*(app.conf.imports or ()), "purifier_backend.celery_tasks.tasks"}
)

app.conf.beat_schedule = {
    "rental-renewal-reminders-daily": {
        "task": "purifier_backend.celery_tasks.tasks.send_rental_renewal_reminders",
        "schedule": crontab(minute=0, hour=9),
        "options": {"queue": "default"},
    },
    "expire-lapsed-rentals-hourly": {
        "task": "purifier_backend.celery_tasks.tasks.expire_lapsed_rentals",
        "schedule": crontab(minute=15),
        "options": {"queue": "default"},
    },
}
