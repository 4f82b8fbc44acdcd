import logging
from typing import Iterable, Optional, Protocol

from django.db import transaction
from django.utils import timezone

from main.models import Notification
from main.services.exceptions import NotFound

logger = logging.getLogger(__name__)

BROADCAST = "*"

Category = Notification.Category


class Notifier(Protocol):
    def notify(
        self,
        recipient: str,
        title: str,
        message: str,
        category: str,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> None: ...


class DatabaseNotifier:
    """
    Records notification intents as ``Notification`` rows in ``pending``.

    Push/e-mail/SMS delivery picks them up from there. Failing to record an
    intent is logged and never reaches the caller.
    """

    def _build(self, recipient, title, message, category, reference_id, reference_type):
        broadcast = recipient == BROADCAST
        return Notification(
            recipient_id=None if broadcast else recipient,
            broadcast=broadcast,
            title=title[:255],
            message=message,
            category=category,
            reference_id=reference_id or "",
            reference_type=reference_type or "",
        )

    def notify(
        self,
        recipient,
        title,
        message,
        category,
        reference_id=None,
        reference_type=None,
    ):
        try:
            with transaction.atomic():
                self._build(
                    recipient, title, message, category, reference_id, reference_type
                ).save()
        except Exception:
            logger.exception(
                "Failed to record %s notification for %s", category, recipient
            )

    def notify_many(
        self,
        recipients: Iterable[str],
        title,
        message,
        category,
        reference_id=None,
        reference_type=None,
    ) -> int:
        rows = [
            self._build(r, title, message, category, reference_id, reference_type)
            for r in recipients
        ]
        if not rows:
            return 0
        try:
            with transaction.atomic():
                Notification.objects.bulk_create(rows)
        except Exception:
            logger.exception(
                "Failed to record %s notifications for %d recipients",
                category,
                len(rows),
            )
            return 0
        return len(rows)


def mark_as_read(notification_id, user_id) -> Notification:
    """Mark a user's own notification as read. Broadcasts are not per-user."""
    notification = Notification.objects.filter(
        pk=notification_id, recipient_id=user_id
    ).first()
    if notification is None:
        raise NotFound("Notification")
    if notification.status != Notification.Status.READ:
        Notification.objects.filter(pk=notification.pk).update(
            status=Notification.Status.READ, updated_at=timezone.now()
        )
        notification.status = Notification.Status.READ
    return notification
