from django.conf import settings
from django.db import models

from main.models import generate_id

from .geometry import normalize_ring, point_in_polygon


def _territory_id():
    return generate_id("ter")


class TerritoryQuerySet(models.QuerySet):
    def active(self):
        return self.filter(is_active=True)

    def in_resolution_order(self):
        return self.order_by("created_at", "id")


class Territory(models.Model):
    """
    A franchise area. ``polygon`` holds the canonical closed ring of
    ``[latitude, longitude]`` pairs; any accepted input shape is normalised on
    save. When territories overlap, the earliest created one wins.
    """

    id = models.CharField(
        primary_key=True, max_length=32, default=_territory_id, editable=False
    )
    name = models.CharField(max_length=100)
    city = models.CharField(max_length=100)
    polygon = models.JSONField()
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="owned_territories",
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = TerritoryQuerySet.as_manager()

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["is_active", "created_at"]),
        ]

    def __str__(self):
        return f"{self.name} ({self.city})"

    def save(self, *args, **kwargs):
        self.polygon = normalize_ring(self.polygon)
        super().save(*args, **kwargs)

    def contains(self, latitude, longitude) -> bool:
        return point_in_polygon((float(latitude), float(longitude)), self.polygon)
