from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from django.conf import settings
from django.core.cache import cache

from .geometry import TerritoryShape, resolve_territory, validate_point
from .models import Territory

logger = logging.getLogger(__name__)

SNAPSHOT_CACHE_KEY = "territories:active-snapshot"

Resolution = Tuple[Optional[str], str]


def _snapshot_timeout():
    return getattr(settings, "TERRITORY_SETTINGS", {}).get("SNAPSHOT_CACHE_TIMEOUT", 300)


class TerritoryResolver:
    """
    Resolves coordinates to the canonical territory id.

    Reads go through a cached snapshot of the active territories in
    resolution order; any territory write drops the snapshot.
    """

    def active_shapes(self) -> List[TerritoryShape]:
        rows = cache.get(SNAPSHOT_CACHE_KEY)
        if rows is None:
            rows = [
                [pk, polygon]
                for pk, polygon in Territory.objects.active()
                .in_resolution_order()
                .values_list("pk", "polygon")
            ]
            cache.set(SNAPSHOT_CACHE_KEY, rows, _snapshot_timeout())
        return [TerritoryShape(pk, polygon) for pk, polygon in rows]

    def resolve(self, latitude, longitude) -> Optional[str]:
        return resolve_territory(
            validate_point(latitude, longitude), self.active_shapes()
        )

    def resolve_with_reason(self, latitude, longitude) -> Resolution:
        """
        Returns (territory_id|None, tag):
          - "match" when an active territory contains the point
          - "no_coords" when latitude/longitude are missing
          - "no_match" when no active territory covers the point
        """
        if latitude is None or longitude is None:
            return None, "no_coords"
        territory_id = self.resolve(latitude, longitude)
        return territory_id, "match" if territory_id else "no_match"

    @staticmethod
    def invalidate():
        cache.delete(SNAPSHOT_CACHE_KEY)
