import logging
from celery import shared_task

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from main.models import User, UserRole

from .geometry import point_in_polygon, resolve_territory
from .models import Territory
from .resolver import TerritoryResolver

logger = logging.getLogger(__name__)


def _batch_size():
    return int(
        getattr(settings, "TERRITORY_SETTINGS", {}).get("REASSIGN_BATCH_SIZE", 50)
    )


def _batches(queryset, size):
    """Keyset pagination over ``pk`` so rows updated mid-scan are not revisited."""
    last_pk = None
    while True:
        page = queryset if last_pk is None else queryset.filter(pk__gt=last_pk)
        batch = list(page[:size])
        if not batch:
            return
        yield batch
        last_pk = batch[-1][0]


def reassign_customers(territory_id, batch_size=None, resolver=None):
    """
    Bring customers' canonical territory in line with ``territory_id``'s
    current polygon.

    A customer inside the polygon keeps a different active territory that
    still contains them; everyone else inside is re-resolved in insertion
    order. Customers pointing at this territory but no longer inside it (or
    the territory was deactivated) are re-resolved against the active set.
    Updates are written batch by batch; orders and rentals are not locked.
    """
    batch_size = batch_size or _batch_size()
    resolver = resolver or TerritoryResolver()

    territory = Territory.objects.filter(pk=territory_id).first()
    if territory is None:
        logger.warning("Reassignment skipped: territory %s no longer exists", territory_id)
        return {"territory": territory_id, "scanned": 0, "updated": 0}

    shapes = resolver.active_shapes()
    by_id = {shape.id: shape for shape in shapes}

    customers = (
        User.objects.filter(
            role=UserRole.CUSTOMER,
            latitude__isnull=False,
            longitude__isnull=False,
        )
        .order_by("pk")
        .values_list("pk", "latitude", "longitude", "territory_id")
    )

    scanned = 0
    updated = 0
    for batch in _batches(customers, batch_size):
        moves = {}
        for pk, lat, lng, current in batch:
            scanned += 1
            point = (lat, lng)
            inside = territory.is_active and point_in_polygon(point, territory.polygon)
            if not inside and current != territory.pk:
                continue
            if (
                current
                and current != territory.pk
                and current in by_id
                and point_in_polygon(point, by_id[current].polygon)
            ):
                continue
            target = resolve_territory(point, shapes)
            if target != current:
                moves.setdefault(target, []).append(pk)

        if not moves:
            continue
        with transaction.atomic():
            for target, pks in moves.items():
                updated += User.objects.filter(pk__in=pks).update(
                    territory_id=target, updated_at=timezone.now()
                )

    logger.info(
        "Territory %s reassignment: scanned=%d updated=%d",
        territory_id,
        scanned,
        updated,
    )
    return {"territory": territory_id, "scanned": scanned, "updated": updated}


@shared_task(name="territories.reassign_customers_to_territory")
def reassign_customers_to_territory(territory_id):
    try:
        return reassign_customers(territory_id)
    except Exception:
        logger.exception("Customer reassignment failed for territory %s", territory_id)
        return {"territory": territory_id, "error": True}


def schedule_reassignment(territory_id):
    """Queue the reassignment job once the surrounding transaction commits."""

    def _dispatch():
        try:
            reassign_customers_to_territory.delay(territory_id)
        except Exception:
            logger.exception(
                "Could not queue customer reassignment for territory %s", territory_id
            )

    transaction.on_commit(_dispatch)
