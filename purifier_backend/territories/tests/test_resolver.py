"""
Tests for TerritoryResolver: the cached active-territory snapshot used to
resolve a customer's canonical territory.
"""

from datetime import timedelta

import pytest

from django.core.cache import cache
from django.utils import timezone

from main.factories import TerritoryFactory
from territories.models import Territory
from territories.resolver import SNAPSHOT_CACHE_KEY, TerritoryResolver

INSIDE = (13.0, 77.6)
OUTSIDE = (28.61, 77.21)

SMALL_SQUARE = [[12.95, 77.55], [12.95, 77.65], [13.05, 77.65], [13.05, 77.55]]


@pytest.mark.django_db
class TestTerritoryResolver:
    def test_resolves_point_inside_active_territory(self):
        territory = TerritoryFactory()
        assert TerritoryResolver().resolve(*INSIDE) == territory.pk

    def test_point_outside_every_territory(self):
        TerritoryFactory()
        assert TerritoryResolver().resolve(*OUTSIDE) is None

    def test_inactive_territories_are_ignored(self):
        TerritoryFactory(is_active=False)
        assert TerritoryResolver().resolve(*INSIDE) is None

    def test_earliest_created_territory_wins_on_overlap(self):
        big = TerritoryFactory(name="Big")
        small = TerritoryFactory(name="Small", polygon=SMALL_SQUARE)
        Territory.objects.filter(pk=small.pk).update(
            created_at=big.created_at - timedelta(days=1)
        )
        TerritoryResolver.invalidate()

        assert TerritoryResolver().resolve(*INSIDE) == small.pk

    def test_snapshot_is_cached(self):
        territory = TerritoryFactory()
        resolver = TerritoryResolver()
        resolver.resolve(*INSIDE)

        assert cache.get(SNAPSHOT_CACHE_KEY) == [[territory.pk, territory.polygon]]

    def test_territory_write_drops_snapshot(self):
        resolver = TerritoryResolver()
        assert resolver.resolve(*INSIDE) is None

        territory = TerritoryFactory()

        assert cache.get(SNAPSHOT_CACHE_KEY) is None
        assert resolver.resolve(*INSIDE) == territory.pk

    def test_deactivation_drops_snapshot(self):
        territory = TerritoryFactory()
        resolver = TerritoryResolver()
        assert resolver.resolve(*INSIDE) == territory.pk

        territory.is_active = False
        territory.save()

        assert resolver.resolve(*INSIDE) is None

    def test_resolve_with_reason_tags(self):
        territory = TerritoryFactory()
        resolver = TerritoryResolver()

        assert resolver.resolve_with_reason(*INSIDE) == (territory.pk, "match")
        assert resolver.resolve_with_reason(*OUTSIDE) == (None, "no_match")
        assert resolver.resolve_with_reason(None, 77.6) == (None, "no_coords")


@pytest.mark.django_db
class TestTerritoryModel:
    def test_polygon_is_normalised_on_save(self):
        territory = TerritoryFactory(
            polygon={"type": "Polygon", "coordinates": [[[77.5, 12.9], [77.7, 12.9], [77.7, 13.1]]]}
        )
        territory.refresh_from_db()
        assert territory.polygon[0] == [12.9, 77.5]
        assert territory.polygon[0] == territory.polygon[-1]

    def test_contains(self):
        territory = TerritoryFactory()
        assert territory.contains(*INSIDE)
        assert not territory.contains(*OUTSIDE)

    def test_default_ordering_is_insertion_order(self):
        first = TerritoryFactory()
        second = TerritoryFactory()
        Territory.objects.filter(pk=second.pk).update(
            created_at=timezone.now() + timedelta(minutes=1)
        )
        assert list(Territory.objects.values_list("pk", flat=True)) == [first.pk, second.pk]
