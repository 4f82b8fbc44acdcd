"""
Territory administration and customer location updates.

Territory writes are validated and normalised through ``TerritorySerializer``
and, once committed, queue the customer reassignment job.
"""

import logging

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from main.models import User, UserRole
from main.services.exceptions import NotFound, ValidationFailed
from user.permissions import (
    Action,
    customer_resource,
    ensure_can_perform,
    territory_resource,
)

from .geometry import validate_point
from .models import Territory
from .resolver import TerritoryResolver
from .serializers import TerritorySerializer
from .tasks import schedule_reassignment

logger = logging.getLogger(__name__)


def _first_error(errors):
    field, messages = next(iter(errors.items()))
    message = messages[0] if isinstance(messages, list) and messages else messages
    return f"{field}: {message}"


class TerritoryService:
    def __init__(self, resolver=None):
        self.resolver = resolver or TerritoryResolver()

    def _get(self, territory_id) -> Territory:
        territory = Territory.objects.filter(pk=territory_id).first()
        if territory is None:
            raise NotFound("Territory")
        return territory

    def _get_user(self, user_id, entity="User") -> User:
        user = User.objects.filter(pk=user_id).first()
        if user is None:
            raise NotFound(entity)
        return user

    def create_territory(self, principal, *, name, city, polygon, owner_id=None):
        ensure_can_perform(principal, Action.MANAGE_TERRITORY, territory_resource(None))
        serializer = TerritorySerializer(
            data={"name": name, "city": city, "polygon": polygon}
        )
        if not serializer.is_valid():
            raise ValidationFailed(_first_error(serializer.errors), detail=serializer.errors)

        with transaction.atomic():
            territory = serializer.save()
            if owner_id:
                self._set_owner(territory, self._get_user(owner_id, "Owner"))
            schedule_reassignment(territory.pk)

        logger.info("Territory %s (%s) created by %s", territory.pk, name, principal.id)
        return territory

    def update_territory(self, territory_id, principal, **changes):
        territory = self._get(territory_id)
        ensure_can_perform(
            principal, Action.MANAGE_TERRITORY, territory_resource(territory.pk)
        )
        serializer = TerritorySerializer(territory, data=changes, partial=True)
        if not serializer.is_valid():
            raise ValidationFailed(_first_error(serializer.errors), detail=serializer.errors)

        coverage_changed = "polygon" in changes or "is_active" in changes
        with transaction.atomic():
            territory = serializer.save()
            if coverage_changed:
                schedule_reassignment(territory.pk)

        logger.info(
            "Territory %s updated by %s (fields=%s)",
            territory.pk,
            principal.id,
            sorted(changes),
        )
        return territory

    def _set_owner(self, territory, owner):
        if not owner.is_active:
            raise ValidationFailed("The owner account is inactive.")
        if owner.role in (UserRole.ADMIN, UserRole.TECHNICIAN):
            raise ValidationFailed("Admins and technicians cannot own a territory.")
        Territory.objects.filter(owner=owner).exclude(pk=territory.pk).update(
            owner=None, updated_at=timezone.now()
        )
        Territory.objects.filter(pk=territory.pk).update(
            owner=owner, updated_at=timezone.now()
        )
        User.objects.filter(pk=owner.pk).update(
            role=UserRole.TERRITORY_OWNER, territory=territory, updated_at=timezone.now()
        )
        territory.owner = owner

    def assign_owner(self, territory_id, owner_id, principal):
        territory = self._get(territory_id)
        ensure_can_perform(
            principal, Action.MANAGE_TERRITORY, territory_resource(territory.pk)
        )
        owner = self._get_user(owner_id, "Owner")
        with transaction.atomic():
            self._set_owner(territory, owner)
        logger.info("Territory %s now owned by %s", territory.pk, owner.pk)
        return territory

    def add_technician(self, territory_id, technician_id, principal):
        territory = self._get(territory_id)
        technician = self._get_user(technician_id, "Technician")
        if technician.role != UserRole.TECHNICIAN:
            raise ValidationFailed("This user is not a technician.")
        ensure_can_perform(
            principal, Action.STAFF_TERRITORY, territory_resource(territory.pk)
        )
        User.objects.filter(pk=technician.pk).update(
            territory=territory, updated_at=timezone.now()
        )
        technician.territory = territory
        logger.info("Technician %s attached to territory %s", technician.pk, territory.pk)
        return technician

    def available_technicians(self, territory_id):
        """Active technicians of the territory plus global (unassigned) ones."""
        return (
            User.objects.filter(role=UserRole.TECHNICIAN, is_active=True)
            .filter(Q(territory_id=territory_id) | Q(territory__isnull=True))
            .order_by("full_name", "pk")
        )

    def update_customer_location(self, customer_id, latitude, longitude, principal):
        """
        Store a customer's location and re-resolve their canonical territory.
        A location outside every territory clears it.
        """
        customer = self._get_user(customer_id, "Customer")
        ensure_can_perform(principal, Action.UPDATE_LOCATION, customer_resource(customer))
        latitude, longitude = validate_point(latitude, longitude)
        territory_id, tag = self.resolver.resolve_with_reason(latitude, longitude)
        User.objects.filter(pk=customer.pk).update(
            latitude=latitude,
            longitude=longitude,
            territory_id=territory_id,
            updated_at=timezone.now(),
        )
        customer.latitude = latitude
        customer.longitude = longitude
        customer.territory_id = territory_id
        logger.info(
            "Customer %s location updated: territory=%s (%s)",
            customer.pk,
            territory_id,
            tag,
        )
        return customer
