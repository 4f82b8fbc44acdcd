"""
Centralized permission evaluator for order, rental and territory operations.

Every mutating service call asks one question before touching storage:
"may this principal perform this action on this resource?". The answer is a
pure function of three immutable values, so the whole rule set can be tested
as a matrix without a database.

USAGE:
    from user.permissions import Action, Principal, ensure_can_perform, order_resource

    ensure_can_perform(Principal.from_user(user), Action.CANCEL_ORDER, order_resource(order))

RULES:
- Inactive principals may do nothing
- Admins may do anything
- Territory owners act only inside their own territory
- Technicians act only on orders assigned to them
- Customers act only on their own orders and rentals
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from main.models import UserRole
from main.services.exceptions import PermissionDeniedError

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CREATE_ORDER = "order.create"
    PAY_ORDER = "order.pay"
    ASSIGN_TECHNICIAN = "order.assign_technician"
    UPDATE_ORDER_STATUS = "order.update_status"
    SCHEDULE_INSTALLATION = "order.schedule_installation"
    CANCEL_ORDER = "order.cancel"
    PAUSE_RENTAL = "rental.pause"
    RESUME_RENTAL = "rental.resume"
    TERMINATE_RENTAL = "rental.terminate"
    RENEW_RENTAL = "rental.renew"
    MANAGE_TERRITORY = "territory.manage"
    STAFF_TERRITORY = "territory.staff"
    UPDATE_LOCATION = "customer.update_location"


CUSTOMER_ACTIONS = frozenset(
    {
        Action.CREATE_ORDER,
        Action.PAY_ORDER,
        Action.CANCEL_ORDER,
        Action.PAUSE_RENTAL,
        Action.RESUME_RENTAL,
        Action.TERMINATE_RENTAL,
        Action.RENEW_RENTAL,
        Action.UPDATE_LOCATION,
    }
)

TERRITORY_OWNER_ACTIONS = frozenset(
    {
        Action.ASSIGN_TECHNICIAN,
        Action.UPDATE_ORDER_STATUS,
        Action.SCHEDULE_INSTALLATION,
        Action.CANCEL_ORDER,
        Action.STAFF_TERRITORY,
    }
)

TECHNICIAN_ACTIONS = frozenset(
    {
        Action.UPDATE_ORDER_STATUS,
        Action.SCHEDULE_INSTALLATION,
    }
)


# ============================================================================
# VALUES
# ============================================================================


@dataclass(frozen=True)
class Principal:
    id: str
    role: str
    territory_id: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_user(cls, user) -> "Principal":
        role = UserRole.ADMIN if user.is_superuser else user.role
        return cls(
            id=user.pk,
            role=role,
            territory_id=user.territory_id,
            is_active=user.is_active,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class Resource:
    """
    Snapshot of what an action touches.

    ``territory_id`` is the territory recorded on the order when it was
    placed, the customer's canonical territory for rentals, or the territory
    itself for territory administration.
    ``technician_territory_id`` is only set when a technician is being
    assigned or attached.
    """

    customer_id: Optional[str] = None
    territory_id: Optional[str] = None
    technician_id: Optional[str] = None
    technician_territory_id: Optional[str] = None
    cancellable: bool = False


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self):
        return self.allowed


ALLOW = Decision(True)


def deny(reason) -> Decision:
    return Decision(False, reason)


# ============================================================================
# RESOURCE BUILDERS
# ============================================================================


def order_resource(order, technician=None) -> Resource:
    return Resource(
        customer_id=order.customer_id,
        territory_id=order.territory_id,
        technician_id=order.technician_id,
        technician_territory_id=technician.territory_id if technician else None,
        cancellable=order.is_customer_cancellable,
    )


def rental_resource(rental) -> Resource:
    return Resource(
        customer_id=rental.customer_id,
        territory_id=rental.customer.territory_id,
    )


def customer_resource(customer) -> Resource:
    return Resource(customer_id=customer.pk, territory_id=customer.territory_id)


def territory_resource(territory_id, technician=None) -> Resource:
    return Resource(
        territory_id=territory_id,
        technician_territory_id=technician.territory_id if technician else None,
    )


# ============================================================================
# EVALUATION - Single Source of Truth
# ============================================================================


def _evaluate_customer(principal, action, resource) -> Decision:
    if action not in CUSTOMER_ACTIONS:
        return deny("Customers cannot perform this action.")
    if resource.customer_id != principal.id:
        return deny("You can only act on your own orders and rentals.")
    if action == Action.CANCEL_ORDER and not resource.cancellable:
        return deny("This order can no longer be cancelled.")
    return ALLOW


def _evaluate_territory_owner(principal, action, resource) -> Decision:
    if action not in TERRITORY_OWNER_ACTIONS:
        return deny("Territory owners cannot perform this action.")
    if principal.territory_id is None or resource.territory_id != principal.territory_id:
        return deny("This resource is outside your territory.")
    if (
        action == Action.ASSIGN_TECHNICIAN
        and resource.technician_territory_id != principal.territory_id
    ):
        return deny("The technician does not belong to your territory.")
    return ALLOW


def _evaluate_technician(principal, action, resource) -> Decision:
    if action not in TECHNICIAN_ACTIONS:
        return deny("Technicians cannot perform this action.")
    if resource.technician_id is None or resource.technician_id != principal.id:
        return deny("This order is not assigned to you.")
    return ALLOW


_EVALUATORS = {
    UserRole.CUSTOMER: _evaluate_customer,
    UserRole.TERRITORY_OWNER: _evaluate_territory_owner,
    UserRole.TECHNICIAN: _evaluate_technician,
}


def evaluate(principal: Principal, action: Action, resource: Resource) -> Decision:
    if principal is None or not principal.is_active:
        return deny("Your account is inactive.")
    if principal.is_admin:
        return ALLOW
    evaluator = _EVALUATORS.get(principal.role)
    if evaluator is None:
        return deny("Unknown role.")
    return evaluator(principal, action, resource)


def can_perform(principal: Principal, action: Action, resource: Resource) -> bool:
    return evaluate(principal, action, resource).allowed


def ensure_can_perform(principal, action, resource) -> None:
    """Raise PermissionDeniedError unless ``principal`` may perform ``action``."""
    decision = evaluate(principal, action, resource)
    if not decision:
        logger.info(
            "Permission denied: principal=%s role=%s action=%s reason=%s",
            getattr(principal, "id", None),
            getattr(principal, "role", None),
            getattr(action, "value", action),
            decision.reason,
        )
        raise PermissionDeniedError(decision.reason)
