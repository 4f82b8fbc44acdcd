"""
Order lifecycle: creation, the payment gate, technician assignment,
installation and cancellation.

Every status change is a conditional write on the status that was read, so a
concurrent writer that got there first makes the loser fail with
IllegalTransitionError instead of silently overwriting it. Each change also
leaves an OrderEvent behind.
"""

import logging

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from main.gateway import PaymentGateway, PaymentSession
from main.models import (
    Order,
    OrderEvent,
    Payment,
    PaymentStatus,
    User,
    UserRole,
    generate_id,
)
from main.services.exceptions import (
    ConflictError,
    IllegalTransitionError,
    NoCoverage,
    NotFound,
    ValidationFailed,
)
from main.services.notifications import Category, DatabaseNotifier
from main.services.payment_verifier import PaymentVerifier
from main.services.rental_service import build_rental_service
from territories.models import Territory
from user.permissions import (
    Action,
    Principal,
    customer_resource,
    ensure_can_perform,
    order_resource,
)

logger = logging.getLogger(__name__)

ASSIGNABLE_STATUSES = frozenset(
    {
        Order.Status.PAYMENT_COMPLETED,
        Order.Status.ASSIGNED,
        Order.Status.INSTALLATION_PENDING,
    }
)
# Reached only through initiate_payment / confirm_payment.
PAYMENT_GATE_STATUSES = frozenset(
    {Order.Status.PAYMENT_PENDING, Order.Status.PAYMENT_COMPLETED}
)


class OrderService:
    def __init__(self, *, gateway, verifier, notifier, rental_service, currency=None):
        self.gateway = gateway
        self.verifier = verifier
        self.notifier = notifier
        self.rental_service = rental_service
        self.currency = currency or getattr(settings, "PAYMENT_CURRENCY", "INR")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _get_order(self, order_id, *, for_update=False) -> Order:
        if for_update:
            order = Order.objects.select_for_update().filter(pk=order_id).first()
        else:
            order = (
                Order.objects.select_related("customer", "product", "technician")
                .filter(pk=order_id)
                .first()
            )
        if order is None:
            raise NotFound("Order")
        return order

    def _transition(self, order, to_status, *, actor_id=None, **fields):
        from_status = order.status
        if not Order.can_transition(from_status, to_status):
            raise IllegalTransitionError(
                f"Cannot change order status from {from_status} to {to_status}."
            )
        self._write_status(order, from_status, to_status, actor_id=actor_id, **fields)

    def _write_status(self, order, from_status, to_status, *, actor_id=None, **fields):
        now = timezone.now()
        updated = Order.objects.filter(pk=order.pk, status=from_status).update(
            status=to_status, updated_at=now, **fields
        )
        if not updated:
            current = (
                Order.objects.filter(pk=order.pk).values_list("status", flat=True).first()
            )
            raise IllegalTransitionError(
                f"Order {order.pk} is now {current}; it could not move from "
                f"{from_status} to {to_status}."
            )
        order.status = to_status
        order.updated_at = now
        for name, value in fields.items():
            setattr(order, name, value)
        OrderEvent.record(
            order,
            "status_change",
            f"{from_status} -> {to_status}",
            actor_id=actor_id,
            **{"from": from_status, "to": to_status},
        )
        logger.info("Order %s: %s -> %s", order.pk, from_status, to_status)

    def _notify_customer(self, order, title, message, category=Category.STATUS_UPDATE):
        self.notifier.notify(
            order.customer_id, title, message, category, order.pk, "order"
        )

    def _session(self, payment) -> PaymentSession:
        return PaymentSession(
            payment_id=payment.pk,
            gateway_order_ref=payment.gateway_order_ref,
            amount=payment.amount,
            currency=payment.currency,
            key_id=getattr(self.gateway, "key_id", ""),
        )

    @staticmethod
    def _payment_kind(order):
        return (
            Payment.Kind.DEPOSIT if order.kind == Order.Kind.RENTAL else Payment.Kind.PURCHASE
        )

    @staticmethod
    def _order_payments(order):
        return Payment.objects.filter(order_id=order.pk, rental__isnull=True)

    def eligible_technicians(self, territory_id):
        return User.objects.filter(role=UserRole.TECHNICIAN, is_active=True).filter(
            Q(territory_id=territory_id) | Q(territory__isnull=True)
        )

    # ------------------------------------------------------------------
    # creation & payment
    # ------------------------------------------------------------------
    def create(self, customer, product, kind, installation_date=None, *, principal=None):
        principal = principal or Principal.from_user(customer)
        ensure_can_perform(principal, Action.CREATE_ORDER, customer_resource(customer))

        if kind not in Order.Kind.values:
            raise ValidationFailed("Order kind must be 'purchase' or 'rental'.")
        if not product.is_active:
            raise ValidationFailed("This product is no longer available.")
        if kind == Order.Kind.PURCHASE and not product.is_purchasable:
            raise ValidationFailed("This product is not available for purchase.")
        if kind == Order.Kind.RENTAL and not product.is_rentable:
            raise ValidationFailed("This product is not available for rent.")
        if installation_date is not None and installation_date <= timezone.now():
            raise ValidationFailed("Installation date must be in the future.")

        # Canonical territory may have been changed by a background reassignment.
        territory_id = (
            User.objects.filter(pk=customer.pk).values_list("territory_id", flat=True).first()
        )
        if (
            not territory_id
            or not Territory.objects.active().filter(pk=territory_id).exists()
        ):
            raise NoCoverage("Service is not available at your location yet.")

        total = product.buy_price if kind == Order.Kind.PURCHASE else product.deposit

        with transaction.atomic():
            order = Order.objects.create(
                customer=customer,
                product=product,
                kind=kind,
                status=Order.Status.CREATED,
                territory_id=territory_id,
                total_amount=total,
                payment_status=PaymentStatus.PENDING,
                installation_date=installation_date,
            )
            payment = Payment.objects.create(
                order=order,
                amount=total,
                currency=self.currency,
                kind=self._payment_kind(order),
                status=PaymentStatus.PENDING,
            )
            OrderEvent.record(
                order,
                "created",
                f"{kind} order for {product.name}",
                actor_id=principal.id,
                payment_id=payment.pk,
                total_amount=total,
            )

        logger.info(
            "Order %s created: customer=%s product=%s kind=%s total=%s",
            order.pk,
            customer.pk,
            product.pk,
            kind,
            total,
        )
        self._notify_customer(
            order,
            "New Order Created",
            f"Your order for {product.name} has been created. "
            "Please proceed to payment.",
            Category.ORDER_CONFIRMATION,
        )
        return order

    def _check_payable(self, order):
        if order.payment_status == PaymentStatus.COMPLETED:
            raise ConflictError("This order has already been paid.")
        if order.status not in (Order.Status.CREATED, Order.Status.PAYMENT_PENDING):
            raise ConflictError(f"An order in status {order.status} cannot be paid.")

    def initiate_payment(self, order_id, principal) -> PaymentSession:
        """
        Open (or reopen) the gateway transaction for the order's pending
        payment. Calling it twice returns the same gateway reference.
        """
        order = self._get_order(order_id)
        ensure_can_perform(principal, Action.PAY_ORDER, order_resource(order))
        self._check_payable(order)

        payment = (
            self._order_payments(order)
            .filter(status=PaymentStatus.PENDING)
            .order_by("created_at")
            .first()
        )
        if payment is not None and payment.gateway_order_ref:
            return self._session(payment)

        # The previous attempt failed: a fresh payment for the same amount
        # is opened, only once the gateway has accepted it.
        payment_id = payment.pk if payment is not None else generate_id("pay")
        gateway_ref = self.gateway.create_transaction(
            order.total_amount,
            self.currency,
            {
                "receipt": payment_id,
                "order_id": order.pk,
                "order_kind": order.kind,
                "customer_id": order.customer_id,
                "product_name": order.product.name,
            },
        )

        try:
            with transaction.atomic():
                locked = self._get_order(order.pk, for_update=True)
                self._check_payable(locked)
                now = timezone.now()
                if payment is None:
                    payment = Payment.objects.create(
                        id=payment_id,
                        order=locked,
                        amount=locked.total_amount,
                        currency=self.currency,
                        kind=self._payment_kind(locked),
                        status=PaymentStatus.PENDING,
                        gateway_order_ref=gateway_ref,
                    )
                else:
                    recorded = Payment.objects.filter(
                        pk=payment.pk, status=PaymentStatus.PENDING, gateway_order_ref=""
                    ).update(gateway_order_ref=gateway_ref, updated_at=now)
                    if not recorded:
                        # A concurrent initiation recorded its reference first.
                        payment.refresh_from_db()
                        if payment.status != PaymentStatus.PENDING:
                            raise ConflictError("Payment could not be started; please retry.")
                        return self._session(payment)
                    payment.gateway_order_ref = gateway_ref
                if locked.status == Order.Status.CREATED:
                    self._transition(
                        locked, Order.Status.PAYMENT_PENDING, actor_id=principal.id
                    )
                OrderEvent.record(
                    locked,
                    "payment_initiated",
                    f"Gateway order {gateway_ref}",
                    actor_id=principal.id,
                    payment_id=payment.pk,
                    gateway_order_ref=gateway_ref,
                )
        except IntegrityError:
            # A concurrent retry opened the replacement payment first; reuse it.
            payment = (
                self._order_payments(order)
                .filter(status=PaymentStatus.PENDING)
                .exclude(gateway_order_ref="")
                .first()
            )
            if payment is None:
                raise ConflictError("Payment could not be started; please retry.")

        logger.info(
            "Payment %s for order %s initiated (gateway_ref=%s)",
            payment.pk,
            order.pk,
            payment.gateway_order_ref,
        )
        return self._session(payment)

    def confirm_payment(self, order_id, refs, principal=None) -> bool:
        """
        Complete the order's payment once the gateway signature checks out.

        Returns False (payment failed, order untouched) on a bad signature.
        Replaying a confirmation that was already applied changes nothing and
        returns the same result.
        """
        order = self._get_order(order_id)
        if principal is not None:
            ensure_can_perform(principal, Action.PAY_ORDER, order_resource(order))

        payment = self._order_payments(order).filter(gateway_order_ref=refs.order_ref).first()
        if payment is None:
            raise NotFound("Payment")

        if payment.status == PaymentStatus.COMPLETED:
            return (
                self.verifier.matches(refs.order_ref, refs.payment_ref, refs.signature)
                and payment.gateway_payment_ref == refs.payment_ref
            )
        if payment.status != PaymentStatus.PENDING:
            logger.warning(
                "Confirmation for %s payment %s ignored", payment.status, payment.pk
            )
            return False
        if order.status != Order.Status.PAYMENT_PENDING:
            raise ConflictError(f"An order in status {order.status} cannot be paid.")

        if not self.verifier.verify(
            payment.pk, refs.order_ref, refs.payment_ref, refs.signature
        ):
            OrderEvent.record(
                order,
                "payment_failed",
                "Signature verification failed",
                payment_id=payment.pk,
            )
            self._notify_customer(
                order,
                "Payment Failed",
                "We could not verify your payment. Please try again.",
                Category.PAYMENT_FAILURE,
            )
            return False

        with transaction.atomic():
            locked = self._get_order(order.pk, for_update=True)
            now = timezone.now()
            applied = Payment.objects.filter(
                pk=payment.pk, status=PaymentStatus.PENDING
            ).update(
                status=PaymentStatus.COMPLETED,
                gateway_payment_ref=refs.payment_ref,
                updated_at=now,
            )
            if applied:
                self._transition(
                    locked,
                    Order.Status.PAYMENT_COMPLETED,
                    payment_status=PaymentStatus.COMPLETED,
                )
                OrderEvent.record(
                    locked,
                    "payment_completed",
                    f"Gateway payment {refs.payment_ref}",
                    payment_id=payment.pk,
                    gateway_payment_ref=refs.payment_ref,
                )

        if not applied:
            return True

        logger.info("Payment %s for order %s completed", payment.pk, order.pk)
        self._notify_customer(
            locked,
            "Payment Successful",
            f"Payment of {payment.amount / 100:.2f} {payment.currency} received "
            f"for your {order.product.name} order.",
            Category.PAYMENT_SUCCESS,
        )
        technicians = self.eligible_technicians(locked.territory_id).values_list(
            "pk", flat=True
        )
        self.notifier.notify_many(
            technicians,
            "New Order Available",
            f"A {order.kind} order for {order.product.name} is ready for installation.",
            Category.SERVICE_REQUEST,
            order.pk,
            "order",
        )
        return True

    # ------------------------------------------------------------------
    # fulfilment
    # ------------------------------------------------------------------
    def assign_technician(self, order_id, technician_id, principal) -> Order:
        order = self._get_order(order_id)
        technician = User.objects.filter(pk=technician_id).first()
        if technician is None:
            raise NotFound("Technician")
        ensure_can_perform(
            principal,
            Action.ASSIGN_TECHNICIAN,
            order_resource(order, technician=technician),
        )

        if order.payment_status != PaymentStatus.COMPLETED:
            raise ConflictError("A technician can only be assigned to a paid order.")
        if technician.role != UserRole.TECHNICIAN or not technician.is_active:
            raise ValidationFailed("This user is not an active technician.")
        if technician.territory_id and technician.territory_id != order.territory_id:
            raise ValidationFailed("The technician does not cover this order's territory.")
        if order.status not in ASSIGNABLE_STATUSES:
            raise IllegalTransitionError(
                f"A technician cannot be assigned to an order in status {order.status}."
            )

        with transaction.atomic():
            if order.status == Order.Status.ASSIGNED:
                self._write_status(
                    order,
                    Order.Status.ASSIGNED,
                    Order.Status.ASSIGNED,
                    actor_id=principal.id,
                    technician_id=technician.pk,
                )
            else:
                self._transition(
                    order,
                    Order.Status.ASSIGNED,
                    actor_id=principal.id,
                    technician_id=technician.pk,
                )
            OrderEvent.record(
                order,
                "assignment",
                f"Assigned to {technician}",
                actor_id=principal.id,
                technician_id=technician.pk,
            )

        order.technician = technician
        self._notify_customer(
            order,
            "Technician Assigned",
            f"{technician} will install your {order.product.name}.",
            Category.ASSIGNMENT,
        )
        self.notifier.notify(
            technician.pk,
            "New Installation Assigned",
            f"You have been assigned order {order.pk} ({order.product.name}).",
            Category.ASSIGNMENT,
            order.pk,
            "order",
        )
        return order

    def schedule_installation(self, order_id, installation_date, principal) -> Order:
        order = self._get_order(order_id)
        ensure_can_perform(
            principal, Action.SCHEDULE_INSTALLATION, order_resource(order)
        )
        if installation_date is None or installation_date <= timezone.now():
            raise ValidationFailed("Installation date must be in the future.")
        if order.payment_status != PaymentStatus.COMPLETED:
            raise ConflictError("Installation can only be scheduled for a paid order.")

        with transaction.atomic():
            if order.status == Order.Status.INSTALLATION_PENDING:
                self._write_status(
                    order,
                    order.status,
                    order.status,
                    actor_id=principal.id,
                    installation_date=installation_date,
                )
            else:
                self._transition(
                    order,
                    Order.Status.INSTALLATION_PENDING,
                    actor_id=principal.id,
                    installation_date=installation_date,
                )

        self._notify_customer(
            order,
            "Installation Scheduled",
            f"Installation is scheduled for {installation_date:%d %b %Y %H:%M}.",
        )
        return order

    def update_status(self, order_id, new_status, principal) -> Order:
        if new_status not in Order.Status.values:
            raise ValidationFailed(f"Unknown order status {new_status!r}.")
        if new_status == Order.Status.CANCELLED:
            return self.cancel(order_id, principal)

        order = self._get_order(order_id)
        ensure_can_perform(principal, Action.UPDATE_ORDER_STATUS, order_resource(order))

        if new_status in PAYMENT_GATE_STATUSES:
            raise IllegalTransitionError(
                f"An order only becomes {new_status} through the payment flow."
            )

        if new_status in Order.PAID_STATUSES and order.payment_status != PaymentStatus.COMPLETED:
            raise ConflictError("The order has not been paid yet.")
        if new_status == Order.Status.ASSIGNED and order.technician_id is None:
            raise ValidationFailed("Assign a technician to move the order to assigned.")

        rental = None
        with transaction.atomic():
            self._transition(order, new_status, actor_id=principal.id)
            if new_status == Order.Status.INSTALLED and order.is_rental:
                rental = self.rental_service.create_from_order(order)

        self._notify_customer(
            order,
            "Order Status Updated",
            f"Your order is now {order.get_status_display().lower()}.",
        )
        if rental is not None:
            logger.info("Order %s installed; rental %s active", order.pk, rental.pk)
        return order

    def cancel(self, order_id, principal, reason="") -> Order:
        """
        Customers may cancel before payment completes; admins may cancel any
        order that is not already cancelled or completed.
        """
        order = self._get_order(order_id)
        ensure_can_perform(principal, Action.CANCEL_ORDER, order_resource(order))
        if order.is_terminal:
            raise IllegalTransitionError(f"The order is already {order.status}.")

        override = not Order.can_transition(order.status, Order.Status.CANCELLED)
        if override and not principal.is_admin:
            raise IllegalTransitionError(
                f"An order in status {order.status} can no longer be cancelled."
            )

        with transaction.atomic():
            from_status = order.status
            self._write_status(
                order, from_status, Order.Status.CANCELLED, actor_id=principal.id
            )
            self._order_payments(order).filter(status=PaymentStatus.PENDING).update(
                status=PaymentStatus.FAILED,
                failure_reason="order_cancelled",
                updated_at=timezone.now(),
            )
            OrderEvent.record(
                order,
                "cancelled",
                reason or "Cancelled",
                actor_id=principal.id,
                override=override,
                refund_due=order.payment_status == PaymentStatus.COMPLETED,
            )
            if order.is_rental:
                self.rental_service.terminate_for_order(
                    order, reason or "Order cancelled"
                )

        logger.info(
            "Order %s cancelled by %s from %s (override=%s)",
            order.pk,
            principal.id,
            from_status,
            override,
        )
        self._notify_customer(
            order, "Order Cancelled", "Your order has been cancelled."
        )
        return order


def build_order_service(notifier=None) -> OrderService:
    notifier = notifier or DatabaseNotifier()
    gateway = PaymentGateway.from_settings()
    verifier = PaymentVerifier.from_settings()
    return OrderService(
        gateway=gateway,
        verifier=verifier,
        notifier=notifier,
        rental_service=build_rental_service(notifier=notifier),
    )
