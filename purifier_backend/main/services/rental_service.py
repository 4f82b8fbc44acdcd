"""
Rental lifecycle: activation from an installed order, pause/resume,
termination, monthly renewal and the scheduled reminder/expiry jobs.

Periods are calendar months (``relativedelta``). Pausing freezes the period;
resuming pushes the period end out by exactly the paused duration. A renewal
always starts at the previous period end, however late it is confirmed.
"""

import logging
from datetime import timedelta

from dateutil.relativedelta import relativedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from main.gateway import PaymentGateway, PaymentSession
from main.models import Order, Payment, PaymentStatus, Rental, generate_id
from main.services.exceptions import (
    ConflictError,
    IllegalTransitionError,
    NotFound,
    ValidationFailed,
)
from main.services.notifications import Category, DatabaseNotifier
from main.services.payment_verifier import PaymentVerifier
from user.permissions import Action, ensure_can_perform, rental_resource

logger = logging.getLogger(__name__)

BILLING_PERIOD = relativedelta(months=1)


def _rental_setting(name, default):
    return getattr(settings, "RENTAL_SETTINGS", {}).get(name, default)


class RentalService:
    PAUSABLE = frozenset({Rental.Status.ACTIVE})
    RESUMABLE = frozenset({Rental.Status.PAUSED})
    TERMINABLE = frozenset(
        {Rental.Status.ACTIVE, Rental.Status.PAUSED, Rental.Status.EXPIRED}
    )

    def __init__(self, *, gateway, verifier, notifier, currency=None):
        self.gateway = gateway
        self.verifier = verifier
        self.notifier = notifier
        self.currency = currency or getattr(settings, "PAYMENT_CURRENCY", "INR")

    @property
    def renewal_window_days(self) -> int:
        return int(_rental_setting("RENEWAL_WINDOW_DAYS", 7))

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _get_rental(self, rental_id, *, for_update=False) -> Rental:
        qs = Rental.objects.select_for_update() if for_update else Rental.objects
        rental = qs.filter(pk=rental_id).first()
        if rental is None:
            raise NotFound("Rental")
        return rental

    def _move(self, rental, allowed, to_status, **fields):
        """Conditional status write on the status we read."""
        if rental.status not in allowed:
            raise IllegalTransitionError(
                f"Cannot change rental status from {rental.status} to {to_status}."
            )
        now = timezone.now()
        updated = Rental.objects.filter(pk=rental.pk, status=rental.status).update(
            status=to_status, updated_at=now, **fields
        )
        if not updated:
            raise IllegalTransitionError(
                f"Rental {rental.pk} was changed concurrently; please retry."
            )
        from_status = rental.status
        rental.status = to_status
        rental.updated_at = now
        for name, value in fields.items():
            setattr(rental, name, value)
        logger.info("Rental %s: %s -> %s", rental.pk, from_status, to_status)
        return rental

    def _notify(self, rental, title, message, category=Category.STATUS_UPDATE):
        self.notifier.notify(
            rental.customer_id, title, message, category, rental.pk, "rental"
        )

    def _session(self, payment) -> PaymentSession:
        return PaymentSession(
            payment_id=payment.pk,
            gateway_order_ref=payment.gateway_order_ref,
            amount=payment.amount,
            currency=payment.currency,
            key_id=getattr(self.gateway, "key_id", ""),
        )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def create_from_order(self, order: Order) -> Rental:
        """Start the rental for an installed rental order. Idempotent per order."""
        if order.kind != Order.Kind.RENTAL:
            raise ValidationFailed("Only rental orders start a rental.")
        now = timezone.now()
        product = order.product
        rental, created = Rental.objects.get_or_create(
            order=order,
            defaults={
                "customer_id": order.customer_id,
                "product": product,
                "status": Rental.Status.ACTIVE,
                "start_date": now,
                "current_period_start": now,
                "current_period_end": now + BILLING_PERIOD,
                "monthly_amount": product.rent_price,
                "deposit_amount": product.deposit,
            },
        )
        if created:
            logger.info("Rental %s started for order %s", rental.pk, order.pk)
            self._notify(
                rental,
                "Rental Started",
                f"Your {product.name} rental is active until "
                f"{rental.current_period_end:%d %b %Y}.",
            )
        return rental

    def pause(self, rental_id, principal) -> Rental:
        rental = self._get_rental(rental_id)
        ensure_can_perform(principal, Action.PAUSE_RENTAL, rental_resource(rental))
        self._move(rental, self.PAUSABLE, Rental.Status.PAUSED, paused_at=timezone.now())
        self._notify(rental, "Rental Paused", "Your rental has been paused.")
        return rental

    def resume(self, rental_id, principal) -> Rental:
        rental = self._get_rental(rental_id)
        ensure_can_perform(principal, Action.RESUME_RENTAL, rental_resource(rental))
        if rental.status not in self.RESUMABLE:
            raise IllegalTransitionError("Only paused rentals can be resumed.")

        with transaction.atomic():
            locked = self._get_rental(rental_id, for_update=True)
            now = timezone.now()
            paused_for = now - locked.paused_at if locked.paused_at else timedelta(0)
            self._move(
                locked,
                self.RESUMABLE,
                Rental.Status.ACTIVE,
                paused_at=None,
                current_period_end=locked.current_period_end + paused_for,
            )

        self._notify(
            locked,
            "Rental Resumed",
            f"Your rental is active again until {locked.current_period_end:%d %b %Y}.",
        )
        return locked

    def terminate(self, rental_id, reason, principal) -> Rental:
        rental = self._get_rental(rental_id)
        ensure_can_perform(principal, Action.TERMINATE_RENTAL, rental_resource(rental))
        return self._terminate(rental, reason)

    def terminate_for_order(self, order, reason) -> Rental | None:
        """Close the rental of a cancelled order, if it has one."""
        rental = Rental.objects.filter(order_id=order.pk).first()
        if rental is None or rental.status == Rental.Status.TERMINATED:
            return rental
        return self._terminate(rental, reason)

    def _terminate(self, rental, reason) -> Rental:
        with transaction.atomic():
            self._move(
                rental,
                self.TERMINABLE,
                Rental.Status.TERMINATED,
                end_date=timezone.now(),
                termination_reason=(reason or "")[:255],
            )
            Payment.objects.filter(
                rental_id=rental.pk, status=PaymentStatus.PENDING
            ).update(
                status=PaymentStatus.FAILED,
                failure_reason="rental_terminated",
                updated_at=timezone.now(),
            )
        self._notify(rental, "Rental Terminated", "Your rental has been terminated.")
        return rental

    # ------------------------------------------------------------------
    # renewal
    # ------------------------------------------------------------------
    def initiate_renewal(self, rental_id, principal) -> PaymentSession:
        rental = self._get_rental(rental_id)
        ensure_can_perform(principal, Action.RENEW_RENTAL, rental_resource(rental))
        if rental.status != Rental.Status.ACTIVE:
            raise IllegalTransitionError("Only active rentals can be renewed.")

        days_left = rental.days_remaining()
        window = self.renewal_window_days
        if days_left > window:
            raise ConflictError(
                f"Renewal is only available when {window} or fewer days remain "
                f"in the current period. {days_left} days remaining."
            )

        existing = (
            rental.payments.filter(status=PaymentStatus.PENDING)
            .exclude(gateway_order_ref="")
            .first()
        )
        if existing is not None:
            return self._session(existing)

        payment_id = generate_id("pay")
        gateway_ref = self.gateway.create_transaction(
            rental.monthly_amount,
            self.currency,
            {
                "receipt": payment_id,
                "rental_id": rental.pk,
                "customer_id": rental.customer_id,
                "payment_type": "renewal",
            },
        )

        try:
            with transaction.atomic():
                locked = self._get_rental(rental_id, for_update=True)
                if locked.status != Rental.Status.ACTIVE:
                    raise IllegalTransitionError("Only active rentals can be renewed.")
                payment = Payment.objects.create(
                    id=payment_id,
                    order_id=rental.order_id,
                    rental=rental,
                    amount=rental.monthly_amount,
                    currency=self.currency,
                    kind=Payment.Kind.RENTAL,
                    status=PaymentStatus.PENDING,
                    gateway_order_ref=gateway_ref,
                )
        except IntegrityError:
            # Lost a race with a concurrent initiation; hand back the winner.
            payment = rental.payments.filter(status=PaymentStatus.PENDING).first()
            if payment is None:
                raise ConflictError("Renewal could not be started; please retry.")

        logger.info(
            "Renewal payment %s opened for rental %s (gateway_ref=%s)",
            payment.pk,
            rental.pk,
            payment.gateway_order_ref,
        )
        return self._session(payment)

    def confirm_renewal(self, rental_id, refs, principal=None) -> bool:
        """
        Apply a verified renewal payment: the new period runs from the prior
        period end for one month. Applied at most once per payment.
        """
        rental = self._get_rental(rental_id)
        if principal is not None:
            ensure_can_perform(principal, Action.RENEW_RENTAL, rental_resource(rental))

        payment = rental.payments.filter(gateway_order_ref=refs.order_ref).first()
        if payment is None:
            raise NotFound("Renewal payment")

        if payment.status == PaymentStatus.COMPLETED:
            return (
                self.verifier.matches(refs.order_ref, refs.payment_ref, refs.signature)
                and payment.gateway_payment_ref == refs.payment_ref
            )
        if payment.status != PaymentStatus.PENDING:
            logger.warning(
                "Renewal confirmation for %s payment %s ignored",
                payment.status,
                payment.pk,
            )
            return False
        if rental.status == Rental.Status.TERMINATED:
            raise ConflictError("This rental has been terminated.")
        # Billing dates stay frozen while paused; the payment stays pending.
        if rental.status == Rental.Status.PAUSED:
            raise ConflictError("Resume the rental before confirming its renewal.")

        if not self.verifier.verify(
            payment.pk, refs.order_ref, refs.payment_ref, refs.signature
        ):
            self._notify(
                rental,
                "Renewal Payment Failed",
                "We could not verify your renewal payment. Please try again.",
                Category.PAYMENT_FAILURE,
            )
            return False

        with transaction.atomic():
            locked = self._get_rental(rental_id, for_update=True)
            if locked.status == Rental.Status.PAUSED:
                raise ConflictError("Resume the rental before confirming its renewal.")
            now = timezone.now()
            applied = Payment.objects.filter(
                pk=payment.pk, status=PaymentStatus.PENDING
            ).update(
                status=PaymentStatus.COMPLETED,
                gateway_payment_ref=refs.payment_ref,
                updated_at=now,
            )
            if applied:
                prior_end = locked.current_period_end
                fields = {
                    "current_period_start": prior_end,
                    "current_period_end": prior_end + BILLING_PERIOD,
                    "updated_at": now,
                }
                # A renewal that lands after the expiry sweep revives the rental.
                if locked.status == Rental.Status.EXPIRED:
                    fields["status"] = Rental.Status.ACTIVE
                Rental.objects.filter(pk=locked.pk).update(**fields)
                for name, value in fields.items():
                    setattr(locked, name, value)

        if applied:
            logger.info(
                "Rental %s renewed until %s (payment %s)",
                locked.pk,
                locked.current_period_end,
                payment.pk,
            )
            self._notify(
                locked,
                "Rental Renewed",
                f"Your rental has been renewed until "
                f"{locked.current_period_end:%d %b %Y}.",
                Category.PAYMENT_SUCCESS,
            )
        return True

    # ------------------------------------------------------------------
    # scheduled jobs
    # ------------------------------------------------------------------
    def send_renewal_reminders(self, now=None) -> int:
        now = now or timezone.now()
        horizon = now + timedelta(days=int(_rental_setting("REMINDER_DAYS", 7)))
        rentals = Rental.objects.filter(
            status=Rental.Status.ACTIVE,
            current_period_end__gt=now,
            current_period_end__lte=horizon,
        ).select_related("product")

        sent = 0
        for rental in rentals.iterator():
            days_left = max(rental.days_remaining(now), 0)
            self._notify(
                rental,
                "Rental Renewal Reminder",
                f"Your {rental.product.name} rental period ends in {days_left} "
                f"day(s), on {rental.current_period_end:%d %b %Y}. Renew now to "
                "avoid interruption.",
                Category.RENTAL_REMINDER,
            )
            sent += 1
        logger.info("Sent %d rental renewal reminders", sent)
        return sent

    def expire_lapsed_rentals(self, now=None) -> int:
        now = now or timezone.now()
        cutoff = now - timedelta(days=int(_rental_setting("EXPIRY_GRACE_DAYS", 0)))
        lapsed = Rental.objects.filter(
            status=Rental.Status.ACTIVE, current_period_end__lte=cutoff
        ).values_list("pk", flat=True)

        expired = 0
        for rental_id in list(lapsed):
            rental = Rental.objects.filter(pk=rental_id).first()
            if rental is None:
                continue
            try:
                self._move(rental, self.PAUSABLE, Rental.Status.EXPIRED)
            except IllegalTransitionError:
                logger.info("Rental %s changed before it could expire", rental_id)
                continue
            self._notify(
                rental,
                "Rental Expired",
                "Your rental period has ended. Renew to continue the service.",
                Category.RENTAL_REMINDER,
            )
            expired += 1
        logger.info("Expired %d lapsed rentals", expired)
        return expired


def build_rental_service(notifier=None) -> RentalService:
    return RentalService(
        gateway=PaymentGateway.from_settings(),
        verifier=PaymentVerifier.from_settings(),
        notifier=notifier or DatabaseNotifier(),
    )
