"""
Tests for RentalService: activation, pause/resume period shifting,
termination, renewal (window + anchoring) and the scheduled jobs.
"""

from datetime import datetime, timedelta
from datetime import timezone as dt_timezone

import pytest
from freezegun import freeze_time

from main.factories import (
    CustomerFactory,
    OrderFactory,
    PaymentFactory,
    RentalFactory,
)
from main.models import Notification, Order, Payment, PaymentStatus, Rental
from main.services.exceptions import (
    ConflictError,
    IllegalTransitionError,
    NotFound,
    PermissionDeniedError,
    ValidationFailed,
)
from main.services.payment_verifier import GatewayRefs

T0 = datetime(2026, 1, 10, 9, 0, tzinfo=dt_timezone.utc)


def rental_ending(customer, end, **kwargs):
    """Active rental whose current period ends at ``end``."""
    return RentalFactory(
        order__customer=customer,
        start_date=end - timedelta(days=30),
        current_period_start=end - timedelta(days=30),
        current_period_end=end,
        **kwargs,
    )


def checkout(rental_service, rental, principal, mock_gateway):
    session = rental_service.initiate_renewal(rental.pk, principal)
    refs = GatewayRefs.from_payload(mock_gateway.checkout(session.gateway_order_ref))
    return session, refs


@pytest.mark.django_db
class TestCreateFromOrder:
    @freeze_time(T0)
    def test_starts_one_month_period(self, rental_service, customer):
        order = OrderFactory(
            customer=customer,
            kind=Order.Kind.RENTAL,
            status=Order.Status.INSTALLED,
            payment_status=PaymentStatus.COMPLETED,
        )

        rental = rental_service.create_from_order(order)

        assert rental.status == Rental.Status.ACTIVE
        assert rental.start_date == T0
        assert rental.current_period_start == T0
        assert rental.current_period_end == datetime(2026, 2, 10, 9, 0, tzinfo=dt_timezone.utc)
        assert rental.monthly_amount == order.product.rent_price
        assert rental.deposit_amount == order.product.deposit
        assert rental.customer_id == customer.pk

    def test_idempotent_per_order(self, rental_service, customer):
        order = OrderFactory(customer=customer, kind=Order.Kind.RENTAL, status=Order.Status.INSTALLED)

        first = rental_service.create_from_order(order)
        second = rental_service.create_from_order(order)

        assert first.pk == second.pk
        assert Rental.objects.count() == 1
        assert Notification.objects.filter(reference_id=first.pk).count() == 1

    def test_purchase_order_rejected(self, rental_service, customer):
        order = OrderFactory(customer=customer, kind=Order.Kind.PURCHASE)
        with pytest.raises(ValidationFailed):
            rental_service.create_from_order(order)


@pytest.mark.django_db
class TestPauseResume:
    def test_pause_and_resume_shift_period_end(self, rental_service, customer, principal):
        with freeze_time(T0) as frozen:
            rental = rental_ending(customer, T0 + timedelta(days=20))
            original_end = rental.current_period_end

            frozen.move_to(T0 + timedelta(days=5))
            rental_service.pause(rental.pk, principal(customer))
            frozen.move_to(T0 + timedelta(days=8, hours=6))
            resumed = rental_service.resume(rental.pk, principal(customer))

        rental.refresh_from_db()
        assert resumed.status == Rental.Status.ACTIVE
        assert rental.status == Rental.Status.ACTIVE
        assert rental.paused_at is None
        assert rental.current_period_end == original_end + timedelta(days=3, hours=6)

    @freeze_time(T0)
    def test_pause_records_pause_time(self, rental_service, customer, principal):
        rental = rental_ending(customer, T0 + timedelta(days=20))

        rental_service.pause(rental.pk, principal(customer))

        rental.refresh_from_db()
        assert rental.status == Rental.Status.PAUSED
        assert rental.paused_at == T0

    def test_pause_twice_rejected(self, rental_service, customer, principal):
        rental = RentalFactory(order__customer=customer)
        rental_service.pause(rental.pk, principal(customer))

        with pytest.raises(IllegalTransitionError):
            rental_service.pause(rental.pk, principal(customer))

    def test_resume_active_rejected(self, rental_service, customer, principal):
        rental = RentalFactory(order__customer=customer)
        with pytest.raises(IllegalTransitionError):
            rental_service.resume(rental.pk, principal(customer))

    def test_other_customer_denied(self, rental_service, customer, principal):
        rental = RentalFactory(order__customer=customer)
        stranger = CustomerFactory(territory=customer.territory)

        with pytest.raises(PermissionDeniedError):
            rental_service.pause(rental.pk, principal(stranger))

    def test_technician_denied(self, rental_service, customer, technician, principal):
        rental = RentalFactory(order__customer=customer)
        with pytest.raises(PermissionDeniedError):
            rental_service.pause(rental.pk, principal(technician))

    def test_admin_may_pause(self, rental_service, customer, admin_user, principal):
        rental = RentalFactory(order__customer=customer)
        rental_service.pause(rental.pk, principal(admin_user))
        rental.refresh_from_db()
        assert rental.status == Rental.Status.PAUSED

    def test_unknown_rental(self, rental_service, customer, principal):
        with pytest.raises(NotFound):
            rental_service.pause("rnt_missing", principal(customer))


@pytest.mark.django_db
class TestTerminate:
    @pytest.mark.parametrize(
        "status", [Rental.Status.ACTIVE, Rental.Status.PAUSED, Rental.Status.EXPIRED]
    )
    def test_terminates_from_live_statuses(self, rental_service, customer, principal, status):
        rental = RentalFactory(order__customer=customer, status=status)

        rental_service.terminate(rental.pk, "Moving out", principal(customer))

        rental.refresh_from_db()
        assert rental.status == Rental.Status.TERMINATED
        assert rental.termination_reason == "Moving out"
        assert rental.end_date is not None

    def test_terminated_is_final(self, rental_service, customer, principal):
        rental = RentalFactory(order__customer=customer, status=Rental.Status.TERMINATED)
        with pytest.raises(IllegalTransitionError):
            rental_service.terminate(rental.pk, "again", principal(customer))

    def test_pending_renewal_payment_is_failed(self, rental_service, customer, principal):
        rental = RentalFactory(order__customer=customer)
        payment = PaymentFactory(
            order=rental.order,
            rental=rental,
            kind=Payment.Kind.RENTAL,
            amount=rental.monthly_amount,
            gateway_order_ref="order_pending",
        )

        rental_service.terminate(rental.pk, "Moving out", principal(customer))

        payment.refresh_from_db()
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "rental_terminated"

    def test_terminate_for_order_without_rental(self, rental_service, customer):
        order = OrderFactory(customer=customer, kind=Order.Kind.RENTAL)
        assert rental_service.terminate_for_order(order, "cancelled") is None


@pytest.mark.django_db
class TestInitiateRenewal:
    @pytest.mark.parametrize(
        "left", [timedelta(days=7), timedelta(days=7, hours=23), timedelta(hours=2)]
    )
    @freeze_time(T0)
    def test_allowed_inside_window(self, rental_service, customer, principal, mock_gateway, left):
        rental = rental_ending(customer, T0 + left)

        session = rental_service.initiate_renewal(rental.pk, principal(customer))

        payment = Payment.objects.get(pk=session.payment_id)
        assert payment.rental_id == rental.pk
        assert payment.kind == Payment.Kind.RENTAL
        assert payment.amount == rental.monthly_amount
        assert payment.gateway_order_ref == session.gateway_order_ref
        assert mock_gateway.get_order(session.gateway_order_ref)["notes"]["payment_type"] == "renewal"

    @freeze_time(T0)
    def test_rejected_outside_window(self, rental_service, customer, principal, mock_gateway):
        rental = rental_ending(customer, T0 + timedelta(days=10))

        with pytest.raises(ConflictError) as exc:
            rental_service.initiate_renewal(rental.pk, principal(customer))

        assert "10 days remaining" in str(exc.value)
        assert mock_gateway.orders == {}
        assert not rental.payments.exists()

    @freeze_time(T0)
    def test_double_submit_reuses_session(self, rental_service, customer, principal, mock_gateway):
        rental = rental_ending(customer, T0 + timedelta(days=3))

        first = rental_service.initiate_renewal(rental.pk, principal(customer))
        second = rental_service.initiate_renewal(rental.pk, principal(customer))

        assert first.gateway_order_ref == second.gateway_order_ref
        assert rental.payments.count() == 1
        assert len(mock_gateway.orders) == 1

    def test_paused_rental_cannot_renew(self, rental_service, customer, principal):
        rental = RentalFactory(order__customer=customer, status=Rental.Status.PAUSED)
        with pytest.raises(IllegalTransitionError):
            rental_service.initiate_renewal(rental.pk, principal(customer))


@pytest.mark.django_db
class TestConfirmRenewal:
    def test_late_confirmation_anchors_on_prior_end(self, rental_service, customer, principal, mock_gateway):
        prior_end = datetime(2026, 1, 31, 12, 0, tzinfo=dt_timezone.utc)
        with freeze_time(prior_end - timedelta(days=2)) as frozen:
            rental = rental_ending(customer, prior_end)
            _, refs = checkout(rental_service, rental, principal(customer), mock_gateway)

            frozen.move_to(prior_end + timedelta(days=3))
            assert rental_service.confirm_renewal(rental.pk, refs) is True

        rental.refresh_from_db()
        assert rental.current_period_start == prior_end
        assert rental.current_period_end == datetime(2026, 2, 28, 12, 0, tzinfo=dt_timezone.utc)

    def test_early_confirmation_does_not_shorten_period(self, rental_service, customer, principal, mock_gateway):
        with freeze_time(T0):
            prior_end = T0 + timedelta(days=5)
            rental = rental_ending(customer, prior_end)
            _, refs = checkout(rental_service, rental, principal(customer), mock_gateway)
            rental_service.confirm_renewal(rental.pk, refs)

        rental.refresh_from_db()
        assert rental.current_period_start == prior_end
        assert rental.current_period_end == datetime(2026, 2, 15, 9, 0, tzinfo=dt_timezone.utc)

    @freeze_time(T0)
    def test_replayed_confirmation_extends_once(self, rental_service, customer, principal, mock_gateway):
        rental = rental_ending(customer, T0 + timedelta(days=2))
        session, refs = checkout(rental_service, rental, principal(customer), mock_gateway)

        assert rental_service.confirm_renewal(rental.pk, refs) is True
        rental.refresh_from_db()
        renewed_end = rental.current_period_end
        assert rental_service.confirm_renewal(rental.pk, refs) is True

        rental.refresh_from_db()
        assert rental.current_period_end == renewed_end
        assert Payment.objects.get(pk=session.payment_id).status == PaymentStatus.COMPLETED

    @freeze_time(T0)
    def test_bad_signature_leaves_period(self, rental_service, customer, principal, mock_gateway):
        end = T0 + timedelta(days=2)
        rental = rental_ending(customer, end)
        session, refs = checkout(rental_service, rental, principal(customer), mock_gateway)
        forged = GatewayRefs(refs.order_ref, refs.payment_ref, "0" * 64)

        assert rental_service.confirm_renewal(rental.pk, forged) is False

        rental.refresh_from_db()
        assert rental.current_period_end == end
        assert Payment.objects.get(pk=session.payment_id).status == PaymentStatus.FAILED
        assert Notification.objects.filter(
            recipient=customer, category=Notification.Category.PAYMENT_FAILURE
        ).exists()

    def test_confirmation_revives_expired_rental(self, rental_service, customer, principal, mock_gateway):
        end = T0 + timedelta(days=1)
        with freeze_time(T0) as frozen:
            rental = rental_ending(customer, end)
            _, refs = checkout(rental_service, rental, principal(customer), mock_gateway)

            frozen.move_to(end + timedelta(hours=1))
            assert rental_service.expire_lapsed_rentals() == 1
            assert rental_service.confirm_renewal(rental.pk, refs) is True

        rental.refresh_from_db()
        assert rental.status == Rental.Status.ACTIVE
        assert rental.current_period_start == end

    def test_paused_rental_keeps_period_until_resumed(self, rental_service, customer, principal, mock_gateway):
        end = T0 + timedelta(days=3)
        with freeze_time(T0) as frozen:
            rental = rental_ending(customer, end)
            session, refs = checkout(rental_service, rental, principal(customer), mock_gateway)
            rental_service.pause(rental.pk, principal(customer))

            frozen.move_to(T0 + timedelta(days=1))
            with pytest.raises(ConflictError):
                rental_service.confirm_renewal(rental.pk, refs)

            rental.refresh_from_db()
            assert rental.status == Rental.Status.PAUSED
            assert rental.current_period_end == end
            assert Payment.objects.get(pk=session.payment_id).status == PaymentStatus.PENDING

            rental_service.resume(rental.pk, principal(customer))
            assert rental_service.confirm_renewal(rental.pk, refs) is True

        rental.refresh_from_db()
        shifted_end = end + timedelta(days=1)
        assert rental.current_period_start == shifted_end
        assert rental.current_period_end == datetime(2026, 2, 14, 9, 0, tzinfo=dt_timezone.utc)

    def test_terminated_rental_rejects_confirmation(self, rental_service, customer):
        rental = RentalFactory(order__customer=customer, status=Rental.Status.TERMINATED)
        PaymentFactory(
            order=rental.order,
            rental=rental,
            kind=Payment.Kind.RENTAL,
            amount=rental.monthly_amount,
            gateway_order_ref="order_late",
        )

        with pytest.raises(ConflictError):
            rental_service.confirm_renewal(rental.pk, GatewayRefs("order_late", "pay_1", "sig"))

    def test_unknown_reference(self, rental_service, customer):
        rental = RentalFactory(order__customer=customer)
        with pytest.raises(NotFound):
            rental_service.confirm_renewal(rental.pk, GatewayRefs("order_nope", "pay_1", "sig"))


@pytest.mark.django_db
class TestScheduledJobs:
    @freeze_time(T0)
    def test_reminders_only_for_active_rentals_ending_soon(self, rental_service, customer):
        due = rental_ending(customer, T0 + timedelta(days=3))
        rental_ending(customer, T0 + timedelta(days=10))
        rental_ending(customer, T0 + timedelta(days=2), status=Rental.Status.PAUSED)
        rental_ending(customer, T0 - timedelta(days=1))

        assert rental_service.send_renewal_reminders() == 1

        reminders = Notification.objects.filter(category=Notification.Category.RENTAL_REMINDER)
        assert list(reminders.values_list("reference_id", flat=True)) == [due.pk]
        assert "3 day(s)" in reminders.get().message

    @freeze_time(T0)
    def test_expires_lapsed_active_rentals(self, rental_service, customer):
        lapsed = rental_ending(customer, T0 - timedelta(hours=1))
        current = rental_ending(customer, T0 + timedelta(days=1))
        paused = rental_ending(customer, T0 - timedelta(days=1), status=Rental.Status.PAUSED)

        assert rental_service.expire_lapsed_rentals() == 1

        statuses = dict(Rental.objects.values_list("pk", "status"))
        assert statuses[lapsed.pk] == Rental.Status.EXPIRED
        assert statuses[current.pk] == Rental.Status.ACTIVE
        assert statuses[paused.pk] == Rental.Status.PAUSED

    @freeze_time(T0)
    def test_expiry_grace_period(self, rental_service, customer, settings):
        settings.RENTAL_SETTINGS = {**settings.RENTAL_SETTINGS, "EXPIRY_GRACE_DAYS": 2}
        rental_ending(customer, T0 - timedelta(days=1))

        assert rental_service.expire_lapsed_rentals() == 0
