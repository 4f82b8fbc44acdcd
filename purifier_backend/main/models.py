import secrets
import string
from datetime import timedelta

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

_ID_ALPHABET = string.ascii_letters + string.digits


def generate_id(prefix: str, length: int = 12) -> str:
    """Opaque string id such as ``ord_4fQx9LwB2kZp``."""
    return f"{prefix}_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def _user_id():
    return generate_id("usr")


def _product_id():
    return generate_id("prd")


def _order_id():
    return generate_id("ord")


def _payment_id():
    return generate_id("pay")


def _rental_id():
    return generate_id("rent")


def _notification_id():
    return generate_id("ntf")


class UserRole(models.TextChoices):
    ADMIN = "admin", "Admin"
    TERRITORY_OWNER = "territory_owner", "Territory owner"
    TECHNICIAN = "technician", "Technician"
    CUSTOMER = "customer", "Customer"


class User(AbstractUser):
    id = models.CharField(
        primary_key=True, max_length=32, default=_user_id, editable=False
    )
    full_name = models.CharField(max_length=100, blank=True, default="")
    phone = models.CharField(max_length=20, blank=True, null=True, unique=True)
    role = models.CharField(
        max_length=20, choices=UserRole.choices, default=UserRole.CUSTOMER
    )
    # Canonical territory: where a customer lives, where a technician or
    # territory owner works. NULL for global technicians.
    territory = models.ForeignKey(
        "territories.Territory",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="members",
    )
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    address = models.TextField(blank=True, default="")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["role", "territory"]),
        ]

    def __str__(self):
        return self.full_name or self.username

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def is_technician(self) -> bool:
        return self.role == UserRole.TECHNICIAN


class Product(models.Model):
    id = models.CharField(
        primary_key=True, max_length=32, default=_product_id, editable=False
    )
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    # Integer minor currency units (paise).
    buy_price = models.PositiveIntegerField()
    rent_price = models.PositiveIntegerField(help_text="Monthly rent")
    deposit = models.PositiveIntegerField()
    is_purchasable = models.BooleanField(default=True)
    is_rentable = models.BooleanField(default=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


class Order(models.Model):
    class Kind(models.TextChoices):
        PURCHASE = "purchase", "Purchase"
        RENTAL = "rental", "Rental"

    class Status(models.TextChoices):
        CREATED = "created", "Created"
        PAYMENT_PENDING = "payment_pending", "Payment pending"
        PAYMENT_COMPLETED = "payment_completed", "Payment completed"
        ASSIGNED = "assigned", "Assigned"
        INSTALLATION_PENDING = "installation_pending", "Installation pending"
        INSTALLED = "installed", "Installed"
        CANCELLED = "cancelled", "Cancelled"
        COMPLETED = "completed", "Completed"

    TRANSITIONS = {
        Status.CREATED: frozenset({Status.PAYMENT_PENDING, Status.CANCELLED}),
        Status.PAYMENT_PENDING: frozenset(
            {Status.PAYMENT_COMPLETED, Status.CANCELLED}
        ),
        Status.PAYMENT_COMPLETED: frozenset(
            {Status.ASSIGNED, Status.INSTALLATION_PENDING}
        ),
        Status.ASSIGNED: frozenset({Status.INSTALLATION_PENDING, Status.INSTALLED}),
        Status.INSTALLATION_PENDING: frozenset({Status.INSTALLED, Status.ASSIGNED}),
        Status.INSTALLED: frozenset({Status.COMPLETED}),
        Status.CANCELLED: frozenset(),
        Status.COMPLETED: frozenset(),
    }
    TERMINAL_STATUSES = frozenset({Status.CANCELLED, Status.COMPLETED})
    CUSTOMER_CANCELLABLE_STATUSES = frozenset(
        {Status.CREATED, Status.PAYMENT_PENDING}
    )
    # Statuses that can only be reached once the payment is completed.
    PAID_STATUSES = frozenset(
        {
            Status.PAYMENT_COMPLETED,
            Status.ASSIGNED,
            Status.INSTALLATION_PENDING,
            Status.INSTALLED,
            Status.COMPLETED,
        }
    )

    id = models.CharField(
        primary_key=True, max_length=32, default=_order_id, editable=False
    )
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders"
    )
    product = models.ForeignKey(
        Product, on_delete=models.PROTECT, related_name="orders"
    )
    kind = models.CharField(max_length=10, choices=Kind.choices)
    status = models.CharField(
        max_length=30, choices=Status.choices, default=Status.CREATED
    )
    territory = models.ForeignKey(
        "territories.Territory",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
        help_text="Customer territory resolved when the order was placed",
    )
    total_amount = models.PositiveIntegerField()
    payment_status = models.CharField(
        max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.PENDING
    )
    technician = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="assigned_orders",
    )
    installation_date = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"]),
            models.Index(fields=["customer", "-created_at"]),
        ]

    def __str__(self):
        return f"Order {self.pk} ({self.kind}, {self.status})"

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        return to_status in cls.TRANSITIONS.get(from_status, frozenset())

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_customer_cancellable(self) -> bool:
        return self.status in self.CUSTOMER_CANCELLABLE_STATUSES

    @property
    def is_rental(self) -> bool:
        return self.kind == self.Kind.RENTAL


class Payment(models.Model):
    class Kind(models.TextChoices):
        DEPOSIT = "deposit", "Deposit"
        PURCHASE = "purchase", "Purchase"
        RENTAL = "rental", "Rental"
        REFUND = "refund", "Refund"

    id = models.CharField(
        primary_key=True, max_length=32, default=_payment_id, editable=False
    )
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="payments")
    # Set for monthly renewal payments only.
    rental = models.ForeignKey(
        "Rental",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="payments",
    )
    amount = models.PositiveIntegerField()
    currency = models.CharField(max_length=3, default="INR")
    kind = models.CharField(max_length=10, choices=Kind.choices)
    status = models.CharField(
        max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.PENDING
    )
    gateway_order_ref = models.CharField(
        max_length=100, blank=True, default="", db_index=True
    )
    gateway_payment_ref = models.CharField(max_length=100, blank=True, default="")
    failure_reason = models.CharField(max_length=100, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=Q(status="pending", rental__isnull=True),
                name="one_pending_payment_per_order",
            ),
            models.UniqueConstraint(
                fields=["rental"],
                condition=Q(status="pending", rental__isnull=False),
                name="one_pending_payment_per_rental",
            ),
        ]

    def __str__(self):
        return f"Payment {self.pk} for order {self.order_id} ({self.status})"

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING


class Rental(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        PAUSED = "paused", "Paused"
        TERMINATED = "terminated", "Terminated"
        EXPIRED = "expired", "Expired"

    id = models.CharField(
        primary_key=True, max_length=32, default=_rental_id, editable=False
    )
    order = models.OneToOneField(
        Order, on_delete=models.PROTECT, related_name="rental"
    )
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="rentals"
    )
    product = models.ForeignKey(
        Product, on_delete=models.PROTECT, related_name="rentals"
    )
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.ACTIVE
    )
    start_date = models.DateTimeField()
    paused_at = models.DateTimeField(null=True, blank=True)
    end_date = models.DateTimeField(null=True, blank=True)
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    monthly_amount = models.PositiveIntegerField()
    deposit_amount = models.PositiveIntegerField()
    termination_reason = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "current_period_end"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(current_period_end__gt=F("current_period_start")),
                name="rental_period_end_after_start",
            ),
        ]

    def __str__(self):
        return f"Rental {self.pk} ({self.status})"

    def days_remaining(self, now=None) -> int:
        """Whole days left in the current period (floored, may be negative)."""
        now = now or timezone.now()
        return (self.current_period_end - now) // timedelta(days=1)


class Notification(models.Model):
    class Category(models.TextChoices):
        ORDER_CONFIRMATION = "order_confirmation", "Order confirmation"
        PAYMENT_SUCCESS = "payment_success", "Payment success"
        PAYMENT_FAILURE = "payment_failure", "Payment failure"
        SERVICE_REQUEST = "service_request", "Service request"
        ASSIGNMENT = "assignment_notification", "Assignment"
        STATUS_UPDATE = "status_update", "Status update"
        RENTAL_REMINDER = "rental_reminder", "Rental reminder"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SENT = "sent", "Sent"
        FAILED = "failed", "Failed"
        READ = "read", "Read"

    id = models.CharField(
        primary_key=True, max_length=32, default=_notification_id, editable=False
    )
    recipient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="notifications",
    )
    broadcast = models.BooleanField(default=False)
    title = models.CharField(max_length=255)
    message = models.TextField()
    category = models.CharField(max_length=40, choices=Category.choices)
    reference_id = models.CharField(max_length=32, blank=True, default="")
    reference_type = models.CharField(max_length=20, blank=True, default="")
    status = models.CharField(
        max_length=10, choices=Status.choices, default=Status.PENDING
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["recipient", "status"]),
        ]

    def __str__(self):
        target = "broadcast" if self.broadcast else self.recipient_id
        return f"Notification({self.category} → {target})"


class OrderEvent(models.Model):
    """
    Append-only audit trail per Order.
    One row per status change, assignment, payment outcome or cancellation.
    """

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="events")
    event_type = models.CharField(
        max_length=40,
        default="info",
        help_text="created | status_change | assignment | payment_initiated | "
        "payment_completed | payment_failed | cancelled",
    )
    message = models.CharField(max_length=255, blank=True, default="")
    payload = models.JSONField(blank=True, null=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="order_events",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["order", "-created_at"]),
            models.Index(fields=["event_type"]),
        ]

    def __str__(self):
        return f"OrderEvent({self.order_id}, {self.event_type})"

    @classmethod
    def record(cls, order, event_type, message="", *, actor_id=None, **payload):
        return cls.objects.create(
            order_id=order.pk,
            event_type=event_type,
            message=message[:255],
            payload=payload or None,
            actor_id=actor_id,
        )
