from dateutil.relativedelta import relativedelta

import factory

from django.contrib.auth import get_user_model
from django.utils import timezone

from territories.models import Territory

from .models import Notification, Order, Payment, PaymentStatus, Product, Rental, UserRole

User = get_user_model()

# Roughly central Bengaluru, as [lat, lng] pairs.
DEFAULT_POLYGON = [[12.90, 77.50], [12.90, 77.70], [13.10, 77.70], [13.10, 77.50]]


class TerritoryFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Territory

    name = factory.Sequence(lambda n: f"Territory {n}")
    city = "Bengaluru"
    polygon = factory.LazyFunction(lambda: [list(v) for v in DEFAULT_POLYGON])
    is_active = True


class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = User
        skip_postgeneration_save = True

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.Sequence(lambda n: f"user{n}@example.com")
    password = factory.django.Password("testpass123")
    full_name = factory.Faker("name")
    phone = factory.Sequence(lambda n: f"+91{n:010d}")
    is_active = True
    role = UserRole.CUSTOMER


class CustomerFactory(UserFactory):
    role = UserRole.CUSTOMER
    territory = factory.SubFactory(TerritoryFactory)
    latitude = 13.0
    longitude = 77.6


class TechnicianFactory(UserFactory):
    role = UserRole.TECHNICIAN
    territory = factory.SubFactory(TerritoryFactory)


class TerritoryOwnerFactory(UserFactory):
    role = UserRole.TERRITORY_OWNER
    territory = factory.SubFactory(TerritoryFactory)


class AdminFactory(UserFactory):
    role = UserRole.ADMIN
    is_staff = True


class ProductFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Product

    name = factory.Sequence(lambda n: f"AquaPure RO {n}")
    buy_price = 1_500_000
    rent_price = 49_900
    deposit = 200_000
    is_purchasable = True
    is_rentable = True
    is_active = True


class OrderFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Order

    customer = factory.SubFactory(CustomerFactory)
    product = factory.SubFactory(ProductFactory)
    kind = Order.Kind.PURCHASE
    status = Order.Status.CREATED
    territory = factory.LazyAttribute(lambda o: o.customer.territory)
    total_amount = factory.LazyAttribute(
        lambda o: o.product.buy_price if o.kind == Order.Kind.PURCHASE else o.product.deposit
    )
    payment_status = PaymentStatus.PENDING


class PaymentFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Payment

    order = factory.SubFactory(OrderFactory)
    amount = factory.LazyAttribute(lambda p: p.order.total_amount)
    kind = factory.LazyAttribute(
        lambda p: Payment.Kind.DEPOSIT if p.order.kind == Order.Kind.RENTAL else Payment.Kind.PURCHASE
    )
    status = PaymentStatus.PENDING


class RentalFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Rental

    order = factory.SubFactory(
        OrderFactory,
        kind=Order.Kind.RENTAL,
        status=Order.Status.INSTALLED,
        payment_status=PaymentStatus.COMPLETED,
    )
    customer = factory.LazyAttribute(lambda r: r.order.customer)
    product = factory.LazyAttribute(lambda r: r.order.product)
    status = Rental.Status.ACTIVE
    start_date = factory.LazyFunction(timezone.now)
    current_period_start = factory.LazyAttribute(lambda r: r.start_date)
    current_period_end = factory.LazyAttribute(
        lambda r: r.current_period_start + relativedelta(months=1)
    )
    monthly_amount = factory.LazyAttribute(lambda r: r.product.rent_price)
    deposit_amount = factory.LazyAttribute(lambda r: r.product.deposit)


class NotificationFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Notification

    recipient = factory.SubFactory(CustomerFactory)
    title = "Order Status Updated"
    message = factory.Faker("sentence")
    category = Notification.Category.STATUS_UPDATE
