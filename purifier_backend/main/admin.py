from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import Notification, Order, OrderEvent, Payment, Product, Rental, User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ("username", "full_name", "role", "territory", "is_active")
    list_filter = ("role", "is_active", "territory")
    search_fields = ("username", "full_name", "email", "phone")
    fieldsets = BaseUserAdmin.fieldsets + (
        (
            "Service",
            {"fields": ("full_name", "phone", "role", "territory", "latitude", "longitude", "address")},
        ),
    )


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "buy_price", "rent_price", "deposit", "is_active")
    list_filter = ("is_active", "is_purchasable", "is_rentable")


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    readonly_fields = ("amount", "kind", "status", "gateway_order_ref", "gateway_payment_ref")


class OrderEventInline(admin.TabularInline):
    model = OrderEvent
    extra = 0
    readonly_fields = ("event_type", "message", "payload", "actor", "created_at")


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "customer", "product", "kind", "status", "payment_status", "territory")
    list_filter = ("status", "payment_status", "kind", "territory")
    search_fields = ("id", "customer__username", "customer__full_name")
    # Status changes go through OrderService.
    readonly_fields = ("status", "payment_status", "total_amount")
    inlines = [PaymentInline, OrderEventInline]


@admin.register(Rental)
class RentalAdmin(admin.ModelAdmin):
    list_display = ("id", "customer", "product", "status", "current_period_end")
    list_filter = ("status",)
    readonly_fields = ("status", "current_period_start", "current_period_end", "paused_at")


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ("title", "recipient", "broadcast", "category", "status", "created_at")
    list_filter = ("category", "status", "broadcast")
