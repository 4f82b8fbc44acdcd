from django.contrib import admin

from .models import Territory
from .tasks import schedule_reassignment


@admin.register(Territory)
class TerritoryAdmin(admin.ModelAdmin):
    list_display = ("name", "city", "owner", "is_active", "created_at")
    list_filter = ("is_active", "city")
    search_fields = ("name", "city")

    def save_model(self, request, obj, form, change):
        super().save_model(request, obj, form, change)
        if not change or {"polygon", "is_active"} & set(form.changed_data):
            schedule_reassignment(obj.pk)
