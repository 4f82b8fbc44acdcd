from django.apps import AppConfig


class MainConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "main"
    verbose_name = "Orders & rentals"

    def ready(self):
        from . import checks  # noqa: F401
