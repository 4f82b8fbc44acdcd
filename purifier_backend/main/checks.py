from django.conf import settings
from django.core.checks import Error, Tags, register


@register(Tags.security)
def check_payment_gateway_secret(app_configs, **kwargs):
    """Payment signatures cannot be verified without the shared secret."""
    errors = []
    if not getattr(settings, "PAYMENT_GATEWAY_KEY_SECRET", ""):
        errors.append(
            Error(
                "PAYMENT_GATEWAY_KEY_SECRET is not configured.",
                hint="Set the PAYMENT_GATEWAY_KEY_SECRET environment variable.",
                id="main.E001",
            )
        )
    if not getattr(settings, "PAYMENT_GATEWAY_KEY_ID", ""):
        errors.append(
            Error(
                "PAYMENT_GATEWAY_KEY_ID is not configured.",
                hint="Set the PAYMENT_GATEWAY_KEY_ID environment variable.",
                id="main.E002",
            )
        )
    return errors
