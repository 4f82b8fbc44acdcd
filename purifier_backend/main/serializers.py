from rest_framework import serializers

from main.services.exceptions import ValidationFailed


class GatewayRefsSerializer(serializers.Serializer):
    """
    Callback payload sent by the client after checkout.

    Accepts both our field names and the raw ``razorpay_*`` names the
    checkout widget hands back.
    """

    order_ref = serializers.CharField(max_length=100, trim_whitespace=True)
    payment_ref = serializers.CharField(max_length=100, trim_whitespace=True)
    signature = serializers.CharField(max_length=256, trim_whitespace=True)

    ALIASES = {
        "razorpay_order_id": "order_ref",
        "razorpay_payment_id": "payment_ref",
        "razorpay_signature": "signature",
    }

    def to_internal_value(self, data):
        if hasattr(data, "items"):
            data = {self.ALIASES.get(k, k): v for k, v in data.items()}
        return super().to_internal_value(data)


def validated(serializer_class, data):
    """Run ``serializer_class`` over ``data`` and raise ValidationFailed on error."""
    serializer = serializer_class(data=data)
    if not serializer.is_valid():
        first_field, messages = next(iter(serializer.errors.items()))
        message = messages[0] if isinstance(messages, list) and messages else messages
        raise ValidationFailed(
            f"{first_field}: {message}", detail=dict(serializer.errors)
        )
    return serializer.validated_data
