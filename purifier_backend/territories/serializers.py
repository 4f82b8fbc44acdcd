from rest_framework import serializers

from main.services.exceptions import InvalidPolygon

from .geometry import normalize_ring
from .models import Territory


class PolygonField(serializers.Field):
    """Accepts every supported polygon shape and yields the canonical ring."""

    default_error_messages = {"invalid": "{message}"}

    def to_internal_value(self, data):
        try:
            return normalize_ring(data)
        except InvalidPolygon as exc:
            self.fail("invalid", message=exc.message)

    def to_representation(self, value):
        return value


class TerritorySerializer(serializers.ModelSerializer):
    polygon = PolygonField()

    class Meta:
        model = Territory
        fields = ["id", "name", "city", "polygon", "owner", "is_active"]
        read_only_fields = ["id", "owner"]
