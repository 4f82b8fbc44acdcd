from django.core.exceptions import ImproperlyConfigured


class BusinessError(Exception):
    """Recoverable business rule violation; the message is safe to show."""

    code = "business_error"

    def __init__(self, message="", *, detail=None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationFailed(BusinessError):
    code = "validation"


class NoCoverage(ValidationFailed):
    """No active territory contains the location."""

    code = "no_coverage"


class InvalidPolygon(ValidationFailed):
    code = "invalid_polygon"


class NotFound(BusinessError):
    code = "not_found"

    def __init__(self, entity, *, detail=None):
        super().__init__(f"{entity} not found", detail=detail)
        self.entity = entity


class ConflictError(BusinessError):
    code = "conflict"


class IllegalTransitionError(ConflictError):
    code = "illegal_transition"


class PermissionDeniedError(BusinessError):
    code = "forbidden"


class PaymentGatewayError(BusinessError):
    """The gateway was unreachable or answered with something unusable."""

    code = "external_dependency"


class PaymentConfigurationError(ImproperlyConfigured):
    pass
