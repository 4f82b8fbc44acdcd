"""
Server-side proof that a gateway payment really happened.

The client reports ``(order_ref, payment_ref, signature)`` after checkout. The
signature is HMAC-SHA256 of ``"<order_ref>|<payment_ref>"`` keyed with the
gateway secret, hex encoded. Nothing else the client says about the outcome
is trusted.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass

from django.conf import settings
from django.utils import timezone

from main.models import Payment, PaymentStatus
from main.serializers import GatewayRefsSerializer, validated
from main.services.exceptions import PaymentConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayRefs:
    order_ref: str
    payment_ref: str
    signature: str

    @classmethod
    def from_payload(cls, data):
        """Build from a raw callback payload; raises ValidationFailed."""
        clean = validated(GatewayRefsSerializer, data)
        return cls(
            order_ref=clean["order_ref"],
            payment_ref=clean["payment_ref"],
            signature=clean["signature"],
        )


class PaymentVerifier:
    def __init__(self, secret):
        if not secret:
            raise PaymentConfigurationError(
                "PAYMENT_GATEWAY_KEY_SECRET is not configured; "
                "payment signatures cannot be verified."
            )
        self._secret = secret.encode("utf-8")

    @classmethod
    def from_settings(cls):
        return cls(getattr(settings, "PAYMENT_GATEWAY_KEY_SECRET", ""))

    def sign(self, order_ref: str, payment_ref: str) -> str:
        message = f"{order_ref}|{payment_ref}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def matches(self, order_ref, payment_ref, signature) -> bool:
        """Constant-time signature check with no side effects."""
        if not order_ref or not payment_ref or not signature:
            return False
        expected = self.sign(order_ref, payment_ref).encode("ascii")
        return hmac.compare_digest(expected, str(signature).encode("utf-8"))

    def verify(self, transaction_id, order_ref, payment_ref, signature) -> bool:
        """
        Check the signature for the pending Payment ``transaction_id``.

        On mismatch, or if anything goes wrong while checking, the payment is
        marked failed and False is returned. Never raises for a bad signature.
        """
        try:
            verified = self.matches(order_ref, payment_ref, signature)
        except Exception:
            logger.exception(
                "Signature verification crashed for payment %s", transaction_id
            )
            verified = False

        if not verified:
            logger.warning(
                "Signature mismatch for payment %s (order_ref=%s)",
                transaction_id,
                order_ref,
            )
            self.mark_failed(transaction_id, "signature_mismatch")
        return verified

    @staticmethod
    def mark_failed(transaction_id, reason) -> bool:
        """Guarded pending -> failed; a completed payment is never downgraded."""
        try:
            updated = Payment.objects.filter(
                pk=transaction_id, status=PaymentStatus.PENDING
            ).update(
                status=PaymentStatus.FAILED,
                failure_reason=reason[:100],
                updated_at=timezone.now(),
            )
        except Exception:
            logger.exception("Could not mark payment %s as failed", transaction_id)
            return False
        return bool(updated)
