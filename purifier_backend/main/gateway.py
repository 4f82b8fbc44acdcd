"""
HTTP client for the card/UPI payment gateway.

Only transaction creation goes through the API. Completion is proven by the
signature the gateway hands back to the client, which is checked locally by
``main.services.payment_verifier``.
"""

import logging
from dataclasses import dataclass

import requests

from django.conf import settings

from main.services.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)

# Razorpay caps the receipt at 40 characters.
MAX_RECEIPT_LENGTH = 40


@dataclass(frozen=True)
class PaymentSession:
    """What a client needs to open the gateway checkout."""

    payment_id: str
    gateway_order_ref: str
    amount: int
    currency: str
    key_id: str = ""


class PaymentGateway:
    def __init__(self, base_url, key_id, key_secret, timeout=15, session=None):
        self.base_url = (base_url or "").rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls):
        return cls(
            base_url=settings.PAYMENT_GATEWAY_URL,
            key_id=settings.PAYMENT_GATEWAY_KEY_ID,
            key_secret=settings.PAYMENT_GATEWAY_KEY_SECRET,
            timeout=getattr(settings, "PAYMENT_GATEWAY_TIMEOUT", 15),
        )

    def create_transaction(self, amount: int, currency: str, metadata: dict) -> str:
        """
        Open a gateway order for ``amount`` minor units and return its id.

        ``metadata["receipt"]`` becomes the gateway receipt; everything else is
        sent as notes. Raises PaymentGatewayError on timeout, transport error,
        non-2xx answer or a body without an id. Nothing local is touched here.
        """
        metadata = dict(metadata or {})
        receipt = str(metadata.pop("receipt", ""))[:MAX_RECEIPT_LENGTH]
        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": {k: str(v) for k, v in metadata.items() if v is not None},
        }
        url = f"{self.base_url}/orders"

        try:
            resp = self.session.post(
                url,
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            logger.warning("Payment gateway timed out for receipt=%s", receipt)
            raise PaymentGatewayError(
                "The payment gateway did not respond in time. Please try again."
            ) from exc
        except requests.RequestException as exc:
            logger.exception("Payment gateway request failed for receipt=%s", receipt)
            raise PaymentGatewayError(
                "Could not reach the payment gateway. Please try again."
            ) from exc

        if resp.status_code not in (200, 201):
            logger.error(
                "Payment gateway HTTP %s for receipt=%s: %s",
                resp.status_code,
                receipt,
                resp.text[:500],
            )
            raise PaymentGatewayError("The payment gateway rejected the request.")

        try:
            data = resp.json()
        except ValueError as exc:
            logger.error("Payment gateway returned non-JSON body for receipt=%s", receipt)
            raise PaymentGatewayError("Unexpected payment gateway response.") from exc

        if not isinstance(data, dict):
            data = {}
        gateway_ref = str(data.get("id") or "").strip()
        if not gateway_ref:
            logger.error("Payment gateway response without id for receipt=%s", receipt)
            raise PaymentGatewayError("Unexpected payment gateway response.")

        logger.info(
            "Gateway order %s created for receipt=%s amount=%s %s",
            gateway_ref,
            receipt,
            amount,
            currency,
        )
        return gateway_ref
