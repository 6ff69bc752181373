# marketplace/infrastructure/payments/razorpay_gateway.py

import os
from decimal import Decimal

import razorpay

from marketplace.domain.exceptions import PaymentProviderNotConfigured, PaymentVerificationError


def _razorpay_client() -> razorpay.Client:
    key_id = os.getenv("RAZORPAY_KEY_ID")
    key_secret = os.getenv("RAZORPAY_KEY_SECRET")
    if not key_id or not key_secret:
        raise PaymentProviderNotConfigured(
            "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
        )
    return razorpay.Client(auth=(key_id, key_secret))


class RazorpayPaymentVerifier:
    """Confirms a completed checkout against Razorpay before a wallet is credited."""

    def __init__(self, client: razorpay.Client | None = None):
        self._client = client

    @property
    def client(self) -> razorpay.Client:
        if self._client is None:
            self._client = _razorpay_client()
        return self._client

    def verify(self, order_id: str, payment_id: str, signature: str) -> None:
        try:
            self.client.utility.verify_payment_signature(
                {
                    "razorpay_order_id": order_id,
                    "razorpay_payment_id": payment_id,
                    "razorpay_signature": signature,
                }
            )
        except razorpay.errors.SignatureVerificationError as exc:
            raise PaymentVerificationError(
                "Invalid payment signature",
                details={"payment_id": payment_id},
            ) from exc

    def order_amount(self, order_id: str) -> Decimal:
        order = self.client.order.fetch(order_id)
        # Razorpay amounts are in the currency's smallest unit.
        return (Decimal(order["amount"]) / 100).quantize(Decimal("0.01"))
