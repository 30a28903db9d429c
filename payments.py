"""
Payment gateway access over the Stripe SDK.

Amounts enter and leave this module in AED; Stripe is charged in fils.
"""

import json
import logging
import os
from typing import Optional

import stripe
from pydantic import BaseModel

from pricing import CURRENCY, from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

# Stripe rejects metadata values longer than 500 characters
METADATA_VALUE_LIMIT = 500


class PaymentError(Exception):
    """Gateway refused or failed the charge. `message` is safe to show the customer."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class PaymentIntent(BaseModel):
    id: str
    client_secret: Optional[str] = None
    amount: float
    currency: str = CURRENCY
    status: str
    metadata: dict = {}

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


def build_metadata(customer_info: dict, shipping_info: dict, items: list, totals: dict) -> dict:
    items_data = [
        {
            "id": i.get("product_id"),
            "name": i.get("name"),
            "price": i.get("unit_price"),
            "quantity": i.get("quantity"),
            "variationId": i.get("variation_id"),
        }
        for i in items
    ]
    order_items = json.dumps(items_data)
    if len(order_items) > METADATA_VALUE_LIMIT:
        # Names can be looked up again; ids, prices and quantities cannot
        order_items = json.dumps([{k: v for k, v in i.items() if k != "name"} for i in items_data])
    return {
        "customerName": customer_info.get("full_name", ""),
        "customerEmail": customer_info.get("email", ""),
        "customerPhone": customer_info.get("phone", ""),
        "shippingEmirate": shipping_info.get("emirate", ""),
        "shippingCity": shipping_info.get("city", ""),
        "shippingAddress": shipping_info.get("address", "")[:METADATA_VALUE_LIMIT],
        "itemsCount": str(len(items)),
        "orderItems": order_items[:METADATA_VALUE_LIMIT],
        "subtotal": str(totals.get("subtotal", 0)),
        "shippingCost": str(totals.get("shipping_cost", 0)),
        "discount": str(totals.get("discount", 0)),
        "total": str(totals.get("total", 0)),
    }


def _to_intent(obj) -> PaymentIntent:
    metadata = getattr(obj, "metadata", None) or {}
    return PaymentIntent(
        id=obj.id,
        client_secret=getattr(obj, "client_secret", None),
        amount=from_minor_units(obj.amount),
        currency=getattr(obj, "currency", None) or CURRENCY,
        status=obj.status,
        metadata={k: metadata[k] for k in metadata.keys()},
    )


class StripeGateway:
    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.api_key = api_key or os.getenv("STRIPE_SECRET_KEY", "")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET", "")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def create_payment_intent(self, amount: float, currency: str = CURRENCY, metadata: Optional[dict] = None) -> PaymentIntent:
        if amount <= 0:
            raise PaymentError("Invalid amount")
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                payment_method_types=["card"],
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe payment intent creation failed: {e}")
            raise PaymentError(e.user_message or "Failed to create payment intent", code=e.code)
        return _to_intent(intent)

    def confirm_payment(self, payment_intent_id: str, payment_method: str) -> PaymentIntent:
        try:
            intent = stripe.PaymentIntent.confirm(
                payment_intent_id,
                api_key=self.api_key,
                payment_method=payment_method,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe confirmation failed for {payment_intent_id}: {e}")
            raise PaymentError(e.user_message or str(e), code=e.code)
        result = _to_intent(intent)
        if not result.succeeded:
            if result.status == "requires_action":
                raise PaymentError("Additional authentication is required to complete this payment", code=result.status)
            raise PaymentError(f"Payment not completed (status: {result.status})", code=result.status)
        return result

    def retrieve(self, payment_intent_id: str) -> PaymentIntent:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe payment intent lookup failed for {payment_intent_id}: {e}")
            raise PaymentError(e.user_message or "Payment could not be verified", code=e.code)
        return _to_intent(intent)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> tuple[str, Optional[PaymentIntent]]:
        """Verify a webhook delivery. Returns the event type and, for payment intent events, the intent."""
        if not signature:
            raise PaymentError("Missing stripe-signature header", code="missing_signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.error(f"Webhook signature verification failed: {e}")
            raise PaymentError("Webhook signature verification failed", code="invalid_signature")
        if event.type.startswith("payment_intent."):
            return event.type, _to_intent(event.data.object)
        return event.type, None
