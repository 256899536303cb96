"""Stripe payment gateway adapter.

Uses the real Stripe REST API when a secret key is configured, otherwise
falls back to mock responses for development and tests (any key starting
with ``mock_``).

Card and wallet payments are confirmed synchronously through a
PaymentIntent. Instant transfers (PIX) go through a hosted Checkout Session
whose outcome arrives later, by webhook or by polling.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from django.conf import settings

from services.lifecycle.exceptions import ExternalUnavailable, InvalidValue, PaymentFailed

logger = logging.getLogger(__name__)

# Stripe test tokens that simulate a decline
MOCK_DECLINE_TOKENS = {"pm_card_chargeDeclined", "tok_chargeDeclined"}

SUCCEEDED_EVENTS = {
    "payment_intent.succeeded",
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}

FAILED_EVENTS = {
    "payment_intent.payment_failed",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}


def _is_mock() -> bool:
    key = getattr(settings, "STRIPE_SECRET_KEY", "mock_stripe_key")
    return key.startswith("mock_")


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


@dataclass
class GatewayIntent:
    reference: str
    confirmed: bool = False
    client_secret: str = ""
    checkout_url: str = ""


@dataclass
class GatewayStatus:
    confirmed: bool = False
    failed: bool = False
    reason: str = ""


@dataclass
class GatewayEvent:
    type: str
    reference: str
    attempt_id: Optional[int] = None
    request_id: Optional[int] = None
    succeeded: bool = False
    failed: bool = False
    failure_reason: str = ""


class StripeGateway:
    """Payment gateway with real Stripe API and mock fallback."""

    BASE_URL = "https://api.stripe.com/v1"
    TIMEOUT = 15

    def _headers(self) -> Dict[str, str]:
        key = getattr(settings, "STRIPE_SECRET_KEY", "")
        return {"Authorization": f"Bearer {key}"}

    def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = requests.request(
                method,
                f"{self.BASE_URL}{path}",
                headers=self._headers(),
                data=data,
                timeout=self.TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ExternalUnavailable(f"Payment gateway unreachable: {exc}") from exc

        if resp.status_code >= 500:
            raise ExternalUnavailable(f"Payment gateway error {resp.status_code}")

        body = resp.json()
        if resp.status_code == 402 or body.get("error", {}).get("type") == "card_error":
            raise PaymentFailed(body.get("error", {}).get("message", "Payment declined"))
        if resp.status_code >= 400:
            raise InvalidValue(body.get("error", {}).get("message", f"Gateway rejected request ({resp.status_code})"))
        return body

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def create_intent(
        self,
        request_id: int,
        attempt_id: int,
        method: str,
        amount: Decimal,
        payment_method_token: str = "",
    ) -> GatewayIntent:
        """
        Open a gateway intent for ``amount``.

        card / wallet: confirmed synchronously (PaymentFailed on a decline).
        instant_transfer: returns a checkout URL; the result arrives later.
        """
        currency = getattr(settings, "PAYMENT_CURRENCY", "brl")
        metadata = {
            "metadata[request_id]": str(request_id),
            "metadata[attempt_id]": str(attempt_id),
        }

        if method == "instant_transfer":
            return self._create_checkout(request_id, amount, currency, metadata)

        if _is_mock():
            if payment_method_token in MOCK_DECLINE_TOKENS:
                logger.info("Mock payment declined for request %s", request_id)
                raise PaymentFailed("Your card was declined.")
            pi_id = f"pi_{uuid.uuid4().hex[:24]}"
            logger.info("Mock payment intent: %s (%s %s)", pi_id, amount, currency)
            return GatewayIntent(
                reference=pi_id,
                confirmed=True,
                client_secret=f"{pi_id}_secret_{uuid.uuid4().hex[:12]}",
            )

        data = self._request("POST", "/payment_intents", {
            "amount": to_cents(amount),
            "currency": currency,
            "payment_method": payment_method_token,
            "confirm": "true",
            "automatic_payment_methods[enabled]": "true",
            "automatic_payment_methods[allow_redirects]": "never",
            **metadata,
        })
        logger.info("Created payment intent: %s (status=%s)", data["id"], data.get("status"))
        if data.get("status") in ("canceled", "requires_payment_method"):
            raise PaymentFailed(data.get("last_payment_error", {}).get("message", "Payment declined"))
        return GatewayIntent(
            reference=data["id"],
            confirmed=data.get("status") == "succeeded",
            client_secret=data.get("client_secret", ""),
        )

    def _create_checkout(self, request_id, amount, currency, metadata) -> GatewayIntent:
        return_url = getattr(settings, "PAYMENT_RETURN_URL", "http://localhost:3000/payment/return")

        if _is_mock():
            cs_id = f"cs_{uuid.uuid4().hex[:24]}"
            logger.info("Mock checkout session: %s (%s %s)", cs_id, amount, currency)
            return GatewayIntent(
                reference=cs_id,
                checkout_url=f"https://checkout.stripe.com/c/pay/{cs_id}",
            )

        data = self._request("POST", "/checkout/sessions", {
            "mode": "payment",
            "payment_method_types[0]": "pix",
            "line_items[0][quantity]": 1,
            "line_items[0][price_data][currency]": currency,
            "line_items[0][price_data][unit_amount]": to_cents(amount),
            "line_items[0][price_data][product_data][name]": f"Service request #{request_id}",
            "success_url": f"{return_url}?request_id={request_id}",
            "cancel_url": f"{return_url}?request_id={request_id}&canceled=1",
            **metadata,
            **{k.replace("metadata", "payment_intent_data[metadata]", 1): v for k, v in metadata.items()},
        })
        logger.info("Created checkout session: %s", data["id"])
        return GatewayIntent(reference=data["id"], checkout_url=data.get("url", ""))

    def poll_status(self, reference: str) -> GatewayStatus:
        if _is_mock():
            # Mock transfers settle only through the webhook
            return GatewayStatus()

        if reference.startswith("cs_"):
            data = self._request("GET", f"/checkout/sessions/{reference}")
            if data.get("payment_status") == "paid":
                return GatewayStatus(confirmed=True)
            if data.get("status") == "expired":
                return GatewayStatus(failed=True, reason="Checkout expired")
            return GatewayStatus()

        data = self._request("GET", f"/payment_intents/{reference}")
        if data.get("status") == "succeeded":
            return GatewayStatus(confirmed=True)
        if data.get("status") == "canceled":
            return GatewayStatus(failed=True, reason="Payment canceled")
        return GatewayStatus()

    def cancel_intent(self, reference: str) -> bool:
        """
        Close an intent or checkout session so it can no longer be paid.

        Raises InvalidValue when the gateway refuses (e.g. it was already paid).
        """
        if not reference:
            return False

        if _is_mock():
            logger.info("Mock intent released: %s", reference)
            return True

        if reference.startswith("cs_"):
            self._request("POST", f"/checkout/sessions/{reference}/expire")
        else:
            self._request("POST", f"/payment_intents/{reference}/cancel")
        logger.info("Released gateway intent %s", reference)
        return True

    # ------------------------------------------------------------------
    # Webhook signature verification
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        """Verify a Stripe webhook signature. Returns the parsed event."""
        webhook_secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")

        try:
            if _is_mock() or not webhook_secret:
                return json.loads(payload)

            parts = dict(item.split("=", 1) for item in sig_header.split(","))
            timestamp = parts.get("t", "")
            signature = parts.get("v1", "")

            signed_payload = f"{timestamp}.{payload.decode()}"
            expected = hmac.new(
                webhook_secret.encode(), signed_payload.encode(), hashlib.sha256
            ).hexdigest()

            if not hmac.compare_digest(expected, signature):
                raise InvalidValue("Invalid Stripe webhook signature")

            # Check timestamp is within 5 minutes
            if abs(time.time() - int(timestamp)) > 300:
                raise InvalidValue("Stripe webhook timestamp too old")

            return json.loads(payload)
        except ValueError as exc:
            raise InvalidValue(f"Malformed webhook: {exc}") from exc

    def parse_event(self, payload: bytes, sig_header: str) -> GatewayEvent:
        event = self.verify_webhook_signature(payload, sig_header)
        event_type = event.get("type", "")
        obj = event.get("data", {}).get("object", {}) or {}
        metadata = obj.get("metadata") or {}

        succeeded = event_type in SUCCEEDED_EVENTS
        # A completed checkout can still be waiting for the transfer
        if event_type == "checkout.session.completed" and obj.get("payment_status") not in (None, "paid"):
            succeeded = False

        failure_reason = ""
        if event_type in FAILED_EVENTS:
            failure_reason = (obj.get("last_payment_error") or {}).get("message", event_type)

        return GatewayEvent(
            type=event_type,
            reference=obj.get("id", ""),
            attempt_id=_int_or_none(metadata.get("attempt_id")),
            request_id=_int_or_none(metadata.get("request_id")),
            succeeded=succeeded,
            failed=event_type in FAILED_EVENTS,
            failure_reason=failure_reason,
        )


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


_gateway: Optional[StripeGateway] = None


def get_gateway() -> StripeGateway:
    """Get singleton StripeGateway instance."""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
