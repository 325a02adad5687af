"""Stripe webhook reconciliation and checkout session creation."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import stripe

from multichat.billing.ledger import UsageLedger
from multichat.config import BillingConfig
from multichat.core.session import require_user
from multichat.errors import BadSignature, UnknownEvent
from multichat.log import get_logger
from multichat.storage.models import Balance

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class WebhookStatus(StrEnum):
    CREDITED = "credited"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNMAPPED_PRICE = "unmapped_price"


@dataclass(frozen=True)
class WebhookOutcome:
    status: WebhookStatus
    event_id: str
    event_type: str
    user_id: str | None = None
    tokens: int = 0
    balance: Balance | None = None


class PaymentReconciler:
    """Turns verified payment events into idempotent paid-token credits."""

    def __init__(self, ledger: UsageLedger, config: BillingConfig):
        self._ledger = ledger
        self._config = config

    async def handle_webhook(self, raw_body: bytes | str, signature_header: str | None) -> WebhookOutcome:
        """Verify, parse and apply one webhook delivery.

        The signature is checked against the raw body before anything is
        parsed; a failed check raises BadSignature and changes nothing.
        """
        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        self._verify(payload, signature_header)

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise UnknownEvent(f"Webhook body is not valid JSON: {e}") from e
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise UnknownEvent("Webhook body is not a payment event.")

        event_id: str = event["id"]
        event_type: str = event["type"]
        if event_type != CHECKOUT_COMPLETED:
            logger.info("webhook_ignored", event_id=event_id, event_type=event_type)
            return WebhookOutcome(WebhookStatus.IGNORED, event_id, event_type)

        session = (event.get("data") or {}).get("object") or {}
        metadata: dict[str, Any] = session.get("metadata") or {}
        user_id = metadata.get("userId")
        price_id = metadata.get("priceId")
        if not user_id or not price_id:
            logger.error("webhook_missing_metadata", event_id=event_id, session_id=session.get("id"))
            raise UnknownEvent("Missing userId or priceId in session metadata.")

        try:
            quantity = int(metadata.get("quantity") or 1)
        except (TypeError, ValueError) as e:
            raise UnknownEvent(f"Invalid quantity in session metadata: {metadata.get('quantity')!r}") from e
        if quantity < 1:
            raise UnknownEvent(f"Invalid quantity in session metadata: {quantity}")

        tokens_per_unit = self._config.price_tokens.get(price_id)
        if not tokens_per_unit:
            logger.error("webhook_unmapped_price", event_id=event_id, price_id=price_id, user_id=user_id)
            return WebhookOutcome(WebhookStatus.UNMAPPED_PRICE, event_id, event_type, user_id=user_id)

        tokens = tokens_per_unit * quantity
        result = await self._ledger.credit(
            user_id, tokens, event_id=event_id, price_id=price_id, quantity=quantity
        )
        if not result.applied:
            logger.info("webhook_duplicate", event_id=event_id, user_id=user_id)
            return WebhookOutcome(
                WebhookStatus.DUPLICATE, event_id, event_type, user_id=user_id, balance=result.balance
            )

        logger.info("webhook_credited", event_id=event_id, user_id=user_id, tokens=tokens)
        return WebhookOutcome(
            WebhookStatus.CREDITED,
            event_id,
            event_type,
            user_id=user_id,
            tokens=tokens,
            balance=result.balance,
        )

    def _verify(self, payload: str, signature_header: str | None) -> None:
        if not signature_header:
            raise BadSignature("Missing Stripe-Signature header.")
        if not self._config.webhook_secret:
            raise BadSignature("Webhook secret is not configured.")
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self._config.webhook_secret,
                tolerance=self._config.webhook_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_bad_signature", error=str(e))
            raise BadSignature(f"Webhook signature verification failed: {e}") from e

    async def create_checkout_session(
        self,
        user_id: str,
        price_id: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Create a one-off payment session whose metadata drives the later credit."""
        user_id = require_user(user_id)
        if price_id not in self._config.price_tokens:
            raise ValueError(f"Unknown price id: {price_id}")
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        if not self._config.stripe_secret_key:
            raise ValueError("Stripe secret key is not configured.")

        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=self._config.stripe_secret_key,
            mode="payment",
            line_items=[{"price": price_id, "quantity": quantity}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"userId": user_id, "priceId": price_id, "quantity": str(quantity)},
        )
        logger.info("checkout_session_created", user_id=user_id, price_id=price_id, quantity=quantity)
        return session.id
