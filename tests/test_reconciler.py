"""Tests for Stripe webhook reconciliation and checkout sessions."""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from multichat.billing.reconciler import PaymentReconciler, WebhookStatus
from multichat.errors import BadSignature, UnknownEvent
from multichat.storage.usage_repo import UsageRepository
from tests.conftest import WEBHOOK_SECRET


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _event(event_id="evt_1", event_type="checkout.session.completed", metadata=None) -> str:
    if metadata is None:
        metadata = {"userId": "alice", "priceId": "price_small", "quantity": "2"}
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "data": {"object": {"id": "cs_test_1", "object": "checkout.session", "metadata": metadata}},
        }
    )


@pytest.fixture
def reconciler(ledger, billing_config):
    return PaymentReconciler(ledger, billing_config)


class TestSignature:
    """Signature failures raise before any side effect."""

    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected(self, reconciler, ledger, db):
        payload = _event()

        with pytest.raises(BadSignature):
            await reconciler.handle_webhook(payload, _sign(payload, secret="whsec_wrong"))

        assert (await ledger.get_balance("alice")).paid_remaining == 0
        assert not await UsageRepository(db).is_event_processed("evt_1")

    @pytest.mark.asyncio
    async def test_missing_header_is_rejected(self, reconciler):
        with pytest.raises(BadSignature):
            await reconciler.handle_webhook(_event(), None)

    @pytest.mark.asyncio
    async def test_stale_timestamp_is_rejected(self, reconciler):
        payload = _event()

        with pytest.raises(BadSignature):
            await reconciler.handle_webhook(payload, _sign(payload, timestamp=int(time.time()) - 3600))

    @pytest.mark.asyncio
    async def test_body_modified_after_signing_is_rejected(self, reconciler):
        payload = _event()
        header = _sign(payload)

        with pytest.raises(BadSignature):
            await reconciler.handle_webhook(payload.replace('"2"', '"200"'), header)


class TestCheckoutCompleted:
    """Tests for crediting completed checkouts."""

    @pytest.mark.asyncio
    async def test_credits_price_tokens_times_quantity(self, reconciler, ledger):
        payload = _event()

        outcome = await reconciler.handle_webhook(payload.encode(), _sign(payload))

        assert outcome.status is WebhookStatus.CREDITED
        assert outcome.tokens == 2000
        assert outcome.user_id == "alice"
        balance = await ledger.get_balance("alice")
        assert balance.paid_remaining == 2000
        assert balance.free_remaining == 100

    @pytest.mark.asyncio
    async def test_replayed_event_is_credited_once(self, reconciler, ledger):
        payload = _event()

        await reconciler.handle_webhook(payload, _sign(payload))
        replay = await reconciler.handle_webhook(payload, _sign(payload))

        assert replay.status is WebhookStatus.DUPLICATE
        assert (await ledger.get_balance("alice")).paid_remaining == 2000

    @pytest.mark.asyncio
    async def test_quantity_defaults_to_one(self, reconciler, ledger):
        payload = _event(metadata={"userId": "alice", "priceId": "price_100k"})

        outcome = await reconciler.handle_webhook(payload, _sign(payload))

        assert outcome.tokens == 100000

    @pytest.mark.asyncio
    async def test_unmapped_price_is_acknowledged_without_credit(self, reconciler, ledger):
        payload = _event(metadata={"userId": "alice", "priceId": "price_unknown"})

        outcome = await reconciler.handle_webhook(payload, _sign(payload))

        assert outcome.status is WebhookStatus.UNMAPPED_PRICE
        assert (await ledger.get_balance("alice")).paid_remaining == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "metadata",
        [{"priceId": "price_small"}, {"userId": "alice"}, {"userId": "alice", "priceId": "price_small", "quantity": "x"}],
    )
    async def test_bad_metadata_is_unknown_event(self, reconciler, metadata):
        payload = _event(metadata=metadata)

        with pytest.raises(UnknownEvent):
            await reconciler.handle_webhook(payload, _sign(payload))


class TestOtherEvents:
    @pytest.mark.asyncio
    async def test_other_event_types_are_ignored(self, reconciler, ledger):
        payload = _event(event_type="payment_intent.succeeded")

        outcome = await reconciler.handle_webhook(payload, _sign(payload))

        assert outcome.status is WebhookStatus.IGNORED
        assert (await ledger.get_balance("alice")).paid_remaining == 0

    @pytest.mark.asyncio
    async def test_signed_garbage_is_unknown_event(self, reconciler):
        payload = "{not json"

        with pytest.raises(UnknownEvent):
            await reconciler.handle_webhook(payload, _sign(payload))


class TestCheckoutSession:
    """Tests for checkout session creation."""

    @pytest.mark.asyncio
    async def test_session_carries_metadata(self, reconciler):
        with patch("stripe.checkout.Session.create", return_value=SimpleNamespace(id="cs_test_42")) as create:
            session_id = await reconciler.create_checkout_session(
                "alice", "price_small", 3, "https://app/success", "https://app/cancel"
            )

        assert session_id == "cs_test_42"
        kwargs = create.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["line_items"] == [{"price": "price_small", "quantity": 3}]
        assert kwargs["metadata"] == {"userId": "alice", "priceId": "price_small", "quantity": "3"}
        assert kwargs["api_key"] == "sk_test_123"

    @pytest.mark.asyncio
    async def test_unknown_price_is_rejected(self, reconciler):
        with pytest.raises(ValueError):
            await reconciler.create_checkout_session("alice", "price_nope", 1, "s", "c")

    @pytest.mark.asyncio
    async def test_zero_quantity_is_rejected(self, reconciler):
        with pytest.raises(ValueError):
            await reconciler.create_checkout_session("alice", "price_small", 0, "s", "c")
