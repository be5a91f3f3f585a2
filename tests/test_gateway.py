"""
tests/test_gateway.py
StripeGateway against a patched SDK: request shape, error sanitizing,
transport retries and the circuit breaker.
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe
from pybreaker import CircuitBreaker

from services.payment.gateway import (
    BALANCE_INSUFFICIENT_DETAIL,
    DisabledGateway,
    HoldOutcome,
    StripeGateway,
    to_payment_error,
)
from shared.utils.errors import PaymentError, ValidationError


@pytest.fixture
def stripe_gateway() -> StripeGateway:
    return StripeGateway("sk_test_123", "whsec_test")


def _intent(status: str = "requires_capture", intent_id: str = "pi_123"):
    return SimpleNamespace(id=intent_id, client_secret=f"{intent_id}_secret_abc", status=status)


# ── Holds ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_hold_is_manual_capture_and_confirmed(stripe_gateway: StripeGateway):
    with patch("services.payment.gateway.stripe.PaymentMethod.attach") as attach, \
         patch("services.payment.gateway.stripe.PaymentIntent.create", return_value=_intent()) as create:
        result = await stripe_gateway.create_authorization_hold(
            amount_cents=7500,
            currency="usd",
            customer_id="cus_1",
            payment_method_id="pm_card_visa",
            idempotency_key="booking-1",
            metadata={"bookingId": "booking-1"},
        )

    attach.assert_called_once_with("pm_card_visa", customer="cus_1")
    kwargs = create.call_args.kwargs
    assert kwargs["capture_method"] == "manual"
    assert kwargs["confirm"] is True
    assert kwargs["payment_method"] == "pm_card_visa"
    assert kwargs["idempotency_key"] == "booking-1"
    assert kwargs["amount"] == 7500
    assert kwargs["automatic_payment_methods"] == {"enabled": True, "allow_redirects": "never"}
    assert "transfer_data" not in kwargs

    assert result.intent_id == "pi_123"
    assert result.outcome == HoldOutcome.HELD


@pytest.mark.asyncio
async def test_hold_as_destination_charge(stripe_gateway: StripeGateway):
    with patch("services.payment.gateway.stripe.PaymentMethod.attach"), \
         patch("services.payment.gateway.stripe.PaymentIntent.create", return_value=_intent()) as create:
        await stripe_gateway.create_authorization_hold(
            amount_cents=7500,
            currency="usd",
            customer_id="cus_1",
            payment_method_id="pm_card_visa",
            idempotency_key="booking-1",
            metadata={},
            connect_account_id="acct_1",
            application_fee_cents=750,
        )

    kwargs = create.call_args.kwargs
    assert kwargs["transfer_data"] == {"destination": "acct_1"}
    assert kwargs["application_fee_amount"] == 750


@pytest.mark.asyncio
async def test_hold_without_payment_method_is_unconfirmed(stripe_gateway: StripeGateway):
    with patch("services.payment.gateway.stripe.PaymentMethod.attach") as attach, \
         patch("services.payment.gateway.stripe.PaymentIntent.create",
               return_value=_intent("requires_payment_method")) as create:
        result = await stripe_gateway.create_authorization_hold(
            amount_cents=7500, currency="usd", customer_id="cus_1",
            idempotency_key="k", metadata={},
        )

    attach.assert_not_called()
    assert create.call_args.kwargs["confirm"] is False
    assert result.outcome == HoldOutcome.PENDING


@pytest.mark.asyncio
async def test_already_attached_payment_method_is_tolerated(stripe_gateway: StripeGateway):
    already = stripe.InvalidRequestError(
        "The payment method is already attached.", param="payment_method",
        code="resource_already_attached_to_customer",
    )
    with patch("services.payment.gateway.stripe.PaymentMethod.attach", side_effect=already), \
         patch("services.payment.gateway.stripe.PaymentIntent.create", return_value=_intent()):
        result = await stripe_gateway.create_authorization_hold(
            amount_cents=7500, currency="usd", customer_id="cus_1",
            payment_method_id="pm_card_visa", idempotency_key="k", metadata={},
        )
    assert result.intent_id == "pi_123"


@pytest.mark.asyncio
async def test_card_decline_is_sanitized(stripe_gateway: StripeGateway):
    declined = stripe.CardError("Your card was declined.", param=None, code="card_declined")
    with patch("services.payment.gateway.stripe.PaymentMethod.attach"), \
         patch("services.payment.gateway.stripe.PaymentIntent.create", side_effect=declined):
        with pytest.raises(PaymentError) as exc_info:
            await stripe_gateway.create_authorization_hold(
                amount_cents=7500, currency="usd", customer_id="cus_1",
                payment_method_id="pm_card_declined", idempotency_key="k", metadata={},
            )

    error = exc_info.value
    assert error.status_code == 502
    assert error.gateway_code == "card_declined"
    assert error.error == "Payment setup failed. Please try again or use a different card."
    # Card errors are the customer's problem, not the processor's
    assert stripe_gateway._breaker.fail_counter == 0


# ── Customers ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_existing_customer_is_reused(stripe_gateway: StripeGateway):
    with patch("services.payment.gateway.stripe.Customer.create") as create:
        assert await stripe_gateway.get_or_create_customer("u1", "a@example.com", "cus_existing") == "cus_existing"
    create.assert_not_called()


@pytest.mark.asyncio
async def test_customer_created_with_idempotency_key(stripe_gateway: StripeGateway):
    with patch("services.payment.gateway.stripe.Customer.create",
               return_value=SimpleNamespace(id="cus_new")) as create:
        assert await stripe_gateway.get_or_create_customer("u1", "a@example.com") == "cus_new"
    assert create.call_args.kwargs["idempotency_key"] == "customer:u1"


# ── Capture / transfer / cancel ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_capture_and_transfer(stripe_gateway: StripeGateway):
    with patch("services.payment.gateway.stripe.PaymentIntent.capture") as capture, \
         patch("services.payment.gateway.stripe.Transfer.create",
               return_value=SimpleNamespace(id="tr_1")) as transfer:
        await stripe_gateway.capture("pi_123", idempotency_key="capture:b1")
        transfer_id = await stripe_gateway.transfer(
            amount_cents=6750, currency="usd", destination_account_id="acct_1",
            group_ref="b1", idempotency_key="transfer:b1",
        )

    capture.assert_called_once_with("pi_123", idempotency_key="capture:b1")
    assert transfer_id == "tr_1"
    assert transfer.call_args.kwargs == {
        "amount": 6750,
        "currency": "usd",
        "destination": "acct_1",
        "transfer_group": "b1",
        "idempotency_key": "transfer:b1",
    }


@pytest.mark.asyncio
async def test_insufficient_balance_message(stripe_gateway: StripeGateway):
    broke = stripe.InvalidRequestError("Insufficient funds.", param=None, code="balance_insufficient")
    with patch("services.payment.gateway.stripe.Transfer.create", side_effect=broke):
        with pytest.raises(PaymentError) as exc_info:
            await stripe_gateway.transfer(
                amount_cents=6750, currency="usd", destination_account_id="acct_1", group_ref="b1",
            )
    assert exc_info.value.detail == BALANCE_INSUFFICIENT_DETAIL


@pytest.mark.asyncio
async def test_transport_errors_are_retried(stripe_gateway: StripeGateway):
    flaky = MagicMock(side_effect=[stripe.APIConnectionError("reset"), _intent("succeeded")])
    with patch("services.payment.gateway.stripe.PaymentIntent.retrieve", flaky):
        assert await stripe_gateway.retrieve_intent_status("pi_123") == "succeeded"
    assert flaky.call_count == 2


@pytest.mark.asyncio
async def test_cancel_is_not_retried(stripe_gateway: StripeGateway):
    down = MagicMock(side_effect=stripe.APIConnectionError("reset"))
    with patch("services.payment.gateway.stripe.PaymentIntent.cancel", down):
        with pytest.raises(PaymentError):
            await stripe_gateway.cancel("pi_123")
    assert down.call_count == 1


@pytest.mark.asyncio
async def test_open_breaker_short_circuits():
    gateway = StripeGateway("sk_test_123", breaker=CircuitBreaker(fail_max=1, reset_timeout=60))
    failing = MagicMock(side_effect=stripe.APIError("boom"))
    with patch("services.payment.gateway.stripe.PaymentIntent.retrieve", failing):
        with pytest.raises(PaymentError):
            await gateway.retrieve_intent_status("pi_123")
        with pytest.raises(PaymentError) as exc_info:
            await gateway.retrieve_intent_status("pi_123")

    assert failing.call_count == 1
    assert exc_info.value.error == "Payment provider temporarily unavailable"


# ── Payout accounts ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_connect_account(stripe_gateway: StripeGateway):
    with patch("services.payment.gateway.stripe.Account.create",
               return_value=SimpleNamespace(id="acct_new")) as create:
        assert await stripe_gateway.create_connect_account("coach@example.com", "coach-1") == "acct_new"

    assert create.call_args.kwargs == {
        "type": "express",
        "email": "coach@example.com",
        "metadata": {"apex_coach_id": "coach-1"},
        "idempotency_key": "connect-account:coach-1",
    }


@pytest.mark.asyncio
async def test_connect_not_enabled_is_actionable(stripe_gateway: StripeGateway):
    not_enabled = stripe.InvalidRequestError(
        "You can only create new accounts if you've signed up for Connect.", param=None
    )
    with patch("services.payment.gateway.stripe.Account.create", side_effect=not_enabled):
        with pytest.raises(ValidationError) as exc_info:
            await stripe_gateway.create_connect_account("coach@example.com", "coach-1")
    assert exc_info.value.error == "Stripe Connect not enabled"


@pytest.mark.asyncio
async def test_account_link(stripe_gateway: StripeGateway):
    with patch("services.payment.gateway.stripe.AccountLink.create",
               return_value=SimpleNamespace(url="https://connect.stripe.com/setup/e/acct_1")) as create:
        url = await stripe_gateway.create_account_link(
            "acct_1", refresh_url="https://app/refresh", return_url="https://app/return"
        )

    assert url == "https://connect.stripe.com/setup/e/acct_1"
    assert create.call_args.kwargs == {
        "account": "acct_1",
        "refresh_url": "https://app/refresh",
        "return_url": "https://app/return",
        "type": "account_onboarding",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "details, charges, payouts, complete",
    [
        (True, True, False, True),
        (True, False, True, True),
        (True, False, False, False),
        (False, True, True, False),
    ],
)
async def test_retrieve_account_onboarding(stripe_gateway: StripeGateway, details, charges, payouts, complete):
    account = SimpleNamespace(
        id="acct_1", details_submitted=details, charges_enabled=charges, payouts_enabled=payouts
    )
    with patch("services.payment.gateway.stripe.Account.retrieve", return_value=account) as retrieve:
        result = await stripe_gateway.retrieve_account("acct_1")
    retrieve.assert_called_once_with("acct_1")
    assert result.onboarding_complete is complete


# ── Webhook signatures ─────────────────────────────────────────────────────────

def test_construct_event_returns_plain_dict(stripe_gateway: StripeGateway):
    payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"}).encode()
    with patch("services.payment.gateway.stripe.Webhook.construct_event") as verify:
        event = stripe_gateway.construct_event(payload, "t=1,v1=abc")
    verify.assert_called_once_with(payload, "t=1,v1=abc", "whsec_test")
    assert event == {"id": "evt_1", "type": "payment_intent.succeeded"}


def test_construct_event_rejects_bad_signature(stripe_gateway: StripeGateway):
    bad = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")
    with patch("services.payment.gateway.stripe.Webhook.construct_event", side_effect=bad):
        with pytest.raises(ValidationError):
            stripe_gateway.construct_event(b"{}", "t=1,v1=abc")


# ── Disabled ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_disabled_gateway():
    gateway = DisabledGateway()
    assert gateway.enabled is False
    assert gateway.webhooks_enabled is False
    with pytest.raises(PaymentError):
        await gateway.capture("pi_123")
    with pytest.raises(PaymentError):
        await gateway.create_connect_account("coach@example.com", "coach-1")


def test_to_payment_error_prefers_user_message():
    exc = SimpleNamespace(code="card_declined", user_message="Your card has insufficient funds.")
    error = to_payment_error(exc, "Payment setup failed.")
    assert error.detail == "Your card has insufficient funds."
    assert error.gateway_code == "card_declined"
