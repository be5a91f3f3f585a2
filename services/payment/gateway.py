"""
services/payment/gateway.py
Payment Gateway Adapter. Wraps the processor's customer, authorize,
capture, transfer and cancel primitives. Holds no booking semantics:
callers persist the ids it returns.

StripeGateway runs the blocking SDK in the threadpool behind a circuit
breaker. Transport failures on calls that carry an idempotency key are
retried.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import stripe
from pybreaker import CircuitBreaker, CircuitBreakerError
from starlette.concurrency import run_in_threadpool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings
from shared.utils.errors import PaymentError, ValidationError
from shared.utils.money import MinorUnits

logger = logging.getLogger(__name__)

BALANCE_INSUFFICIENT_DETAIL = (
    "The platform account has insufficient available balance to transfer to the coach. "
    "In test mode, add balance with the test card 4000000000000077 and retry."
)


class HoldOutcome(str, Enum):
    NEEDS_CLIENT_ACTION = "needs_client_action"   # 3DS or similar challenge on the client
    HELD = "held"                                 # Authorized, awaiting capture
    SETTLED = "settled"
    PENDING = "pending"


def hold_outcome_for(intent_status: str) -> HoldOutcome:
    return {
        "requires_action": HoldOutcome.NEEDS_CLIENT_ACTION,
        "requires_capture": HoldOutcome.HELD,
        "succeeded": HoldOutcome.SETTLED,
    }.get(intent_status, HoldOutcome.PENDING)


@dataclass
class HoldResult:
    intent_id: str
    client_secret: Optional[str]
    status: str

    @property
    def outcome(self) -> HoldOutcome:
        return hold_outcome_for(self.status)


@dataclass
class ConnectAccount:
    """Coach payout account as last reported by the processor."""
    id: str
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False

    @property
    def onboarding_complete(self) -> bool:
        return self.details_submitted and (self.charges_enabled or self.payouts_enabled)


class PaymentGateway:
    """Interface the booking core talks to. Test doubles implement the same methods."""

    @property
    def enabled(self) -> bool:
        return False

    @property
    def webhooks_enabled(self) -> bool:
        return False

    async def get_or_create_customer(
        self, user_id: str, email: str, existing_customer_id: Optional[str] = None
    ) -> str:
        raise NotImplementedError

    async def create_authorization_hold(
        self,
        *,
        amount_cents: MinorUnits,
        currency: str,
        customer_id: str,
        idempotency_key: str,
        metadata: dict,
        payment_method_id: Optional[str] = None,
        connect_account_id: Optional[str] = None,
        application_fee_cents: Optional[MinorUnits] = None,
    ) -> HoldResult:
        raise NotImplementedError

    async def retrieve_intent_status(self, intent_id: str) -> str:
        raise NotImplementedError

    async def capture(self, intent_id: str, idempotency_key: Optional[str] = None) -> None:
        raise NotImplementedError

    async def transfer(
        self,
        *,
        amount_cents: MinorUnits,
        currency: str,
        destination_account_id: str,
        group_ref: str,
        idempotency_key: Optional[str] = None,
    ) -> str:
        raise NotImplementedError

    async def cancel(self, intent_id: str) -> None:
        raise NotImplementedError

    # Payout accounts

    async def create_connect_account(self, email: Optional[str], coach_ref: str) -> str:
        raise NotImplementedError

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        raise NotImplementedError

    async def retrieve_account(self, account_id: str) -> ConnectAccount:
        raise NotImplementedError

    def construct_event(self, payload: bytes, signature: str) -> dict:
        raise NotImplementedError


class DisabledGateway(PaymentGateway):
    """Used when no secret key is configured. Every call is an error."""

    async def _unavailable(self, *args, **kwargs):
        raise PaymentError("Payments are not configured")

    get_or_create_customer = _unavailable
    create_authorization_hold = _unavailable
    retrieve_intent_status = _unavailable
    capture = _unavailable
    transfer = _unavailable
    cancel = _unavailable
    create_connect_account = _unavailable
    create_account_link = _unavailable
    retrieve_account = _unavailable


def _error_code(exc: Exception) -> Optional[str]:
    code = getattr(exc, "code", None)
    if code:
        return code
    error = getattr(exc, "error", None)
    return getattr(error, "code", None) if error is not None else None


def to_payment_error(exc: Exception, message: str) -> PaymentError:
    """Sanitize a processor error for the API response."""
    code = _error_code(exc)
    if code == "balance_insufficient":
        detail = BALANCE_INSUFFICIENT_DETAIL
    else:
        detail = getattr(exc, "user_message", None) or "The payment provider rejected the request."
    return PaymentError(message, detail=detail, gateway_code=code)


_retry_transport = retry(
    retry=retry_if_exception_type(stripe.APIConnectionError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    reraise=True,
)


class StripeGateway(PaymentGateway):
    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        breaker: Optional[CircuitBreaker] = None,
    ):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        # Client-side rejections say nothing about processor health
        self._breaker = breaker or CircuitBreaker(
            fail_max=settings.PAYMENT_BREAKER_FAIL_MAX,
            reset_timeout=settings.PAYMENT_BREAKER_RESET_SECONDS,
            exclude=[stripe.CardError, stripe.InvalidRequestError],
            name="stripe",
        )
        if secret_key:
            stripe.api_key = secret_key
            stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
            stripe.default_http_client = stripe.RequestsClient(
                timeout=settings.STRIPE_TIMEOUT_SECONDS
            )

    @property
    def enabled(self) -> bool:
        return bool(self._secret_key)

    @property
    def webhooks_enabled(self) -> bool:
        return bool(self._webhook_secret)

    # ── Plumbing ──────────────────────────────────────────────

    async def _invoke(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        return await run_in_threadpool(self._breaker.call, fn, *args, **kwargs)

    async def _call(
        self,
        fn: Callable[..., Any],
        *args,
        failure_message: str,
        retry_transport: bool = False,
        **kwargs,
    ) -> Any:
        if not self.enabled:
            raise PaymentError("Payments are not configured")
        invoke = _retry_transport(self._invoke) if retry_transport else self._invoke
        try:
            return await invoke(fn, *args, **kwargs)
        except CircuitBreakerError:
            logger.error("Stripe circuit open, rejecting call")
            raise PaymentError("Payment provider temporarily unavailable")
        except stripe.StripeError as e:
            logger.error(f"Stripe call failed ({_error_code(e)}): {e}")
            raise to_payment_error(e, failure_message) from e

    # ── Operations ────────────────────────────────────────────

    async def get_or_create_customer(
        self, user_id: str, email: str, existing_customer_id: Optional[str] = None
    ) -> str:
        if existing_customer_id:
            return existing_customer_id
        customer = await self._call(
            stripe.Customer.create,
            email=email.strip() or None,
            metadata={"user_id": str(user_id)},
            idempotency_key=f"customer:{user_id}",
            failure_message="Payment setup failed. Please try again or use a different card.",
            retry_transport=True,
        )
        return customer.id

    async def _attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        try:
            await self._call(
                stripe.PaymentMethod.attach,
                payment_method_id,
                customer=customer_id,
                failure_message="Payment setup failed. Please try again or use a different card.",
            )
        except PaymentError as e:
            if e.gateway_code != "resource_already_attached_to_customer":
                raise

    async def create_authorization_hold(
        self,
        *,
        amount_cents: MinorUnits,
        currency: str,
        customer_id: str,
        idempotency_key: str,
        metadata: dict,
        payment_method_id: Optional[str] = None,
        connect_account_id: Optional[str] = None,
        application_fee_cents: Optional[MinorUnits] = None,
    ) -> HoldResult:
        """
        Manual-capture PaymentIntent. With a payment method it is attached to the
        customer and confirmed server-side. With a connect account the intent is a
        destination charge so capture splits funds without a separate transfer.
        """
        if payment_method_id:
            await self._attach_payment_method(payment_method_id, customer_id)

        params: dict = {
            "amount": amount_cents,
            "currency": currency,
            "customer": customer_id,
            "capture_method": "manual",
            "metadata": metadata,
            "confirm": bool(payment_method_id),
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
        }
        if payment_method_id:
            params["payment_method"] = payment_method_id
        if connect_account_id:
            fee = application_fee_cents or 0
            if 0 <= fee < amount_cents:
                params["transfer_data"] = {"destination": connect_account_id}
                params["application_fee_amount"] = fee

        intent = await self._call(
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            failure_message="Payment setup failed. Please try again or use a different card.",
            retry_transport=True,
            **params,
        )
        return HoldResult(
            intent_id=intent.id,
            client_secret=getattr(intent, "client_secret", None),
            status=intent.status,
        )

    async def retrieve_intent_status(self, intent_id: str) -> str:
        intent = await self._call(
            stripe.PaymentIntent.retrieve,
            intent_id,
            failure_message="Could not load payment status. Please try again.",
            retry_transport=True,
        )
        return intent.status

    async def capture(self, intent_id: str, idempotency_key: Optional[str] = None) -> None:
        await self._call(
            stripe.PaymentIntent.capture,
            intent_id,
            idempotency_key=idempotency_key,
            failure_message="Payment capture failed. Please try again.",
            retry_transport=idempotency_key is not None,
        )

    async def transfer(
        self,
        *,
        amount_cents: MinorUnits,
        currency: str,
        destination_account_id: str,
        group_ref: str,
        idempotency_key: Optional[str] = None,
    ) -> str:
        transfer = await self._call(
            stripe.Transfer.create,
            amount=amount_cents,
            currency=currency,
            destination=destination_account_id,
            transfer_group=group_ref,
            idempotency_key=idempotency_key,
            failure_message="Payment capture failed. Please try again.",
            retry_transport=idempotency_key is not None,
        )
        return transfer.id

    async def cancel(self, intent_id: str) -> None:
        await self._call(
            stripe.PaymentIntent.cancel,
            intent_id,
            failure_message="Could not release the payment hold.",
        )

    # ── Payout accounts ───────────────────────────────────────

    async def _connect_call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await self._call(fn, *args, failure_message="Payment setup failed", **kwargs)
        except PaymentError as e:
            if "signed up for Connect" in str(e.__cause__ or ""):
                raise ValidationError(
                    "Stripe Connect not enabled",
                    detail="Enable Connect for the platform's Stripe account, then try again.",
                )
            raise

    async def create_connect_account(self, email: Optional[str], coach_ref: str) -> str:
        """Express account for a coach. Keyed by the coach so a retried request reuses it."""
        account = await self._connect_call(
            stripe.Account.create,
            type="express",
            email=email or None,
            metadata={"apex_coach_id": coach_ref},
            idempotency_key=f"connect-account:{coach_ref}",
            retry_transport=True,
        )
        return account.id

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        link = await self._connect_call(
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return link.url

    async def retrieve_account(self, account_id: str) -> ConnectAccount:
        account = await self._connect_call(
            stripe.Account.retrieve, account_id, retry_transport=True
        )
        return ConnectAccount(
            id=account.id,
            details_submitted=bool(getattr(account, "details_submitted", False)),
            charges_enabled=bool(getattr(account, "charges_enabled", False)),
            payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
        )

    def construct_event(self, payload: bytes, signature: str) -> dict:
        """Verify the signature and return the event as a plain dict."""
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            raise ValidationError("Webhook signature verification failed")
        return json.loads(payload)


_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency. One gateway (and breaker) per process."""
    global _gateway
    if _gateway is None:
        if settings.stripe_enabled:
            _gateway = StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
        else:
            _gateway = DisabledGateway()
    return _gateway
