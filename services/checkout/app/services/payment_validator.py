from __future__ import annotations

import os
import random
import time
from collections.abc import Callable
from datetime import timedelta

from services.checkout.app.db.models import Payment
from services.checkout.app.log import get_logger
from services.checkout.app.services.checkout_base import (
    CheckoutValidationError,
    PaymentValidationResult,
    TransientInfraError,
)
from services.checkout.app.services.idempotency import DEFAULT_TTL, IdempotencyCache, scoped_key
from services.checkout.app.services.payment_base import (
    CHECKOUT_READY_STATUSES,
    PaymentIntent,
    PaymentIntentNotFoundError,
    PaymentProvider,
    PaymentProviderError,
    PaymentProviderUnavailableError,
)
from sqlalchemy import select
from sqlalchemy.orm import Session

logger = get_logger("payment_validator")

ALREADY_USED_REASON = "payment intent already used"

_MAX_DELAY_MS = 5_000


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid {name}={raw!r}. Expected an integer.") from e


class PaymentIntentValidator:
    """Confirms a payment intent covers the server-computed total and is still unclaimed.

    Returns a result rather than raising for business failures. This check is a fail-fast
    optimization; the (store_id, gateway_payment_id) unique constraint on payments is what
    actually stops two orders from claiming one intent.
    """

    def __init__(
        self,
        db: Session,
        provider: PaymentProvider,
        cache: IdempotencyCache | None = None,
        ttl: timedelta = DEFAULT_TTL,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db = db
        self._provider = provider
        self._cache = cache
        self._ttl = ttl
        self._max_attempts = max(
            1,
            max_attempts
            if max_attempts is not None
            else _env_int("CHECKOUT_PAYMENT_RETRY_ATTEMPTS", 3),
        )
        self._base_delay_ms = max(
            0,
            base_delay_ms
            if base_delay_ms is not None
            else _env_int("CHECKOUT_PAYMENT_RETRY_BASE_DELAY_MS", 100),
        )
        self._sleep = sleep

    def validate_payment_intent(
        self,
        intent_id: str,
        expected_amount: int,
        store_id: str,
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> PaymentValidationResult:
        if not intent_id:
            raise CheckoutValidationError("Payment intent ID is required")

        cache_key = (
            scoped_key("payment-validation", store_id, idempotency_key)
            if idempotency_key and self._cache is not None
            else None
        )
        if cache_key is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                result = PaymentValidationResult.from_payload(cached.result)
                if (
                    result.payment_intent_id == intent_id
                    and result.validated_amount == expected_amount
                ):
                    logger.info("idempotency_hit", scope="payment-validation", store_id=store_id)
                    return result

        if self._already_used(intent_id, store_id):
            return self._invalid(intent_id, currency, ALREADY_USED_REASON)

        try:
            intent = self._retrieve(intent_id)
        except PaymentIntentNotFoundError:
            return self._invalid(intent_id, currency, "payment intent not found")
        except PaymentProviderError as e:
            return self._invalid(intent_id, currency, f"payment provider error: {e}")

        result = self._check(intent, expected_amount, store_id, currency)
        if not result.is_valid:
            logger.info(
                "payment_intent_rejected",
                store_id=store_id,
                payment_intent_id=intent_id,
                reason=result.reason,
            )
            return result

        if cache_key is not None:
            self._cache.set(cache_key, result.to_payload(), ttl=self._ttl)
        return result

    def _check(
        self,
        intent: PaymentIntent,
        expected_amount: int,
        store_id: str,
        currency: str | None,
    ) -> PaymentValidationResult:
        def invalid(reason: str) -> PaymentValidationResult:
            return PaymentValidationResult(
                is_valid=False,
                payment_intent_id=intent.id,
                validated_amount=intent.amount,
                currency=intent.currency,
                status=intent.status,
                reason=reason,
            )

        if intent.store_id is not None and intent.store_id != store_id:
            return invalid("payment intent was created for another store")

        if intent.amount != expected_amount:
            return invalid(
                f"payment intent amount {intent.amount} does not match order total {expected_amount}"
            )

        if currency is not None and intent.currency.lower() != currency.lower():
            return invalid(
                f"payment intent currency {intent.currency} does not match store currency {currency}"
            )

        if intent.status not in CHECKOUT_READY_STATUSES:
            return invalid(f"payment intent status {intent.status} cannot be used for checkout")

        return PaymentValidationResult(
            is_valid=True,
            payment_intent_id=intent.id,
            validated_amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
        )

    def _already_used(self, intent_id: str, store_id: str) -> bool:
        used = self._db.execute(
            select(Payment.id).where(
                Payment.store_id == store_id,
                Payment.gateway_payment_id == intent_id,
            )
        ).first()
        return used is not None

    def _retrieve(self, intent_id: str) -> PaymentIntent:
        last_error: PaymentProviderUnavailableError | None = None

        for attempt in range(self._max_attempts):
            try:
                return self._provider.get_payment_intent(intent_id)
            except PaymentProviderUnavailableError as e:
                last_error = e
                if attempt == self._max_attempts - 1:
                    break
                delay_ms = min(self._base_delay_ms * 2**attempt, _MAX_DELAY_MS)
                delay_ms += random.uniform(0, min(100, self._base_delay_ms))
                logger.warning(
                    "payment_provider_retry",
                    payment_intent_id=intent_id,
                    attempt=attempt + 1,
                    max_attempts=self._max_attempts,
                    delay_ms=round(delay_ms),
                    error=str(e),
                )
                self._sleep(delay_ms / 1000)

        raise TransientInfraError(
            f"Payment provider unavailable after {self._max_attempts} attempts",
            {"payment_intent_id": intent_id, "error": str(last_error)},
        )

    @staticmethod
    def _invalid(
        intent_id: str,
        currency: str | None,
        reason: str,
    ) -> PaymentValidationResult:
        logger.info("payment_intent_rejected", payment_intent_id=intent_id, reason=reason)
        return PaymentValidationResult(
            is_valid=False,
            payment_intent_id=intent_id,
            validated_amount=0,
            currency=(currency or "").lower(),
            status="unknown",
            reason=reason,
        )
