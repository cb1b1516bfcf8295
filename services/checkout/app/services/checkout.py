"""Order creation.

A checkout runs in three phases: price the cart from current catalog state, validate the
payment intent against that price, then write stock, order, items and payment in one
database transaction. Nothing is persisted unless the whole transaction commits.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1
from packages.shared.schemas.order_v1 import OrderStatusV1, PaymentStatusV1
from services.checkout.app.db.models import Coupon, Order, OrderItem, Payment, Store
from services.checkout.app.log import get_logger
from services.checkout.app.models.checkout import CheckoutInput, CheckoutResponse, DiscountResult
from services.checkout.app.models.order import OrderItemOut, OrderOut
from services.checkout.app.services.catalog import Catalog
from services.checkout.app.services.checkout_base import (
    CACHEABLE_ERRORS,
    CartLineItem,
    CheckoutPricing,
    CheckoutValidationError,
    DiscountOutcome,
    DuplicatePaymentError,
    IdempotencyKeyMismatchError,
    OrderNotFoundError,
    PaymentValidationError,
    PaymentValidationResult,
    TransientInfraError,
    restore_error,
)
from services.checkout.app.services.event_log import log_event
from services.checkout.app.services.idempotency import (
    IdempotencyCache,
    default_ttl,
    get_idempotency_cache,
    is_valid_idempotency_key,
    request_fingerprint,
    scoped_key,
)
from services.checkout.app.services.inventory import reserve_stock
from services.checkout.app.services.payment_base import PaymentProvider
from services.checkout.app.services.payment_factory import get_payment_provider
from services.checkout.app.services.payment_validator import PaymentIntentValidator
from services.checkout.app.services.pricing import PricingCalculator
from services.checkout.app.services.tax import TaxStrategy
from sqlalchemy import or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

logger = get_logger("checkout")


def order_to_out(order: Order) -> OrderOut:
    return OrderOut(
        id=order.id,
        order_number=order.order_number,
        store_id=order.store_id,
        customer_id=order.customer_id,
        status=OrderStatusV1(order.status),
        payment_status=order.payment_status,
        subtotal=order.subtotal,
        tax_amount=order.tax_amount,
        shipping_amount=order.shipping_amount,
        discount_amount=order.discount_amount,
        total_amount=order.total_amount,
        currency=order.currency,
        discount_code=order.discount_code,
        shipping_method_id=order.shipping_method_id,
        gateway_payment_id=order.gateway_payment_id,
        shipping_address=dict(order.shipping_address_json or {}),
        billing_address=dict(order.billing_address_json or {}),
        items=[
            OrderItemOut(
                id=item.id,
                product_id=item.product_id,
                variant_id=item.variant_id,
                product_name=item.product_name,
                variant_name=item.variant_name,
                sku=item.sku,
                unit_price=item.unit_price,
                quantity=item.quantity,
                subtotal=item.subtotal,
                tax_amount=item.tax_amount,
                discount_amount=item.discount_amount,
                total_amount=item.total_amount,
            )
            for item in order.items
        ],
        created_at=order.created_at.isoformat(),
    )


def discount_to_out(outcome: DiscountOutcome) -> DiscountResult:
    return DiscountResult(
        code=outcome.code,
        applied=outcome.applied,
        rejected=outcome.rejected,
        reason=outcome.reason,
        amount=outcome.amount,
    )


def _discount_from_order(order: Order) -> DiscountResult:
    if order.discount_code is None:
        return DiscountResult()
    rejected = order.discount_rejection_reason is not None
    return DiscountResult(
        code=order.discount_code,
        applied=not rejected and order.discount_amount > 0,
        rejected=rejected,
        reason=order.discount_rejection_reason,
        amount=order.discount_amount,
    )


def get_order(db: Session, store_id: str, order_id: str) -> Order:
    order = db.execute(
        select(Order).where(Order.id == order_id, Order.store_id == store_id)
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError(order_id)
    return order


def find_order_by_idempotency_key(db: Session, store_id: str, idempotency_key: str) -> Order | None:
    return db.execute(
        select(Order).where(Order.store_id == store_id, Order.idempotency_key == idempotency_key)
    ).scalar_one_or_none()


def _payment_status_for(validation: PaymentValidationResult) -> PaymentStatusV1:
    if validation.status == "succeeded":
        return PaymentStatusV1.PAID
    return PaymentStatusV1.AUTHORIZED


class CheckoutService:
    """Turns an authorized cart into a persisted order.

    The caller has already checked that ``customer_id`` may check out in ``store_id``.
    """

    def __init__(
        self,
        db: Session,
        provider: PaymentProvider | None = None,
        cache: IdempotencyCache | None = None,
        ttl: timedelta | None = None,
        validator: PaymentIntentValidator | None = None,
        tax_strategy: TaxStrategy | None = None,
    ) -> None:
        self._db = db
        self._provider = provider if provider is not None else get_payment_provider()
        self._cache = cache if cache is not None else get_idempotency_cache()
        self._ttl = ttl if ttl is not None else default_ttl()
        self._pricing = PricingCalculator(Catalog(db), tax_strategy)
        self._validator = (
            validator
            if validator is not None
            else PaymentIntentValidator(db, self._provider, self._cache, self._ttl)
        )

    def create_order(self, request: CheckoutInput) -> CheckoutResponse:
        store_id = request.store_id
        key = request.idempotency_key
        cache_key: str | None = None
        request_hash: str | None = None

        if key is not None:
            if not is_valid_idempotency_key(key):
                raise CheckoutValidationError(
                    "Idempotency key must be 1-255 characters of letters, digits, '_', '-', ':' or '.'",
                    {"idempotency_key": key},
                )
            cache_key = scoped_key("checkout", store_id, key)
            request_hash = request_fingerprint(
                request.model_dump(mode="json", exclude={"idempotency_key"})
            )
            replay = self._replay(cache_key, request_hash, store_id, key)
            if replay is not None:
                return replay

        logger.info(
            "checkout_started",
            store_id=store_id,
            customer_id=request.customer_id,
            items=len(request.items),
            idempotent=key is not None,
        )

        try:
            response = self._create_order(request, request_hash)
        except CACHEABLE_ERRORS as e:
            if cache_key is not None:
                self._remember(cache_key, {"error": e.to_payload()}, request_hash)
            raise

        if cache_key is not None:
            self._remember(cache_key, {"response": response.model_dump(mode="json")}, request_hash)
        return response

    def get_by_idempotency_key(self, store_id: str, idempotency_key: str) -> CheckoutResponse:
        """Status query for a checkout submitted with ``idempotency_key``.

        Reads the cache first and falls back to the orders table once the entry has expired.
        """

        cached = self._cache.get(scoped_key("checkout", store_id, idempotency_key))
        if cached is not None:
            if "error" in cached.result:
                raise restore_error(cached.result["error"])
            return CheckoutResponse.model_validate(cached.result["response"])

        order = find_order_by_idempotency_key(self._db, store_id, idempotency_key)
        if order is None:
            raise OrderNotFoundError(idempotency_key)
        return CheckoutResponse(order=order_to_out(order), discount=_discount_from_order(order))

    def _replay(
        self,
        cache_key: str,
        request_hash: str,
        store_id: str,
        idempotency_key: str,
    ) -> CheckoutResponse | None:
        cached = self._cache.get(cache_key)
        if cached is not None:
            if cached.request_hash is not None and cached.request_hash != request_hash:
                raise IdempotencyKeyMismatchError(idempotency_key)
            logger.info("idempotency_hit", scope="checkout", store_id=store_id)
            if "error" in cached.result:
                raise restore_error(cached.result["error"])
            return CheckoutResponse.model_validate(cached.result["response"])

        # Cache entry missing or expired; the order row still records the key.
        order = find_order_by_idempotency_key(self._db, store_id, idempotency_key)
        if order is None:
            return None
        if order.request_hash is not None and order.request_hash != request_hash:
            raise IdempotencyKeyMismatchError(idempotency_key)
        logger.info("idempotency_hit", scope="checkout", store_id=store_id, source="orders")
        return CheckoutResponse(order=order_to_out(order), discount=_discount_from_order(order))

    def _remember(self, cache_key: str, payload: dict[str, Any], request_hash: str | None) -> None:
        try:
            self._cache.set(cache_key, payload, ttl=self._ttl, request_hash=request_hash)
        except SQLAlchemyError as e:
            # The order row keeps the key, so replays still resolve without the cache entry.
            logger.warning("idempotency_store_failed", key=cache_key, error=str(e))

    def _create_order(self, request: CheckoutInput, request_hash: str | None) -> CheckoutResponse:
        store_id = request.store_id
        address = request.shipping_address

        pricing = self._pricing.calculate(
            store_id,
            [
                CartLineItem(product_id=i.product_id, quantity=i.quantity, variant_id=i.variant_id)
                for i in request.items
            ],
            request.shipping_method_id,
            discount_code=request.discount_code,
            shipping_region=address.state or address.country,
        )

        validation = self._validator.validate_payment_intent(
            request.payment_intent_id,
            pricing.grand_total,
            store_id,
            idempotency_key=request.idempotency_key,
            currency=pricing.currency,
        )
        if not validation.is_valid:
            raise PaymentValidationError(
                request.payment_intent_id, validation.reason or "invalid payment intent"
            )

        try:
            order = self._persist(request, pricing, validation, request_hash)
            self._db.commit()
        except DBAPIError as e:
            self._db.rollback()
            logger.warning("checkout_db_error", store_id=store_id, error=str(e))
            raise TransientInfraError(
                "Database temporarily unavailable; retry with the same idempotency key",
                {"error": type(e).__name__},
            ) from e
        except Exception:
            self._db.rollback()
            raise

        logger.info(
            "order_created",
            store_id=store_id,
            order_id=order.id,
            order_number=order.order_number,
            total_amount=order.total_amount,
        )
        return CheckoutResponse(order=order_to_out(order), discount=discount_to_out(pricing.discount))

    def _persist(
        self,
        request: CheckoutInput,
        pricing: CheckoutPricing,
        validation: PaymentValidationResult,
        request_hash: str | None,
    ) -> Order:
        db = self._db
        store_id = request.store_id
        now = datetime.utcnow()
        payment_status = _payment_status_for(validation)

        order_number = self._next_order_number(store_id)
        reserve_stock(db, store_id, pricing.items, order_number=order_number)

        discount = pricing.discount
        billing = request.billing_address or request.shipping_address
        order = Order(
            id=uuid4().hex,
            order_number=order_number,
            store_id=store_id,
            customer_id=request.customer_id,
            status=OrderStatusV1.PENDING.value,
            payment_status=payment_status.value,
            subtotal=pricing.subtotal,
            tax_amount=pricing.tax_total,
            shipping_amount=pricing.shipping_total,
            discount_amount=pricing.discount_total,
            total_amount=pricing.grand_total,
            currency=pricing.currency,
            discount_code=discount.code,
            discount_rejection_reason=discount.reason if discount.rejected else None,
            shipping_method_id=pricing.shipping_method_id,
            shipping_address_json=request.shipping_address.model_dump(mode="json"),
            billing_address_json=billing.model_dump(mode="json"),
            gateway_payment_id=validation.payment_intent_id,
            idempotency_key=request.idempotency_key,
            request_hash=request_hash,
            customer_note=request.customer_note,
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        db.flush()

        for position, item in enumerate(pricing.items):
            db.add(
                OrderItem(
                    id=uuid4().hex,
                    order_id=order.id,
                    position=position,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    product_name=item.product_name,
                    variant_name=item.variant_name,
                    sku=item.sku,
                    unit_price=item.unit_price,
                    quantity=item.quantity,
                    subtotal=item.line_subtotal,
                    tax_amount=item.line_tax,
                    discount_amount=item.line_discount,
                    total_amount=item.line_total,
                )
            )
        db.flush()

        payment = Payment(
            id=uuid4().hex,
            store_id=store_id,
            order_id=order.id,
            gateway=self._provider.gateway,
            gateway_payment_id=validation.payment_intent_id,
            amount=pricing.grand_total,
            currency=pricing.currency,
            status=payment_status.value,
            created_at=now,
        )
        db.add(payment)
        try:
            db.flush()
        except IntegrityError as e:
            # Another order claimed this intent after validation ran.
            raise DuplicatePaymentError(validation.payment_intent_id) from e

        if discount.applied and discount.coupon_id is not None:
            # Pricing checked the limit outside this transaction; claim the use here.
            claimed = db.execute(
                update(Coupon)
                .where(
                    Coupon.id == discount.coupon_id,
                    Coupon.store_id == store_id,
                    or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
                )
                .values(usage_count=Coupon.usage_count + 1)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise CheckoutValidationError(
                    "Discount code usage limit reached",
                    {"discount_code": discount.code},
                )

        log_event(
            db,
            store_id=store_id,
            entity_type=EntityTypeV1.ORDER,
            entity_id=order.id,
            event_type=EventTypeV1.ORDER_CREATED,
            event_payload={
                "order_number": order_number,
                "customer_id": request.customer_id,
                "total_amount": pricing.grand_total,
                "currency": pricing.currency,
                "idempotency_key": request.idempotency_key,
            },
        )
        reserved = [
            {"product_id": i.product_id, "variant_id": i.variant_id, "quantity": i.quantity}
            for i in pricing.items
            if i.track_inventory
        ]
        if reserved:
            log_event(
                db,
                store_id=store_id,
                entity_type=EntityTypeV1.ORDER,
                entity_id=order.id,
                event_type=EventTypeV1.STOCK_RESERVED,
                event_payload={"items": reserved},
            )
        log_event(
            db,
            store_id=store_id,
            entity_type=EntityTypeV1.PAYMENT,
            entity_id=payment.id,
            event_type=EventTypeV1.PAYMENT_RECORDED,
            event_payload={
                "order_id": order.id,
                "gateway": payment.gateway,
                "gateway_payment_id": payment.gateway_payment_id,
                "amount": payment.amount,
                "status": payment.status,
            },
        )
        if discount.rejected:
            log_event(
                db,
                store_id=store_id,
                entity_type=EntityTypeV1.ORDER,
                entity_id=order.id,
                event_type=EventTypeV1.DISCOUNT_REJECTED,
                event_payload={"code": discount.code, "reason": discount.reason},
            )

        return order

    def _next_order_number(self, store_id: str) -> str:
        result = self._db.execute(
            update(Store)
            .where(Store.id == store_id)
            .values(order_seq=Store.order_seq + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CheckoutValidationError(f"Unknown store {store_id}", {"store_id": store_id})
        seq = self._db.execute(select(Store.order_seq).where(Store.id == store_id)).scalar_one()
        return f"ORD-{seq:05d}"
