from __future__ import annotations

import threading
from collections.abc import Callable

import pytest
from services.checkout.app.db.database import db_session
from services.checkout.app.db.models import (
    Coupon,
    EventLog,
    InventoryLog,
    Order,
    OrderItem,
    Payment,
    Product,
)
from services.checkout.app.db.seed import DemoStore, seed_demo_store
from services.checkout.app.models.checkout import CheckoutInput
from services.checkout.app.services.catalog import Catalog
from services.checkout.app.services.checkout import CheckoutService
from services.checkout.app.services.checkout_base import (
    CartLineItem,
    CheckoutError,
    CheckoutValidationError,
    DuplicatePaymentError,
    IdempotencyKeyMismatchError,
    InsufficientStockError,
    PaymentValidationError,
    PaymentValidationResult,
    ProductNotFoundError,
    TransientInfraError,
)
from services.checkout.app.services.idempotency import memory_cache, scoped_key
from services.checkout.app.services.payment_mock import mock_provider
from services.checkout.app.services.payment_validator import PaymentIntentValidator
from services.checkout.app.services.pricing import PricingCalculator
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session


def _count(db: Session, model: type) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _stock(db: Session, product_id: str) -> int:
    db.expire_all()
    return db.get(Product, product_id).inventory_qty


class _AlwaysValid:
    """Validator stand-in that approves everything, as if two checkouts raced past it."""

    def validate_payment_intent(
        self,
        intent_id: str,
        expected_amount: int,
        store_id: str,
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> PaymentValidationResult:
        del store_id, idempotency_key
        return PaymentValidationResult(
            is_valid=True,
            payment_intent_id=intent_id,
            validated_amount=expected_amount,
            currency=(currency or "usd").lower(),
            status="requires_confirmation",
        )


def test_checkout_creates_order_and_decrements_stock(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3500)

    result = CheckoutService(db).create_order(make_checkout(intent.id, quantity=3))

    order = result.order
    assert order.total_amount == 3500
    assert order.subtotal == 3000
    assert order.shipping_amount == 500
    assert order.tax_amount == 0
    assert order.status == "PENDING"
    assert order.payment_status == "AUTHORIZED"
    assert order.order_number == "ORD-00001"
    assert order.gateway_payment_id == intent.id
    assert [i.quantity for i in order.items] == [3]
    assert result.discount.applied is False

    assert _stock(db, demo.product_id) == 2
    assert db.get(Product, demo.product_id).inventory_status == "LOW_STOCK"
    assert _count(db, Order) == 1
    assert _count(db, Payment) == 1

    log = db.execute(select(InventoryLog)).scalar_one()
    assert (log.previous_qty, log.new_qty, log.change_qty) == (5, 2, -3)
    assert log.reason == "Sale"
    assert log.note == "Order ORD-00001"

    events = {e.event_type for e in db.execute(select(EventLog)).scalars()}
    assert {"ORDER_CREATED", "STOCK_RESERVED", "PAYMENT_RECORDED"} <= events


def test_succeeded_intent_marks_order_paid(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3500, status="succeeded")

    result = CheckoutService(db).create_order(make_checkout(intent.id))

    assert result.order.payment_status == "PAID"
    assert db.execute(select(Payment.status)).scalar_one() == "PAID"


def test_order_numbers_increase_per_store(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    service = CheckoutService(db)
    first = service.create_order(make_checkout(mock_provider.create_intent(1500).id, quantity=1))
    second = service.create_order(make_checkout(mock_provider.create_intent(1500).id, quantity=1))

    assert first.order.order_number == "ORD-00001"
    assert second.order.order_number == "ORD-00002"


def test_insufficient_stock_leaves_no_trace(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(10_500)

    with pytest.raises(InsufficientStockError) as excinfo:
        CheckoutService(db).create_order(make_checkout(intent.id, quantity=10))

    assert excinfo.value.details["requested"] == 10
    assert excinfo.value.details["available"] == 5
    assert _stock(db, demo.product_id) == 5
    assert _count(db, Order) == 0
    assert _count(db, OrderItem) == 0
    assert _count(db, Payment) == 0
    assert _count(db, InventoryLog) == 0


def test_second_line_shortfall_rolls_back_first_line(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    # 2 tees + 4 large hoodies = 20000, which also qualifies for free shipping. Only 3 hoodies.
    intent = mock_provider.create_intent(20_000)
    request = make_checkout(
        intent.id,
        items=[
            {"product_id": demo.product_id, "quantity": 2},
            {"product_id": demo.variant_product_id, "variant_id": demo.variant_id, "quantity": 4},
        ],
    )

    with pytest.raises(InsufficientStockError):
        CheckoutService(db).create_order(request)

    assert _stock(db, demo.product_id) == 5
    assert _count(db, Order) == 0
    assert _count(db, Payment) == 0


def test_reused_intent_is_rejected_as_already_used(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    mock_provider.create_intent(3500, intent_id="pi_123")
    service = CheckoutService(db)
    service.create_order(make_checkout("pi_123", quantity=3, idempotency_key="k-first"))

    with pytest.raises(PaymentValidationError) as excinfo:
        service.create_order(make_checkout("pi_123", quantity=1, idempotency_key="k-second"))

    assert "already used" in excinfo.value.reason
    assert _count(db, Order) == 1
    assert _stock(db, demo.product_id) == 2


def test_retry_with_same_key_returns_same_order(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3500)
    service = CheckoutService(db)

    first = service.create_order(make_checkout(intent.id, idempotency_key="k1"))
    calls_after_first = mock_provider.calls
    second = service.create_order(make_checkout(intent.id, idempotency_key="k1"))

    assert second.order.id == first.order.id
    assert second.order.order_number == first.order.order_number
    assert mock_provider.calls == calls_after_first
    assert _count(db, Order) == 1
    assert _stock(db, demo.product_id) == 2


def test_same_key_with_different_body_is_rejected(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3500)
    service = CheckoutService(db)
    service.create_order(make_checkout(intent.id, idempotency_key="k2"))

    with pytest.raises(IdempotencyKeyMismatchError):
        service.create_order(make_checkout(intent.id, quantity=1, idempotency_key="k2"))

    assert _count(db, Order) == 1


def test_replay_falls_back_to_orders_table_when_cache_entry_is_gone(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3500)
    service = CheckoutService(db, cache=memory_cache)

    first = service.create_order(make_checkout(intent.id, idempotency_key="k-expired"))
    memory_cache.clear()
    second = service.create_order(make_checkout(intent.id, idempotency_key="k-expired"))

    assert second.order.id == first.order.id
    assert _count(db, Order) == 1


def test_terminal_error_is_replayed_for_same_key(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(10_500)
    service = CheckoutService(db)

    with pytest.raises(InsufficientStockError):
        service.create_order(make_checkout(intent.id, quantity=10, idempotency_key="k3"))

    db.get(Product, demo.product_id).inventory_qty = 50
    db.commit()

    with pytest.raises(InsufficientStockError):
        service.create_order(make_checkout(intent.id, quantity=10, idempotency_key="k3"))

    assert _count(db, Order) == 0


def test_expired_discount_code_is_reported_not_fatal(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3500)

    result = CheckoutService(db).create_order(make_checkout(intent.id, discount_code="SAVE10"))

    assert result.order.discount_amount == 0
    assert result.order.total_amount == 3500
    assert result.discount.code == "SAVE10"
    assert result.discount.rejected is True
    assert result.discount.applied is False
    assert result.discount.reason == "discount code has expired"

    events = {e.event_type for e in db.execute(select(EventLog)).scalars()}
    assert "DISCOUNT_REJECTED" in events


def test_replayed_order_keeps_discount_rejection(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3500)
    service = CheckoutService(db, cache=memory_cache)
    request = make_checkout(intent.id, discount_code="SAVE10", idempotency_key="k-disc")

    service.create_order(request)
    memory_cache.clear()
    replay = service.create_order(request)

    assert replay.discount.rejected is True
    assert replay.discount.reason == "discount code has expired"


def test_valid_discount_is_applied_and_counted(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    # 10% of 3000 = 300 off.
    intent = mock_provider.create_intent(3200)

    result = CheckoutService(db).create_order(make_checkout(intent.id, discount_code="welcome10"))

    assert result.discount.applied is True
    assert result.discount.amount == 300
    assert result.order.discount_amount == 300
    assert result.order.total_amount == 3200
    assert sum(i.discount_amount for i in result.order.items) == 300

    db.expire_all()
    coupon = db.execute(select(Coupon).where(Coupon.code == "WELCOME10")).scalar_one()
    assert coupon.usage_count == 1


def test_persisted_total_matches_independent_recalculation(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    items = [
        CartLineItem(product_id=demo.product_id, quantity=2),
        CartLineItem(product_id=demo.untracked_product_id, quantity=1),
        CartLineItem(product_id=demo.variant_product_id, quantity=1, variant_id=demo.variant_id),
    ]
    expected = PricingCalculator(Catalog(db)).calculate(
        demo.store_id, items, demo.shipping_method_id, discount_code="WELCOME10"
    )
    intent = mock_provider.create_intent(expected.grand_total)

    result = CheckoutService(db).create_order(
        make_checkout(
            intent.id,
            items=[
                {"product_id": i.product_id, "variant_id": i.variant_id, "quantity": i.quantity}
                for i in items
            ],
            discount_code="WELCOME10",
        )
    )

    assert result.order.total_amount == expected.grand_total
    assert result.order.subtotal == expected.subtotal
    assert [i.unit_price for i in result.order.items] == [1000, 1500, 4500]


def test_untracked_product_does_not_touch_stock(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(1500 * 4 + 500)

    CheckoutService(db).create_order(
        make_checkout(intent.id, quantity=4, product_id=demo.untracked_product_id)
    )

    assert _stock(db, demo.untracked_product_id) == 0
    assert _count(db, InventoryLog) == 0


def test_product_from_another_store_is_not_found(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    other = seed_demo_store(db, store_id="store-2")
    intent = mock_provider.create_intent(3500)

    with pytest.raises(ProductNotFoundError):
        CheckoutService(db).create_order(make_checkout(intent.id, product_id=other.product_id))

    assert _stock(db, other.product_id) == 5


def test_intent_in_wrong_currency_is_rejected(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3500, currency="eur")

    with pytest.raises(PaymentValidationError) as excinfo:
        CheckoutService(db).create_order(make_checkout(intent.id))

    assert "currency" in excinfo.value.reason
    assert _count(db, Order) == 0


def test_underpaying_intent_is_rejected(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3499)

    with pytest.raises(PaymentValidationError):
        CheckoutService(db).create_order(make_checkout(intent.id))

    assert _stock(db, demo.product_id) == 5
    assert _count(db, Order) == 0


def test_constraint_blocks_intent_reuse_when_validation_is_bypassed(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    service = CheckoutService(db, validator=_AlwaysValid())
    service.create_order(make_checkout("pi_race", quantity=3))

    with pytest.raises(DuplicatePaymentError):
        service.create_order(make_checkout("pi_race", quantity=1))

    assert _count(db, Order) == 1
    assert _count(db, OrderItem) == 1
    assert _count(db, Payment) == 1
    assert _stock(db, demo.product_id) == 2


def test_provider_outage_is_transient_and_not_cached(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    intent = mock_provider.create_intent(3500)
    mock_provider.fail_next(intent.id, times=3)
    validator = PaymentIntentValidator(
        db, mock_provider, memory_cache, max_attempts=3, base_delay_ms=0, sleep=lambda _: None
    )
    service = CheckoutService(db, cache=memory_cache, validator=validator)
    request = make_checkout(intent.id, idempotency_key="k-outage")

    with pytest.raises(TransientInfraError):
        service.create_order(request)

    assert _count(db, Order) == 0

    result = service.create_order(request)
    assert result.order.total_amount == 3500


def test_concurrent_checkouts_never_oversell(demo: DemoStore) -> None:
    attempts = 8
    intents = [mock_provider.create_intent(1500).id for _ in range(attempts)]
    outcomes: list[object] = []
    lock = threading.Lock()
    start = threading.Barrier(attempts)

    def run(intent_id: str) -> None:
        session = db_session()
        try:
            request = CheckoutInput(
                store_id=demo.store_id,
                customer_id=demo.customer_id,
                items=[{"product_id": demo.product_id, "quantity": 1}],
                shipping_address={
                    "first_name": "Ada",
                    "last_name": "Lovelace",
                    "address1": "1 Analytical Way",
                    "city": "Springfield",
                    "postal_code": "94000",
                    "country": "US",
                },
                shipping_method_id=demo.shipping_method_id,
                payment_intent_id=intent_id,
            )
            service = CheckoutService(session, provider=mock_provider, cache=memory_cache)
            start.wait()
            try:
                outcome: object = service.create_order(request)
            except CheckoutError as e:
                outcome = e
            with lock:
                outcomes.append(outcome)
        finally:
            session.close()

    threads = [threading.Thread(target=run, args=(i,)) for i in intents]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    successes = [o for o in outcomes if not isinstance(o, CheckoutError)]
    failures = [o for o in outcomes if isinstance(o, CheckoutError)]
    assert len(outcomes) == attempts
    assert all(isinstance(f, (InsufficientStockError, TransientInfraError)) for f in failures)
    assert 1 <= len(successes) <= 5

    check = db_session()
    try:
        remaining = check.get(Product, demo.product_id).inventory_qty
        orders = _count(check, Order)
    finally:
        check.close()
    assert remaining >= 0
    assert remaining == 5 - len(successes)
    assert orders == len(successes)


def test_commit_failure_rolls_back_and_same_key_can_retry(
    db: Session,
    demo: DemoStore,
    make_checkout: Callable[..., CheckoutInput],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    intent = mock_provider.create_intent(3500)
    service = CheckoutService(db, cache=memory_cache)
    request = make_checkout(intent.id, idempotency_key="k-commit")

    real_commit = db.commit
    failures = [OperationalError("COMMIT", {}, Exception("database is locked"))]

    def flaky_commit() -> None:
        if failures:
            raise failures.pop()
        real_commit()

    monkeypatch.setattr(db, "commit", flaky_commit)

    with pytest.raises(TransientInfraError):
        service.create_order(request)

    assert _count(db, Order) == 0
    assert _count(db, OrderItem) == 0
    assert _count(db, Payment) == 0
    assert _stock(db, demo.product_id) == 5
    assert memory_cache.get(scoped_key("checkout", demo.store_id, "k-commit")) is None

    result = service.create_order(request)
    replay = service.create_order(request)

    assert replay.order.id == result.order.id
    assert _count(db, Order) == 1
    assert _count(db, Payment) == 1
    assert _stock(db, demo.product_id) == 2


class _ValidatorThatLetsAnotherCheckoutIn(_AlwaysValid):
    """Runs a competing checkout after pricing but before this one persists."""

    def __init__(self, competitor: Callable[[], None]) -> None:
        self._competitor: Callable[[], None] | None = competitor

    def validate_payment_intent(self, *args, **kwargs) -> PaymentValidationResult:
        if self._competitor is not None:
            competitor, self._competitor = self._competitor, None
            competitor()
        return super().validate_payment_intent(*args, **kwargs)


def test_coupon_usage_limit_holds_when_checkouts_interleave(
    db: Session, demo: DemoStore, make_checkout: Callable[..., CheckoutInput]
) -> None:
    coupon = db.execute(select(Coupon).where(Coupon.code == "WELCOME10")).scalar_one()
    coupon.usage_limit = 1
    db.commit()

    def competing_checkout() -> None:
        other = db_session()
        try:
            CheckoutService(other, validator=_AlwaysValid()).create_order(
                make_checkout("pi_coupon_first", quantity=3, discount_code="WELCOME10")
            )
        finally:
            other.close()

    service = CheckoutService(db, validator=_ValidatorThatLetsAnotherCheckoutIn(competing_checkout))

    with pytest.raises(CheckoutValidationError) as excinfo:
        service.create_order(make_checkout("pi_coupon_second", quantity=1, discount_code="WELCOME10"))

    assert excinfo.value.message == "Discount code usage limit reached"
    db.expire_all()
    coupon = db.execute(select(Coupon).where(Coupon.code == "WELCOME10")).scalar_one()
    assert coupon.usage_count == 1
    assert _count(db, Order) == 1
    assert _count(db, Payment) == 1
    assert _stock(db, demo.product_id) == 2
