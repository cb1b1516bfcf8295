from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from services.checkout.app.db.database import db_session
from services.checkout.app.db.init_db import init_db
from services.checkout.app.db.seed import DemoStore, seed_demo_store
from services.checkout.app.models.checkout import CheckoutInput
from services.checkout.app.services.idempotency import memory_cache
from services.checkout.app.services.payment_mock import mock_provider
from sqlalchemy.orm import Session

SHIPPING_ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address1": "1 Analytical Way",
    "city": "Springfield",
    "state": "CA",
    "postal_code": "94000",
    "country": "US",
}


@pytest.fixture(autouse=True)
def _reset_process_singletons() -> Iterator[None]:
    mock_provider.reset()
    memory_cache.clear()
    yield
    mock_provider.reset()
    memory_cache.clear()


@pytest.fixture()
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    db_path = tmp_path / "checkout_test.db"
    url = f"sqlite+pysqlite:///{db_path}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("CHECKOUT_DB_AUTO_CREATE", "true")
    monkeypatch.setenv("CHECKOUT_PAYMENT_PROVIDER", "mock")
    monkeypatch.setenv("CHECKOUT_IDEMPOTENCY_BACKEND", "db")
    monkeypatch.setenv("CHECKOUT_PAYMENT_RETRY_BASE_DELAY_MS", "0")
    init_db()
    return url


@pytest.fixture()
def db(database_url: str) -> Iterator[Session]:
    session = db_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def demo(db: Session) -> DemoStore:
    return seed_demo_store(db)


@pytest.fixture()
def make_checkout(demo: DemoStore) -> Callable[..., CheckoutInput]:
    """Build a CheckoutInput for the demo store; defaults to 3 tees with standard shipping."""

    def _make(
        payment_intent_id: str,
        quantity: int = 3,
        product_id: str | None = None,
        idempotency_key: str | None = None,
        **overrides: Any,
    ) -> CheckoutInput:
        fields: dict[str, Any] = {
            "store_id": demo.store_id,
            "customer_id": demo.customer_id,
            "items": [{"product_id": product_id or demo.product_id, "quantity": quantity}],
            "shipping_address": SHIPPING_ADDRESS,
            "shipping_method_id": demo.shipping_method_id,
            "payment_intent_id": payment_intent_id,
            "idempotency_key": idempotency_key,
        }
        fields.update(overrides)
        return CheckoutInput(**fields)

    return _make
