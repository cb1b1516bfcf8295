"""Idempotency cache: short-lived ``key -> result`` records that let retried requests replay
the first answer instead of reprocessing.

Keys are scoped per operation and per store (``checkout:<store>:<key>``) so tenants and
operations never collide. The cache is an optimization: uniqueness constraints in the
order tables stay the final guard when an entry is missing or expired.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from services.checkout.app.db.database import db_session
from services.checkout.app.db.models import IdempotencyRecord
from services.checkout.app.log import get_logger
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = get_logger("idempotency")

DEFAULT_TTL = timedelta(hours=24)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_\-:.]{1,255}$")


@dataclass(frozen=True, slots=True)
class CachedResult:
    key: str
    result: dict[str, Any]
    expires_at: datetime
    request_hash: str | None = None

    @property
    def is_expired(self) -> bool:
        return datetime.utcnow() >= self.expires_at


class IdempotencyCache(Protocol):
    def get(self, key: str) -> CachedResult | None: ...

    def set(
        self,
        key: str,
        result: dict[str, Any],
        ttl: timedelta = DEFAULT_TTL,
        request_hash: str | None = None,
    ) -> bool: ...

    def purge_expired(self) -> int: ...


def scoped_key(operation: str, store_id: str, key: str) -> str:
    return f"{operation}:{store_id}:{key}"


def is_valid_idempotency_key(key: str) -> bool:
    return bool(_KEY_PATTERN.match(key))


def request_fingerprint(payload: dict[str, Any]) -> str:
    """SHA-256 over canonical JSON, used to detect a key reused with a different body."""

    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class InMemoryIdempotencyCache:
    """Process-local cache. Only correct for a single server process; use for dev and tests."""

    def __init__(self) -> None:
        self._records: dict[str, CachedResult] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CachedResult | None:
        with self._lock:
            record = self._records.get(key)
        if record is None or record.is_expired:
            return None
        return record

    def set(
        self,
        key: str,
        result: dict[str, Any],
        ttl: timedelta = DEFAULT_TTL,
        request_hash: str | None = None,
    ) -> bool:
        with self._lock:
            existing = self._records.get(key)
            if existing is not None and not existing.is_expired:
                return False
            self._records[key] = CachedResult(
                key=key,
                result=result,
                expires_at=datetime.utcnow() + ttl,
                request_hash=request_hash,
            )
            return True

    def purge_expired(self) -> int:
        with self._lock:
            expired = [k for k, v in self._records.items() if v.is_expired]
            for k in expired:
                del self._records[k]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class SqlIdempotencyCache:
    """Cache rows in the shared database so every server instance sees the same keys.

    Each call uses its own session: a cache write never joins, and is never rolled back
    with, the checkout transaction.
    """

    def __init__(self, session_factory: Callable[[], Session] = db_session) -> None:
        self._session_factory = session_factory

    def get(self, key: str) -> CachedResult | None:
        with self._session_factory() as db:
            row = db.get(IdempotencyRecord, key)
            if row is None:
                return None
            record = CachedResult(
                key=row.key,
                result=dict(row.result_json or {}),
                expires_at=row.expires_at.replace(tzinfo=None),
                request_hash=row.request_hash,
            )
        if record.is_expired:
            return None
        return record

    def set(
        self,
        key: str,
        result: dict[str, Any],
        ttl: timedelta = DEFAULT_TTL,
        request_hash: str | None = None,
    ) -> bool:
        now = datetime.utcnow()
        with self._session_factory() as db:
            existing = db.get(IdempotencyRecord, key)
            if existing is not None:
                if existing.expires_at.replace(tzinfo=None) > now:
                    return False
                db.delete(existing)
                db.flush()

            db.add(
                IdempotencyRecord(
                    key=key,
                    request_hash=request_hash,
                    result_json=result,
                    expires_at=now + ttl,
                    created_at=now,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # A concurrent writer stored the key first; first writer wins.
                db.rollback()
                return False
        return True

    def purge_expired(self) -> int:
        with self._session_factory() as db:
            result = db.execute(
                delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= datetime.utcnow())
            )
            db.commit()
        purged = int(result.rowcount or 0)
        logger.info("idempotency_purged", count=purged)
        return purged


memory_cache = InMemoryIdempotencyCache()


def default_ttl() -> timedelta:
    raw = os.getenv("CHECKOUT_IDEMPOTENCY_TTL_HOURS", "").strip()
    if not raw:
        return DEFAULT_TTL
    try:
        hours = float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid CHECKOUT_IDEMPOTENCY_TTL_HOURS={raw!r}.") from e
    if hours <= 0:
        raise ValueError("CHECKOUT_IDEMPOTENCY_TTL_HOURS must be positive.")
    return timedelta(hours=hours)


def get_idempotency_cache() -> IdempotencyCache:
    """Select the cache backend. Defaults to the shared database table."""

    backend = os.getenv("CHECKOUT_IDEMPOTENCY_BACKEND", "db").strip().lower()

    if backend == "db":
        return SqlIdempotencyCache()

    if backend == "memory":
        return memory_cache

    raise ValueError(f"Unknown CHECKOUT_IDEMPOTENCY_BACKEND={backend!r}. Expected db or memory.")
