from __future__ import annotations

import os

from services.checkout.app.db.database import get_engine
from services.checkout.app.db.models import Base
from services.checkout.app.log import get_logger

logger = get_logger("db")


def auto_create_enabled() -> bool:
    return os.getenv("CHECKOUT_DB_AUTO_CREATE", "true").strip().lower() in {"1", "true", "yes", "y"}


def init_db() -> None:
    """Create missing checkout tables. Existing tables are left untouched."""

    if not auto_create_enabled():
        logger.info("db_auto_create_skipped")
        return

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("db_schema_ready", dialect=engine.dialect.name, tables=len(Base.metadata.tables))
