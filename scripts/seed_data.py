from __future__ import annotations

import argparse

from services.checkout.app.db.database import db_session
from services.checkout.app.db.init_db import init_db
from services.checkout.app.db.seed import seed_demo_store


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a demo storefront for local checkout")
    parser.add_argument("--store-id", default="store-1")
    args = parser.parse_args()

    init_db()

    db = db_session()
    try:
        demo = seed_demo_store(db, store_id=args.store_id)
        print(f"Seeded store={demo.store_id} customer={demo.customer_id} product={demo.product_id}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
