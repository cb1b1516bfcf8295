from __future__ import annotations

import argparse

from services.checkout.app.db.init_db import init_db
from services.checkout.app.log import configure_logging
from services.checkout.app.services.idempotency import SqlIdempotencyCache


def main() -> int:
    parser = argparse.ArgumentParser(description="Delete expired idempotency records")
    parser.parse_args()

    configure_logging()
    init_db()

    purged = SqlIdempotencyCache().purge_expired()
    print(f"Purged {purged} expired idempotency records")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
