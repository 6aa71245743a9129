"""Cancel appointments that stayed in awaiting_payment past the configured limit.

Usage:
    PAYMENT_PENDING_EXPIRY_MINUTES=1440 python -m appointd.expire_payments
"""
import logging
import sys

from appointd.database import SessionLocal
from appointd.services.expiry import expire_stale_payment_pending
from appointd.services.notifications import dispatcher


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    db = SessionLocal()
    try:
        expired = expire_stale_payment_pending(db)
    finally:
        db.close()
        dispatcher.shutdown(wait=True)
    print(f"Expired {len(expired)} appointment(s).", file=sys.stdout)


if __name__ == "__main__":
    main()
