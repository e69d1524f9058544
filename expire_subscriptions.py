"""
Mark overdue subscriptions as expired.

Entitlements never depend on this sweep (they check end_date at read time);
it only keeps the stored status tidy for reporting. Safe to run from cron
at any interval and concurrently with the API: only rows that are still
active and past their end_date are touched.

Usage:
    python expire_subscriptions.py
"""
import logging
from datetime import datetime
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

from sqlalchemy.orm import Session
from db.init import SessionLocal, init_db
from models.subscription import Subscription, ACTIVE, EXPIRED
from models.subscription_log import SubscriptionLog
from utils.clock import utcnow
from utils.entitlements import invalidate_entitlements

logger = logging.getLogger(__name__)


def expire_overdue(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    overdue = (
        db.query(Subscription.id, Subscription.profile_id)
        .filter(Subscription.status == ACTIVE, Subscription.end_date <= now)
        .all()
    )

    expired = 0
    touched = set()
    for sub_id, profile_id in overdue:
        # Same guard as every other writer: skip rows someone else changed
        updated = (
            db.query(Subscription)
            .filter(
                Subscription.id == sub_id,
                Subscription.status == ACTIVE,
                Subscription.end_date <= now,
            )
            .update({"status": EXPIRED, "updated_at": now}, synchronize_session=False)
        )
        if updated:
            db.add(
                SubscriptionLog(
                    subscription_id=sub_id,
                    profile_id=profile_id,
                    action="EXPIRE",
                    actor="system",
                    from_status=ACTIVE,
                    to_status=EXPIRED,
                )
            )
            expired += 1
            touched.add(profile_id)

    db.commit()
    for profile_id in touched:
        invalidate_entitlements(profile_id)
    return expired


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db(seed=False)
    db = SessionLocal()
    try:
        count = expire_overdue(db)
        logger.info(f"Expired {count} subscription(s)")
    finally:
        db.close()
