"""Seed the default payment methods. Safe to run repeatedly."""

import logging

from sqlalchemy.orm import Session

from storefront_payments.database import Base, SessionLocal, engine
from storefront_payments.models import PaymentMethod

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_METHODS = [
    {"name": "alipay", "display_name": "Alipay", "icon": "alipay", "is_active": True, "sort_order": 1},
    {"name": "wechat", "display_name": "WeChat Pay", "icon": "wechat", "is_active": True, "sort_order": 2},
    {"name": "credit_card", "display_name": "Credit Card", "icon": "credit-card", "is_active": True, "sort_order": 3},
    {"name": "paypal", "display_name": "PayPal", "icon": "paypal", "is_active": False, "sort_order": 4},
]


def seed_payment_methods(db: Session) -> int:
    """Insert missing default methods; returns how many were added."""
    existing = {name for (name,) in db.query(PaymentMethod.name).all()}
    added = 0
    for values in DEFAULT_PAYMENT_METHODS:
        if values["name"] in existing:
            continue
        db.add(PaymentMethod(**values))
        added += 1
    db.commit()
    logger.info(f"Seeded {added} payment method(s)")
    return added


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        seed_payment_methods(session)
    finally:
        session.close()
