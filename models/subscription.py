from sqlalchemy import Column, String, ForeignKey, TIMESTAMP, Index
from sqlalchemy.orm import relationship
from db.init import Base
from utils.clock import utcnow, new_id

ACTIVE = "active"
EXPIRED = "expired"
CANCELLED = "cancelled"
REFUNDED = "refunded"

SUBSCRIPTION_STATUSES = (ACTIVE, EXPIRED, CANCELLED, REFUNDED)
TERMINAL_STATUSES = (CANCELLED, REFUNDED)

class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_profile_status", "profile_id", "status"),
        Index("ix_subscriptions_created_at_id", "created_at", "id"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    profile_id = Column(String(36), nullable=False, index=True)
    package_id = Column(String(36), ForeignKey("app_packages.id"), nullable=False)
    start_date = Column(TIMESTAMP, nullable=False)
    end_date = Column(TIMESTAMP, nullable=False)
    status = Column(String(20), nullable=False, default=ACTIVE)  # active / expired / cancelled / refunded
    current_period_end = Column(TIMESTAMP, nullable=True)
    # Paystack correlation, filled in by webhooks
    transaction_reference = Column(String(255), unique=True, nullable=True)
    subscription_code = Column(String(255), nullable=True, index=True)
    customer_code = Column(String(255), nullable=True, index=True)
    customer_email = Column(String(255), nullable=True)  # billing email the owner checked out with
    email_token = Column(String(255), nullable=True)
    refunded_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    package = relationship("Package", lazy="joined")

    def effective_status(self, now=None) -> str:
        """Stored status, except an active row past its end_date reads as expired."""
        if self.status == ACTIVE and self.end_date <= (now or utcnow()):
            return EXPIRED
        return self.status
