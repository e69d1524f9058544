from sqlalchemy import Column, Integer, String, TIMESTAMP
from db.init import Base
from utils.clock import utcnow

class SubscriptionLog(Base):
    __tablename__ = "subscription_logs"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(String(36), nullable=True, index=True)
    profile_id = Column(String(36), nullable=True)
    action = Column(String(50), nullable=False)  # "INITIALIZE", "CANCEL", "REFUND", "CHANGE_PLAN", "RENEW", ...
    actor = Column(String(100), nullable=False)  # profile id of the caller, or "paystack"
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    created_at = Column(TIMESTAMP, default=utcnow)
