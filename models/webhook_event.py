from sqlalchemy import Column, Integer, String, TIMESTAMP
from db.init import Base
from utils.clock import utcnow

class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_key = Column(String(255), unique=True, nullable=False)  # "<event>:<gateway id>"
    event_type = Column(String(100), nullable=False)
    received_at = Column(TIMESTAMP, default=utcnow)
