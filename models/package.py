from sqlalchemy import Column, String, Boolean, ForeignKey, TIMESTAMP
from sqlalchemy.orm import relationship
from db.init import Base
from utils.clock import utcnow, new_id

PACKAGE_TYPES = ("monthly", "yearly")

class Package(Base):
    __tablename__ = "app_packages"

    id = Column(String(36), primary_key=True, default=new_id)
    package_name = Column(String(150), nullable=False)
    slug = Column(String(150), unique=True, index=True, nullable=False)
    type = Column(String(20), nullable=False)  # monthly / yearly
    permission_id = Column(String(36), ForeignKey("app_permissions.id"), nullable=False, index=True)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)  # soft-delete flag
    paystack_plan_code = Column(String(100), nullable=True, index=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow, index=True)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    permission = relationship("Permission", lazy="joined")
