from sqlalchemy import Column, String, Boolean, TIMESTAMP
from db.init import Base
from utils.clock import utcnow, new_id

FEATURE_FLAGS = (
    "psira_access",
    "firearm_access",
    "vehicle_access",
    "certificate_access",
    "drivers_access",
)

class Permission(Base):
    __tablename__ = "app_permissions"

    id = Column(String(36), primary_key=True, default=new_id)
    permission_name = Column(String(150), nullable=False)
    psira_access = Column(Boolean, nullable=False, default=False)
    firearm_access = Column(Boolean, nullable=False, default=False)
    vehicle_access = Column(Boolean, nullable=False, default=False)
    certificate_access = Column(Boolean, nullable=False, default=False)
    drivers_access = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow, index=True)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)
