from dataclasses import dataclass
from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from db.init import get_db
from models.permission import FEATURE_FLAGS
from utils.errors import AuthError, ForbiddenError
from utils.entitlements import entitlements_for
from utils.security import decode_token, role_from_claims

bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class CurrentUser:
    profile_id: str
    email: Optional[str]
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> CurrentUser:

    if credentials is None or not credentials.scheme.lower() == "bearer":
        raise AuthError("Not authenticated")
    token = credentials.credentials
    payload = decode_token(token)
    if not payload or not payload.get("sub"):
        raise AuthError("Invalid token")
    return CurrentUser(
        profile_id=str(payload["sub"]),
        email=payload.get("email"),
        role=role_from_claims(payload),
    )

def role_required(*roles: str):
    def wrapper(user: CurrentUser = Depends(get_current_user)):
        if user.role not in roles:
            raise ForbiddenError("Not enough privileges")
        return user
    return wrapper

admin_required = role_required(ADMIN_ROLE)


def require_permission(flag: str):
    """Dependency record routers use to gate a route on one entitlement flag; admins always pass."""
    if flag not in FEATURE_FLAGS:
        raise ValueError(f"Unknown permission flag: {flag}")

    def wrapper(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
        if not entitlements_for(db, user).has_permission(flag):
            raise ForbiddenError(f"Your subscription does not include {flag}")
        return user
    return wrapper


def require_active_subscription(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    """Dependency record routers use to require any in-force subscription; admins always pass."""
    if not entitlements_for(db, user).has_active_subscription:
        raise ForbiddenError("An active subscription is required")
    return user
