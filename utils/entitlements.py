"""
Entitlement resolution: which record types a profile may use.

A subscription grants its package's permission flags while it is stored as
active AND its end_date is still in the future. The end_date check happens
here, at read time, so an overdue row that no sweep has marked expired yet
grants nothing.

Results are cached per profile for ENTITLEMENT_CACHE_TTL seconds. Every
local write to a subscription calls invalidate_entitlements(), so the TTL
only bounds staleness against writes made by other processes. Expired
entries are pruned on every write and at most ENTITLEMENT_CACHE_MAX profiles
are held.
"""
import os
import time
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple
from sqlalchemy.orm import Session
from models.package import Package
from models.permission import Permission, FEATURE_FLAGS
from models.subscription import Subscription, ACTIVE
from utils.clock import utcnow

logger = logging.getLogger(__name__)

ENTITLEMENT_CACHE_TTL = float(os.getenv("ENTITLEMENT_CACHE_TTL", "30"))
ENTITLEMENT_CACHE_MAX = int(os.getenv("ENTITLEMENT_CACHE_MAX", "10000"))

_cache: Dict[str, Tuple[float, "Entitlements"]] = {}


@dataclass(frozen=True)
class Entitlements:
    flags: Dict[str, bool] = field(default_factory=lambda: {flag: False for flag in FEATURE_FLAGS})
    active_subscriptions: int = 0
    is_admin: bool = False

    def has_permission(self, flag: str) -> bool:
        if self.is_admin:
            return True
        return bool(self.flags.get(flag, False))

    @property
    def has_active_subscription(self) -> bool:
        return self.is_admin or self.active_subscriptions > 0

    def as_dict(self) -> dict:
        data = {flag: self.has_permission(flag) for flag in FEATURE_FLAGS}
        data["active_subscriptions"] = self.active_subscriptions
        return data


ADMIN_ENTITLEMENTS = Entitlements(
    flags={flag: True for flag in FEATURE_FLAGS},
    active_subscriptions=0,
    is_admin=True,
)


def resolve_entitlements(db: Session, profile_id: str, now: Optional[datetime] = None) -> Entitlements:
    """OR the permission flags of every qualifying subscription of a profile."""
    now = now or utcnow()

    rows = (
        db.query(Subscription.id, *[getattr(Permission, flag) for flag in FEATURE_FLAGS])
        .join(Package, Subscription.package_id == Package.id)
        .join(Permission, Package.permission_id == Permission.id)
        .filter(
            Subscription.profile_id == profile_id,
            Subscription.status == ACTIVE,
            Subscription.end_date > now,
        )
        .all()
    )

    flags = {flag: False for flag in FEATURE_FLAGS}
    for row in rows:
        for flag in FEATURE_FLAGS:
            if getattr(row, flag):
                flags[flag] = True

    return Entitlements(flags=flags, active_subscriptions=len(rows))


def get_entitlements(db: Session, profile_id: str, now: Optional[datetime] = None) -> Entitlements:
    """resolve_entitlements behind the per-profile TTL cache."""
    if ENTITLEMENT_CACHE_TTL <= 0 or now is not None:
        return resolve_entitlements(db, profile_id, now=now)

    cached = _cache.get(profile_id)
    if cached and cached[0] > time.monotonic():
        return cached[1]

    result = resolve_entitlements(db, profile_id)
    _store(profile_id, result)
    return result


def _store(profile_id: str, result: Entitlements) -> None:
    now = time.monotonic()
    for key in [key for key, (expires, _) in _cache.items() if expires <= now]:
        del _cache[key]
    _cache.pop(profile_id, None)
    # Entries share one TTL, so insertion order is expiry order
    while len(_cache) >= ENTITLEMENT_CACHE_MAX > 0:
        del _cache[next(iter(_cache))]
    _cache[profile_id] = (now + ENTITLEMENT_CACHE_TTL, result)


def entitlements_for(db: Session, user, now: Optional[datetime] = None) -> Entitlements:
    # Admins bypass subscription checks entirely
    if user.is_admin:
        return ADMIN_ENTITLEMENTS
    return get_entitlements(db, user.profile_id, now=now)


def invalidate_entitlements(profile_id: Optional[str]) -> None:
    if profile_id and _cache.pop(profile_id, None) is not None:
        logger.debug(f"Invalidated cached entitlements for {profile_id}")


def clear_entitlement_cache() -> None:
    _cache.clear()
