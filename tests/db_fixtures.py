"""Shared setup for the test modules: an in-memory database and row factories."""
import os
import sys
from datetime import datetime, timedelta

# Add parent directory to path to import modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENTITLEMENT_CACHE_TTL", "0")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_webhook_secret")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from db.init import init_db
from models.package import Package
from models.permission import Permission
from models.subscription import Subscription
from utils.deps import CurrentUser

USER = CurrentUser(profile_id="profile-user", email="user@example.com", role="user")
OTHER_USER = CurrentUser(profile_id="profile-other", email="other@example.com", role="user")
ADMIN = CurrentUser(profile_id="profile-admin", email="admin@example.com", role="admin")


def make_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(seed=False, bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def add_permission(db, name="Basic Access", **flags):
    permission = Permission(permission_name=name, **flags)
    db.add(permission)
    db.commit()
    return permission


def add_package(db, permission, slug="basic-monthly", type="monthly", plan_code=None, is_active=True):
    package = Package(
        package_name=slug.replace("-", " ").title(),
        slug=slug,
        type=type,
        permission_id=permission.id,
        paystack_plan_code=plan_code,
        is_active=is_active,
    )
    db.add(package)
    db.commit()
    return package


def add_subscription(db, profile_id, package, start_date=None, end_date=None, status="active", **extra):
    start_date = start_date or datetime(2024, 1, 1)
    sub = Subscription(
        profile_id=profile_id,
        package_id=package.id,
        start_date=start_date,
        end_date=end_date or start_date + timedelta(days=30),
        status=status,
        **extra,
    )
    db.add(sub)
    db.commit()
    return sub
