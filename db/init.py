# db/init.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from dotenv import load_dotenv
import os

load_dotenv()

# ---- Database engine & Session ----
DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set in environment (.env)")

engine = create_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# ---- Base for ORM models ----
Base = declarative_base()


# ---- DB session dependency ----
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ---- Initialization & optional seeding ----
def init_db(seed: bool = True, bind=None):
    """
    Imports all model modules to register tables, creates them,
    and (optionally) seeds a default permission set with a monthly
    and a yearly package if no packages exist yet.
    """
    # Import models so their metadata is registered on Base
    from models import (  # noqa: F401
        permission,
        package,
        subscription,
        subscription_log,
        webhook_event,
    )

    # Create tables
    Base.metadata.create_all(bind=bind or engine)

    if seed:
        _seed_default_packages(bind or engine)


def _seed_default_packages(bind):
    """
    Insert a full-access permission set and two packages using it
    when the packages table is empty.
    """
    from sqlalchemy.orm import Session
    from models.package import Package
    from models.permission import Permission

    db: Session = Session(bind=bind)
    try:
        if db.query(Package).first():
            return

        full_access = Permission(
            permission_name="Full Access",
            psira_access=True,
            firearm_access=True,
            vehicle_access=True,
            certificate_access=True,
            drivers_access=True,
        )
        db.add(full_access)
        db.flush()

        db.add(
            Package(
                package_name="Full Access Monthly",
                slug="full-access-monthly",
                type="monthly",
                permission_id=full_access.id,
                description="Every record type, billed monthly",
                paystack_plan_code=os.getenv("PAYSTACK_MONTHLY_PLAN_CODE"),
            )
        )
        db.add(
            Package(
                package_name="Full Access Yearly",
                slug="full-access-yearly",
                type="yearly",
                permission_id=full_access.id,
                description="Every record type, billed yearly",
                paystack_plan_code=os.getenv("PAYSTACK_YEARLY_PLAN_CODE"),
            )
        )

        db.commit()
    finally:
        db.close()
