import re
import logging
from typing import Optional, Literal
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from db.init import get_db
from models.package import Package, PACKAGE_TYPES
from models.permission import Permission
from utils.deps import CurrentUser, get_current_user, admin_required
from utils.errors import ValidationError, NotFoundError, ConflictError
from utils.pagination import DEFAULT_LIMIT, MAX_LIMIT, decode_cursor, paginate
from utils.responses import success_response, row_to_dict

logger = logging.getLogger(__name__)

router = APIRouter()

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

# --- Pydantic Models ---

class PackageCreate(BaseModel):
    package_name: str = Field(min_length=1, max_length=150)
    slug: str = Field(min_length=1, max_length=150)
    type: Literal["monthly", "yearly"]
    permission_id: str
    description: Optional[str] = None
    paystack_plan_code: Optional[str] = None

class PackageUpdate(BaseModel):
    package_name: Optional[str] = Field(None, min_length=1, max_length=150)
    slug: Optional[str] = Field(None, min_length=1, max_length=150)
    type: Optional[Literal["monthly", "yearly"]] = None
    permission_id: Optional[str] = None
    description: Optional[str] = None
    paystack_plan_code: Optional[str] = None
    is_active: Optional[bool] = None


def package_to_dict(package: Package) -> dict:
    item = row_to_dict(package)
    if package.permission is not None:
        item["app_permissions"] = row_to_dict(package.permission)
    return item


def _check_slug(db: Session, slug: str, exclude_id: Optional[str] = None):
    if not SLUG_PATTERN.match(slug):
        raise ValidationError("Slug may only contain lowercase letters, digits and single hyphens")
    query = db.query(Package).filter(Package.slug == slug)
    if exclude_id:
        query = query.filter(Package.id != exclude_id)
    if query.first():
        raise ConflictError("Package with this slug already exists")


def _check_permission(db: Session, permission_id: str):
    if not db.query(Permission).filter(Permission.id == permission_id).first():
        raise ValidationError("Invalid permission_id")


# --- Endpoints ---

@router.get("/")
def list_packages(
    cursor: Optional[str] = None,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    is_active: Optional[bool] = None,
    type: Optional[str] = None,
    id: Optional[str] = None,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """
    Packages with their permission sets. Non-admin users only ever see
    active packages.
    """
    query = db.query(Package)
    if not user.is_admin:
        query = query.filter(Package.is_active.is_(True))

    if id:
        package = query.filter(Package.id == id).first()
        if not package:
            raise NotFoundError("Package not found")
        return success_response({"package": package_to_dict(package)})

    if type:
        if type not in PACKAGE_TYPES:
            raise ValidationError(f"Invalid package type '{type}'")
        query = query.filter(Package.type == type)
    if is_active is not None and user.is_admin:
        query = query.filter(Package.is_active.is_(is_active))

    rows, next_cursor = paginate(query, Package, decode_cursor(cursor), limit)
    return success_response(
        {"packages": [package_to_dict(p) for p in rows]},
        next_cursor=next_cursor,
        paginated=True,
    )


@router.get("/slug/{slug}")
def get_package_by_slug(slug: str, db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    package = (
        db.query(Package)
        .filter(Package.slug == slug, Package.is_active.is_(True))
        .first()
    )
    if not package:
        raise NotFoundError("Package not found")
    return success_response({"package": package_to_dict(package)})


@router.post("/")
def create_package(data: PackageCreate, db: Session = Depends(get_db), user: CurrentUser = Depends(admin_required)):
    _check_slug(db, data.slug)
    _check_permission(db, data.permission_id)

    package = Package(**data.model_dump())
    db.add(package)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Package with this slug already exists")
    db.refresh(package)
    logger.info(f"Admin {user.profile_id} created package {package.slug}")
    return success_response({"package": package_to_dict(package)}, status_code=201)


@router.patch("/{id}")
def update_package(id: str, data: PackageUpdate, db: Session = Depends(get_db), user: CurrentUser = Depends(admin_required)):
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("At least one field must be provided")

    package = db.query(Package).filter(Package.id == id).first()
    if not package:
        raise NotFoundError("Package not found")

    if changes.get("slug"):
        _check_slug(db, changes["slug"], exclude_id=id)
    if changes.get("permission_id"):
        _check_permission(db, changes["permission_id"])

    for k, v in changes.items():
        setattr(package, k, v)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Package with this slug already exists")
    db.refresh(package)
    return success_response({"package": package_to_dict(package)})


@router.delete("/{id}")
def deactivate_package(id: str, db: Session = Depends(get_db), user: CurrentUser = Depends(admin_required)):
    # Soft delete: subscriptions keep referencing the row
    package = db.query(Package).filter(Package.id == id).first()
    if not package:
        raise NotFoundError("Package not found")
    package.is_active = False
    db.commit()
    logger.info(f"Admin {user.profile_id} deactivated package {package.slug}")
    return success_response({"message": "Package deactivated successfully"})
