import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from db.init import get_db
from models.package import Package
from models.permission import Permission
from utils.deps import CurrentUser, admin_required
from utils.errors import ValidationError, NotFoundError, ConflictError
from utils.pagination import DEFAULT_LIMIT, MAX_LIMIT, decode_cursor, paginate
from utils.responses import success_response, row_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(admin_required)])

class PermissionCreate(BaseModel):
    permission_name: str = Field(min_length=1, max_length=150)
    psira_access: bool = False
    firearm_access: bool = False
    vehicle_access: bool = False
    certificate_access: bool = False
    drivers_access: bool = False

class PermissionUpdate(BaseModel):
    permission_name: Optional[str] = Field(None, min_length=1, max_length=150)
    psira_access: Optional[bool] = None
    firearm_access: Optional[bool] = None
    vehicle_access: Optional[bool] = None
    certificate_access: Optional[bool] = None
    drivers_access: Optional[bool] = None


@router.get("/")
def list_permissions(
    cursor: Optional[str] = None,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    if id:
        permission = db.query(Permission).filter(Permission.id == id).first()
        if not permission:
            raise NotFoundError("Permission not found")
        return success_response({"permission": row_to_dict(permission)})

    rows, next_cursor = paginate(db.query(Permission), Permission, decode_cursor(cursor), limit)
    return success_response(
        {"permissions": [row_to_dict(p) for p in rows]},
        next_cursor=next_cursor,
        paginated=True,
    )


@router.post("/")
def create_permission(data: PermissionCreate, db: Session = Depends(get_db)):
    permission = Permission(**data.model_dump())
    db.add(permission)
    db.commit()
    db.refresh(permission)
    return success_response({"permission": row_to_dict(permission)}, status_code=201)


@router.patch("/{id}")
def update_permission(id: str, data: PermissionUpdate, db: Session = Depends(get_db)):
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("At least one field must be provided")

    permission = db.query(Permission).filter(Permission.id == id).first()
    if not permission:
        raise NotFoundError("Permission not found")
    for k, v in changes.items():
        setattr(permission, k, v)
    db.commit()
    db.refresh(permission)
    return success_response({"permission": row_to_dict(permission)})


@router.delete("/{id}")
def delete_permission(id: str, db: Session = Depends(get_db), user: CurrentUser = Depends(admin_required)):
    permission = db.query(Permission).filter(Permission.id == id).first()
    if not permission:
        raise NotFoundError("Permission not found")

    # Packages keep their permission even when deactivated
    linked = db.query(Package.id).filter(Package.permission_id == id).count()
    if linked:
        raise ConflictError(f"Permission is linked to {linked} package(s)")

    db.delete(permission)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Permission is linked to packages")
    logger.info(f"Admin {user.profile_id} deleted permission {id}")
    return success_response({"message": "Permission deleted successfully"})
