from typing import Optional, Dict, Any
from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
from db.init import get_db
from models.subscription import Subscription, ACTIVE, EXPIRED, SUBSCRIPTION_STATUSES
from routers.package import package_to_dict
from utils.clock import utcnow
from utils.deps import CurrentUser, get_current_user, admin_required
from utils.entitlements import entitlements_for
from utils.errors import ValidationError
from utils.pagination import DEFAULT_LIMIT, MAX_LIMIT, decode_cursor, paginate
from utils.responses import success_response, row_to_dict
from utils.subscription_lifecycle import (
    SubscriptionUpdate,
    get_owned_subscription,
    parse_action,
    perform_action,
    update_subscription,
    cancel_subscription,
)
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


def subscription_to_dict(sub: Subscription, now=None) -> dict:
    item = row_to_dict(sub)
    item["status"] = sub.effective_status(now)
    if sub.package is not None:
        item["app_packages"] = package_to_dict(sub.package)
    return item


@router.get("/")
def list_subscriptions(
    status: Optional[str] = ACTIVE,
    cursor: Optional[str] = None,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    profile_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """
    Role-scoped subscription list: admins see every profile (or one, with
    `profile_id`), users their own. `status` filters on the effective
    status, so an active row past its end_date is listed under expired.
    """
    if status and status != "all" and status not in SUBSCRIPTION_STATUSES:
        raise ValidationError(f"Invalid status '{status}'")

    now = utcnow()
    query = db.query(Subscription)
    if not user.is_admin:
        query = query.filter(Subscription.profile_id == user.profile_id)
    elif profile_id:
        query = query.filter(Subscription.profile_id == profile_id)

    if status == ACTIVE:
        query = query.filter(Subscription.status == ACTIVE, Subscription.end_date > now)
    elif status == EXPIRED:
        query = query.filter(
            or_(
                Subscription.status == EXPIRED,
                and_(Subscription.status == ACTIVE, Subscription.end_date <= now),
            )
        )
    elif status and status != "all":
        query = query.filter(Subscription.status == status)

    rows, next_cursor = paginate(query, Subscription, decode_cursor(cursor), limit, sort_order)

    return success_response(
        {"subscriptions": [subscription_to_dict(sub, now) for sub in rows]},
        next_cursor=next_cursor,
        paginated=True,
    )


@router.get("/me/permissions")
def get_my_permissions(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """
    Feature flags and active subscription count for the caller.
    """
    entitlements = entitlements_for(db, user)
    return success_response({"permissions": entitlements.as_dict()})


@router.get("/me/current")
def get_my_current_subscription(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """
    The caller's in-force subscription with the latest end_date, or null.
    """
    now = utcnow()
    sub = (
        db.query(Subscription)
        .filter(
            Subscription.profile_id == user.profile_id,
            Subscription.status == ACTIVE,
            Subscription.end_date > now,
        )
        .order_by(Subscription.end_date.desc(), Subscription.id.desc())
        .first()
    )
    return success_response({"subscription": subscription_to_dict(sub, now) if sub else None})


@router.get("/{id}")
def get_subscription(
    id: str,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    sub = get_owned_subscription(db, user, id)
    return success_response({"subscription": subscription_to_dict(sub)})


@router.post("/")
def subscription_action(
    action: Optional[str] = None,
    id: Optional[str] = None,
    body: Optional[Dict[str, Any]] = Body(None),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """
    Dispatch one lifecycle action selected by ?action=.

    - initialize: body package_id, callback_url
    - cancel / refund: ?id=
    - change-plan: ?id=, body new_package_id, callback_url
    """
    try:
        request = parse_action(action, id, body)
        data = perform_action(db, user, request)
        return success_response(data)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Subscription action '{action}' failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to process subscription action")


@router.patch("/{id}")
def admin_update_subscription(
    id: str,
    data: SubscriptionUpdate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(admin_required),
):
    changes = data.model_dump(exclude_unset=True)
    sub = update_subscription(db, user, id, changes)
    logger.info(f"Admin {user.profile_id} updated subscription {id}: {sorted(changes)}")
    return success_response({"subscription": subscription_to_dict(sub)})


@router.delete("/{id}")
def admin_cancel_subscription(
    id: str,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(admin_required),
):
    return success_response(cancel_subscription(db, user, id))
