"""
Subscription lifecycle actions: initialize, cancel, refund, change-plan,
plus the admin-only field override.

Every status write is a compare-and-set:

    UPDATE subscriptions SET ... WHERE id = :id AND status = :expected

so a concurrent webhook or a second request can never be clobbered. When
the update matches no row the subscription is re-read and the action is
evaluated again against what is stored now.

Money-moving calls go to Paystack first; the local row only changes after
the gateway has confirmed, so an UpstreamError leaves the subscription
exactly as it was and the caller can retry.
"""
import os
import uuid
import logging
from datetime import datetime, timedelta
from typing import Annotated, Optional, Union, Literal
from pydantic import BaseModel, Field, TypeAdapter, field_validator, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from models.package import Package
from models.subscription import (
    Subscription,
    ACTIVE,
    CANCELLED,
    REFUNDED,
    SUBSCRIPTION_STATUSES,
    TERMINAL_STATUSES,
)
from models.subscription_log import SubscriptionLog
from utils import paystack_client
from utils.clock import utcnow, to_naive_utc
from utils.entitlements import invalidate_entitlements
from utils.errors import ValidationError, ForbiddenError, NotFoundError, ConflictError, UpstreamError

logger = logging.getLogger(__name__)

REFUND_WINDOW = timedelta(days=int(os.getenv("REFUND_WINDOW_DAYS", "7")))
MAX_CAS_ATTEMPTS = 3

ACTIONS = ("initialize", "cancel", "refund", "change-plan")

# --- Action requests ---

class InitializeAction(BaseModel):
    action: Literal["initialize"]
    package_id: str
    callback_url: str
    reference: Optional[str] = None  # reuse to retry the same checkout

class CancelAction(BaseModel):
    action: Literal["cancel"]
    id: str

class RefundAction(BaseModel):
    action: Literal["refund"]
    id: str

class ChangePlanAction(BaseModel):
    action: Literal["change-plan"]
    id: str
    new_package_id: str
    callback_url: str
    reference: Optional[str] = None

ActionRequest = Annotated[
    Union[InitializeAction, CancelAction, RefundAction, ChangePlanAction],
    Field(discriminator="action"),
]

_action_adapter = TypeAdapter(ActionRequest)


class SubscriptionUpdate(BaseModel):
    package_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[Literal["active", "expired", "cancelled", "refunded"]] = None

    @field_validator("package_id", "start_date", "end_date", "status", mode="before")
    @classmethod
    def not_null(cls, value):
        # Fields may be omitted but never cleared
        if value is None:
            raise ValueError("may not be null")
        return value


def _describe_validation_error(e: PydanticValidationError) -> str:
    parts = []
    for err in e.errors():
        field = err["loc"][-1] if err.get("loc") else "body"
        parts.append(f"{field}: {err['msg']}")
    return "; ".join(parts)


def parse_action(action: Optional[str], subscription_id: Optional[str], body: Optional[dict]) -> ActionRequest:
    """
    Build the typed request for one action from the query selector, the
    optional ?id= and the JSON body. Unknown selectors are a client error.
    """
    if action not in ACTIONS:
        raise ValidationError(f"Invalid action '{action}'. Expected one of: {', '.join(ACTIONS)}")

    payload = {k: v for k, v in (body or {}).items() if k not in ("action", "id")}
    payload["action"] = action
    if subscription_id:
        payload["id"] = subscription_id

    try:
        return _action_adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise ValidationError(_describe_validation_error(e))


def perform_action(db: Session, user, request: ActionRequest, now: Optional[datetime] = None) -> dict:
    handler = _HANDLERS.get(type(request))
    if handler is None:
        raise ValidationError(f"Unsupported action '{request.action}'")
    return handler(db, user, request, now)


# --- Helpers ---

def _new_reference() -> str:
    return f"sub_{uuid.uuid4().hex}"


def get_owned_subscription(db: Session, user, subscription_id: str) -> Subscription:
    sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if not sub:
        raise NotFoundError("Subscription not found")
    if not user.is_admin and sub.profile_id != user.profile_id:
        raise ForbiddenError("You do not own this subscription")
    return sub


def _get_active_package(db: Session, package_id: str) -> Package:
    package = (
        db.query(Package)
        .filter(Package.id == package_id, Package.is_active.is_(True))
        .first()
    )
    if not package:
        raise NotFoundError("Package not found")
    return package


def compare_and_set(db: Session, subscription_id: str, expected_status: str, values: dict) -> bool:
    """Apply `values` only if the row still has `expected_status`."""
    values = dict(values)
    values["updated_at"] = utcnow()
    updated = (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id, Subscription.status == expected_status)
        .update(values, synchronize_session=False)
    )
    return updated == 1


def log_transition(db: Session, subscription_id, profile_id, action: str, actor: str, from_status=None, to_status=None):
    db.add(
        SubscriptionLog(
            subscription_id=subscription_id,
            profile_id=profile_id,
            action=action,
            actor=actor,
            from_status=from_status,
            to_status=to_status,
        )
    )


def _start_checkout(email: Optional[str], reference: str, callback_url: str, metadata: dict, package: Package) -> dict:
    if not email:
        raise ValidationError("An email address is required to start a checkout")

    result = paystack_client.initialize_transaction(
        email=email,
        reference=reference,
        callback_url=callback_url,
        metadata=metadata,
        plan_code=package.paystack_plan_code,
    )
    if not result.get("success"):
        raise UpstreamError(f"Failed to initialize payment with provider: {result.get('error')}")

    return {
        "authorization_url": result.get("authorization_url"),
        "reference": result.get("reference"),
        "access_code": result.get("access_code"),
    }


def _billing_email(user, sub: Subscription) -> Optional[str]:
    """The owner pays for a plan change, even when an admin starts it."""
    if sub.customer_email:
        return sub.customer_email
    if sub.profile_id == user.profile_id:
        return user.email
    raise ValidationError("No billing email is on file for the subscription owner")


# --- Actions ---

def initialize_subscription(db: Session, user, package_id: str, callback_url: str, reference: Optional[str] = None) -> dict:
    """
    Open a Paystack checkout for a package. No subscription row exists
    until the gateway confirms the charge through a webhook.
    """
    package = _get_active_package(db, package_id)
    reference = reference or _new_reference()

    checkout = _start_checkout(
        user.email,
        reference,
        callback_url,
        {"action": "initialize", "profile_id": user.profile_id, "package_id": package.id},
        package,
    )

    log_transition(db, None, user.profile_id, "INITIALIZE", user.profile_id)
    db.commit()
    logger.info(f"Profile {user.profile_id} started checkout {checkout['reference']} for package {package.slug}")
    return checkout


def cancel_subscription(db: Session, user, subscription_id: str, now: Optional[datetime] = None) -> dict:
    gateway_disabled = False

    for _ in range(MAX_CAS_ATTEMPTS):
        sub = get_owned_subscription(db, user, subscription_id)
        if sub.status in TERMINAL_STATUSES:
            raise ConflictError(f"Subscription is already {sub.status}")

        expected = sub.status

        # Stop renewals at the gateway before the local row changes
        if sub.subscription_code and sub.email_token and not gateway_disabled:
            result = paystack_client.disable_subscription(sub.subscription_code, sub.email_token)
            if not result.get("success"):
                raise UpstreamError(f"Failed to cancel subscription with provider: {result.get('error')}")
            gateway_disabled = True

        profile_id = sub.profile_id
        if compare_and_set(db, subscription_id, expected, {"status": CANCELLED}):
            log_transition(db, subscription_id, profile_id, "CANCEL", user.profile_id, expected, CANCELLED)
            db.commit()
            invalidate_entitlements(profile_id)
            logger.info(f"Subscription {subscription_id} cancelled by {user.profile_id}")
            return {"message": "Subscription cancelled successfully"}

        db.rollback()
        logger.info(f"Subscription {subscription_id} changed while cancelling; re-evaluating")

    raise ConflictError("Subscription was modified concurrently, please retry")


def refund_subscription(db: Session, user, subscription_id: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    sub = get_owned_subscription(db, user, subscription_id)

    if sub.status in TERMINAL_STATUSES:
        raise ConflictError(f"Subscription is already {sub.status}")
    if sub.status != ACTIVE:
        raise ValidationError("Only active subscriptions can be refunded")
    if now - sub.start_date > REFUND_WINDOW:
        raise ValidationError(f"Refunds are only available within {REFUND_WINDOW.days} days of the start date")
    if not sub.transaction_reference:
        raise ValidationError("Subscription has no confirmed payment to refund")

    result = paystack_client.refund_transaction(sub.transaction_reference)
    if not result.get("success"):
        raise UpstreamError(f"Failed to process refund with provider: {result.get('error')}")

    if sub.subscription_code and sub.email_token:
        disabled = paystack_client.disable_subscription(sub.subscription_code, sub.email_token)
        if not disabled.get("success"):
            # The money is already back with the customer; the row still moves to refunded
            logger.warning(f"Refunded {subscription_id} but could not disable renewals: {disabled.get('error')}")

    profile_id = sub.profile_id
    if compare_and_set(db, subscription_id, ACTIVE, {"status": REFUNDED, "refunded_at": now}):
        log_transition(db, subscription_id, profile_id, "REFUND", user.profile_id, ACTIVE, REFUNDED)
        db.commit()
        invalidate_entitlements(profile_id)
        logger.info(f"Subscription {subscription_id} refunded by {user.profile_id}")
        return {"message": "Subscription refunded successfully"}

    db.rollback()
    current = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    invalidate_entitlements(profile_id)
    if current and current.status == REFUNDED:
        # refund.processed webhook got there first
        return {"message": "Subscription refunded successfully"}

    logger.error(
        f"Refund for {subscription_id} accepted by Paystack but the row is now "
        f"{current.status if current else 'missing'}"
    )
    raise ConflictError("Subscription was modified while the refund was processed")


def change_plan(
    db: Session,
    user,
    subscription_id: str,
    new_package_id: str,
    callback_url: str,
    reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Open a checkout for another package. The existing row is left alone;
    the confirming webhook cancels it and creates the replacement.
    """
    sub = get_owned_subscription(db, user, subscription_id)
    if sub.status in TERMINAL_STATUSES:
        raise ConflictError(f"Subscription is already {sub.status}")
    if sub.effective_status(now) != ACTIVE:
        raise ValidationError("Only active subscriptions can change plan")

    package = _get_active_package(db, new_package_id)
    if package.id == sub.package_id:
        raise ValidationError("Subscription is already on this package")

    checkout = _start_checkout(
        _billing_email(user, sub),
        reference or _new_reference(),
        callback_url,
        {
            "action": "change-plan",
            "subscription_id": sub.id,
            "profile_id": sub.profile_id,
            "package_id": package.id,
        },
        package,
    )

    log_transition(db, sub.id, sub.profile_id, "CHANGE_PLAN", user.profile_id, sub.status, sub.status)
    db.commit()
    logger.info(f"Subscription {sub.id} change to package {package.slug} started by {user.profile_id}")
    return checkout


def update_subscription(db: Session, user, subscription_id: str, changes: dict) -> Subscription:
    """
    Admin override of package, dates or status. Terminal rows may be
    changed here and only here.
    """
    if not changes:
        raise ValidationError("At least one field must be provided")

    values = {}
    for key, value in changes.items():
        if value is None:
            raise ValidationError(f"{key} may not be null")
        if key in ("start_date", "end_date"):
            value = to_naive_utc(value)
        values[key] = value

    if "package_id" in values:
        if not db.query(Package).filter(Package.id == values["package_id"]).first():
            raise ValidationError("Invalid package_id")
    if "status" in values and values["status"] not in SUBSCRIPTION_STATUSES:
        raise ValidationError("Invalid status")

    for _ in range(MAX_CAS_ATTEMPTS):
        sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
        if not sub:
            raise NotFoundError("Subscription not found")

        start = values.get("start_date") or sub.start_date
        end = values.get("end_date") or sub.end_date
        if end <= start:
            raise ValidationError("end_date must be after start_date")

        row_values = dict(values)
        if row_values.get("status") == REFUNDED and not sub.refunded_at:
            row_values["refunded_at"] = utcnow()

        expected = sub.status
        if compare_and_set(db, subscription_id, expected, row_values):
            log_transition(db, subscription_id, sub.profile_id, "ADMIN_UPDATE", user.profile_id, expected, row_values.get("status", expected))
            db.commit()
            invalidate_entitlements(sub.profile_id)
            db.refresh(sub)
            return sub

        db.rollback()

    raise ConflictError("Subscription was modified concurrently, please retry")


_HANDLERS = {
    InitializeAction: lambda db, user, req, now: initialize_subscription(
        db, user, req.package_id, req.callback_url, reference=req.reference
    ),
    CancelAction: lambda db, user, req, now: cancel_subscription(db, user, req.id, now=now),
    RefundAction: lambda db, user, req, now: refund_subscription(db, user, req.id, now=now),
    ChangePlanAction: lambda db, user, req, now: change_plan(
        db, user, req.id, req.new_package_id, req.callback_url, reference=req.reference, now=now
    ),
}
