"""
Paystack webhook reconciliation.

Paystack delivers events at least once and in no particular order. Each
supported event is reduced to a key ("<event>:<gateway id>") which is
stored in webhook_events in the same transaction as the state change it
caused. A key that is already stored, or that collides on commit with a
concurrent delivery, is acknowledged without touching anything else.

Events that cannot be applied yet (e.g. subscription.create before the
charge that creates our row) raise RetryableWebhookError so the router
answers with a non-success status and Paystack redelivers later.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Optional, Set
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from models.package import Package
from models.subscription import Subscription, ACTIVE, CANCELLED, REFUNDED, TERMINAL_STATUSES
from models.webhook_event import WebhookEvent
from utils import paystack_client
from utils.clock import utcnow, parse_gateway_datetime
from utils.entitlements import invalidate_entitlements
from utils.errors import ValidationError, SignatureError
from utils.subscription_lifecycle import compare_and_set, log_transition

logger = logging.getLogger(__name__)

PAYSTACK_ACTOR = "paystack"

BILLING_PERIODS = {
    "monthly": timedelta(days=30),
    "yearly": timedelta(days=365),
}


class RetryableWebhookError(Exception):
    """The event is valid but cannot be applied now; Paystack should retry."""


def handle_webhook(db: Session, raw_body: bytes, signature: Optional[str], now: Optional[datetime] = None) -> dict:
    if not signature:
        logger.warning("Rejected Paystack webhook without signature header")
        raise ValidationError("Missing x-paystack-signature header")
    if not paystack_client.verify_signature(raw_body, signature):
        logger.warning("Rejected Paystack webhook with invalid signature")
        raise SignatureError("Invalid signature")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Malformed webhook body")

    if not isinstance(payload, dict) or not payload.get("event"):
        raise ValidationError("Webhook body must contain an event")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("Webhook data must be an object")

    return apply_event(db, payload["event"], data, now=now)


def event_key(event: str, data: dict) -> Optional[str]:
    if event == "charge.success":
        ident = data.get("reference") or data.get("id")
    elif event.startswith("subscription."):
        ident = data.get("subscription_code")
    elif event.startswith("refund."):
        ident = data.get("id") or data.get("transaction_reference")
    else:
        ident = data.get("id")
    if ident is None or ident == "":
        return None
    return f"{event}:{ident}"


def apply_event(db: Session, event: str, data: dict, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    handler = _EVENT_HANDLERS.get(event)
    key = event_key(event, data)

    if handler is None or key is None:
        logger.info(f"Ignoring Paystack event {event}")
        return {"received": True}

    if db.query(WebhookEvent).filter(WebhookEvent.event_key == key).first():
        logger.info(f"Duplicate Paystack event {key}; already processed")
        return {"received": True, "duplicate": True}

    db.add(WebhookEvent(event_key=key, event_type=event))
    try:
        touched = handler(db, data, now)
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the unique key
        db.rollback()
        logger.info(f"Paystack event {key} committed by a concurrent delivery")
        return {"received": True, "duplicate": True}
    except Exception:
        db.rollback()
        raise

    for profile_id in touched:
        invalidate_entitlements(profile_id)
    logger.info(f"Processed Paystack event {key}")
    return {"received": True}


# --- Helpers ---

def _metadata(data: dict) -> dict:
    metadata = data.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return {}
    return metadata if isinstance(metadata, dict) else {}


def _customer_code(data: dict) -> Optional[str]:
    return (data.get("customer") or {}).get("customer_code")


def _plan_code(data: dict) -> Optional[str]:
    plan = data.get("plan")
    if isinstance(plan, dict):
        return plan.get("plan_code")
    return None


def _find_by_customer_and_plan(db: Session, customer_code, plan_code, *criteria):
    if not customer_code or not plan_code:
        return None
    return (
        db.query(Subscription)
        .join(Package, Subscription.package_id == Package.id)
        .filter(
            Subscription.customer_code == customer_code,
            Package.paystack_plan_code == plan_code,
            *criteria,
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def _disable_at_gateway(subscription_code, email_token, reason: str) -> None:
    if not (subscription_code and email_token):
        return
    result = paystack_client.disable_subscription(subscription_code, email_token)
    if not result.get("success"):
        logger.warning(f"Could not disable Paystack subscription {subscription_code} ({reason}): {result.get('error')}")


# --- Event handlers ---

def _charge_success(db: Session, data: dict, now: datetime) -> Set[str]:
    metadata = _metadata(data)
    if metadata.get("action") in ("initialize", "change-plan"):
        return _confirm_checkout(db, data, metadata, now)
    if _plan_code(data):
        return _renew(db, data, now)
    logger.info(f"charge.success {data.get('reference')} has no subscription context")
    return set()


def _confirm_checkout(db: Session, data: dict, metadata: dict, now: datetime) -> Set[str]:
    reference = data.get("reference")
    if db.query(Subscription).filter(Subscription.transaction_reference == reference).first():
        return set()

    profile_id = metadata.get("profile_id")
    package = db.query(Package).filter(Package.id == metadata.get("package_id")).first()
    if not profile_id or not package:
        logger.error(f"charge.success {reference} references unknown profile/package {metadata}")
        return set()

    start = parse_gateway_datetime(data.get("paid_at") or data.get("paidAt")) or now
    end = start + BILLING_PERIODS.get(package.type, BILLING_PERIODS["monthly"])

    if metadata.get("action") == "change-plan":
        old = db.query(Subscription).filter(Subscription.id == metadata.get("subscription_id")).first()
        if old and old.profile_id == profile_id:
            if compare_and_set(db, old.id, ACTIVE, {"status": CANCELLED}):
                log_transition(db, old.id, profile_id, "CHANGE_PLAN_CANCEL", PAYSTACK_ACTOR, ACTIVE, CANCELLED)
                _disable_at_gateway(old.subscription_code, old.email_token, "replaced by plan change")
            else:
                logger.info(f"Replaced subscription {old.id} was no longer active")
        else:
            logger.warning(f"Plan change {reference} points at unknown subscription {metadata.get('subscription_id')}")

    sub = Subscription(
        profile_id=profile_id,
        package_id=package.id,
        start_date=start,
        end_date=end,
        status=ACTIVE,
        current_period_end=end,
        transaction_reference=reference,
        customer_code=_customer_code(data),
        customer_email=(data.get("customer") or {}).get("email"),
    )
    db.add(sub)
    db.flush()
    log_transition(db, sub.id, profile_id, "ACTIVATE", PAYSTACK_ACTOR, None, ACTIVE)
    logger.info(f"Activated subscription {sub.id} for profile {profile_id} ({package.slug})")
    return {profile_id}


def _renew(db: Session, data: dict, now: datetime) -> Set[str]:
    reference = data.get("reference")
    sub = _find_by_customer_and_plan(db, _customer_code(data), _plan_code(data))
    if not sub:
        logger.info(f"Renewal charge {reference} matches no subscription")
        return set()
    if sub.transaction_reference == reference:
        return set()
    if sub.status != ACTIVE:
        # A local cancel/refund is final; a late renewal does not revive it
        logger.info(f"Renewal charge {reference} ignored: subscription {sub.id} is {sub.status}")
        return set()

    paid_at = parse_gateway_datetime(data.get("paid_at") or data.get("paidAt")) or now
    old_end = sub.end_date
    new_end = max(old_end, paid_at) + BILLING_PERIODS.get(sub.package.type, BILLING_PERIODS["monthly"])

    updated = (
        db.query(Subscription)
        .filter(
            Subscription.id == sub.id,
            Subscription.status == ACTIVE,
            Subscription.end_date == old_end,
        )
        .update(
            {"end_date": new_end, "current_period_end": new_end, "updated_at": utcnow()},
            synchronize_session=False,
        )
    )
    if updated != 1:
        raise RetryableWebhookError(f"Subscription {sub.id} changed while renewing")

    log_transition(db, sub.id, sub.profile_id, "RENEW", PAYSTACK_ACTOR, ACTIVE, ACTIVE)
    logger.info(f"Renewed subscription {sub.id} until {new_end.isoformat()}")
    return {sub.profile_id}


def _subscription_create(db: Session, data: dict, now: datetime) -> Set[str]:
    code = data.get("subscription_code")
    if db.query(Subscription).filter(Subscription.subscription_code == code).first():
        return set()

    sub = _find_by_customer_and_plan(
        db, _customer_code(data), _plan_code(data), Subscription.subscription_code.is_(None)
    )
    if not sub:
        raise RetryableWebhookError(f"No subscription row for {code} yet")

    values = {"subscription_code": code, "email_token": data.get("email_token")}
    next_payment = parse_gateway_datetime(data.get("next_payment_date"))
    if next_payment:
        values["current_period_end"] = next_payment
    values["updated_at"] = utcnow()

    updated = (
        db.query(Subscription)
        .filter(Subscription.id == sub.id, Subscription.subscription_code.is_(None))
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        raise RetryableWebhookError(f"Subscription {sub.id} was linked concurrently")

    log_transition(db, sub.id, sub.profile_id, "LINK", PAYSTACK_ACTOR, sub.status, sub.status)

    if sub.status in TERMINAL_STATUSES:
        # Cancelled or refunded before Paystack told us the code
        _disable_at_gateway(code, data.get("email_token"), f"local status {sub.status}")

    return {sub.profile_id}


def _subscription_disable(db: Session, data: dict, now: datetime) -> Set[str]:
    code = data.get("subscription_code")
    values = {"status": CANCELLED}
    sub = db.query(Subscription).filter(Subscription.subscription_code == code).first()
    if not sub:
        # Disable delivered before subscription.create: link the code here so the later create is a no-op
        sub = _find_by_customer_and_plan(
            db, _customer_code(data), _plan_code(data), Subscription.subscription_code.is_(None)
        )
        if not sub:
            raise RetryableWebhookError(f"No subscription row for {code} yet")
        values["subscription_code"] = code
        if data.get("email_token"):
            values["email_token"] = data.get("email_token")
    if sub.status != ACTIVE:
        return set()

    if not compare_and_set(db, sub.id, ACTIVE, values):
        raise RetryableWebhookError(f"Subscription {sub.id} changed while cancelling")

    log_transition(db, sub.id, sub.profile_id, "CANCEL", PAYSTACK_ACTOR, ACTIVE, CANCELLED)
    logger.info(f"Subscription {sub.id} cancelled by Paystack")
    return {sub.profile_id}


def _refund_processed(db: Session, data: dict, now: datetime) -> Set[str]:
    reference = data.get("transaction_reference")
    if not reference and isinstance(data.get("transaction"), dict):
        reference = data["transaction"].get("reference")
    sub = db.query(Subscription).filter(Subscription.transaction_reference == reference).first()
    if not sub or sub.status != ACTIVE:
        return set()

    if not compare_and_set(db, sub.id, ACTIVE, {"status": REFUNDED, "refunded_at": now}):
        raise RetryableWebhookError(f"Subscription {sub.id} changed while refunding")

    log_transition(db, sub.id, sub.profile_id, "REFUND", PAYSTACK_ACTOR, ACTIVE, REFUNDED)
    logger.info(f"Subscription {sub.id} refunded through Paystack")
    return {sub.profile_id}


_EVENT_HANDLERS = {
    "charge.success": _charge_success,
    "subscription.create": _subscription_create,
    "subscription.disable": _subscription_disable,
    "refund.processed": _refund_processed,
}
