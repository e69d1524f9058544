"""
Paystack API Client Wrapper
Handles the Paystack REST calls the subscription engine needs
"""
import os
import hmac
import hashlib
import logging
import requests
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# Paystack Configuration
PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
PAYSTACK_TIMEOUT = float(os.getenv("PAYSTACK_TIMEOUT", "10"))


def get_paystack_headers() -> Dict[str, str]:
    """Get headers for Paystack API requests"""
    if not PAYSTACK_SECRET_KEY:
        raise ValueError("PAYSTACK_SECRET_KEY is not set in environment variables")

    return {
        "Authorization": f"Bearer {PAYSTACK_SECRET_KEY}",
        "Content-Type": "application/json",
    }


def compute_signature(raw_body: bytes, secret: Optional[str] = None) -> str:
    """HMAC-SHA512 hex digest Paystack sends in x-paystack-signature."""
    key = (secret if secret is not None else PAYSTACK_SECRET_KEY).encode("utf-8")
    return hmac.new(key, raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    if not PAYSTACK_SECRET_KEY or not signature:
        return False
    # Header values arrive latin-1 decoded; compare bytes so any character is a mismatch, not an error
    expected = compute_signature(raw_body).encode("ascii")
    return hmac.compare_digest(expected, signature.encode("latin-1", "replace"))


def _post(path: str, payload: Dict[str, Any], action: str) -> Dict[str, Any]:
    """
    POST to Paystack and normalize the outcome.

    Returns {"success": True, "data": ...} or
    {"success": False, "error": ..., "http_status"/"timeout": ...}.
    """
    url = f"{PAYSTACK_BASE_URL}{path}"
    try:
        response = requests.post(url, json=payload, headers=get_paystack_headers(), timeout=PAYSTACK_TIMEOUT)
    except requests.exceptions.Timeout:
        logger.error(f"Paystack {action} timed out after {PAYSTACK_TIMEOUT}s")
        return {"success": False, "error": f"Paystack {action} timed out", "timeout": True}
    except requests.exceptions.RequestException as e:
        logger.error(f"Error calling Paystack {action}: {str(e)}")
        return {"success": False, "error": str(e)}
    except ValueError as e:
        logger.error(f"Paystack {action} not configured: {str(e)}")
        return {"success": False, "error": str(e)}

    try:
        body = response.json()
    except ValueError:
        body = {}

    if response.status_code not in [200, 201] or not body.get("status"):
        message = body.get("message") or response.text
        logger.error(f"Paystack {action} API error: {response.status_code} - {message}")
        return {
            "success": False,
            "error": message,
            "http_status": response.status_code,
        }

    return {"success": True, "data": body.get("data") or {}}


def initialize_transaction(
    email: str,
    reference: str,
    callback_url: str,
    metadata: Dict[str, Any],
    plan_code: Optional[str] = None,
    amount: int = 0,
) -> Dict[str, Any]:
    """
    Start a Paystack checkout session.

    When plan_code is given Paystack charges the plan amount and ignores
    `amount`; the confirming charge also subscribes the customer to the plan.

    Returns:
        Dict with success flag and authorization_url / access_code / reference
    """
    payload = {
        "email": email,
        "amount": amount,
        "reference": reference,
        "callback_url": callback_url,
        "metadata": metadata,
    }
    if plan_code:
        payload["plan"] = plan_code

    logger.info(f"Initializing Paystack transaction {reference} for {email}")
    result = _post("/transaction/initialize", payload, "initialize transaction")
    if not result.get("success"):
        return result

    data = result["data"]
    return {
        "success": True,
        "authorization_url": data.get("authorization_url"),
        "access_code": data.get("access_code"),
        "reference": data.get("reference") or reference,
    }


def refund_transaction(transaction_reference: str) -> Dict[str, Any]:
    """
    Request a full refund for a confirmed transaction.
    """
    logger.info(f"Requesting Paystack refund for {transaction_reference}")
    result = _post("/refund", {"transaction": transaction_reference}, "refund")
    if not result.get("success"):
        return result

    data = result["data"]
    return {
        "success": True,
        "refund": data,
        "status": data.get("status"),
    }


def disable_subscription(subscription_code: str, email_token: str) -> Dict[str, Any]:
    """
    Stop future renewals of a Paystack subscription.
    """
    logger.info(f"Disabling Paystack subscription {subscription_code}")
    result = _post(
        "/subscription/disable",
        {"code": subscription_code, "token": email_token},
        "disable subscription",
    )
    if not result.get("success"):
        return result
    return {"success": True}
