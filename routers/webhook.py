from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from db.init import get_db
from utils.responses import success_response
from utils.webhook_reconciler import handle_webhook, RetryableWebhookError
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/paystack")
async def paystack_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Paystack callback. The raw body is needed for the signature check, so
    it is read before any JSON parsing.
    """
    raw = await request.body()
    signature = request.headers.get("x-paystack-signature")

    try:
        result = await run_in_threadpool(handle_webhook, db, raw, signature)
    except HTTPException:
        raise
    except RetryableWebhookError as e:
        logger.warning(f"Paystack webhook deferred: {e}")
        raise HTTPException(status_code=503, detail="Event cannot be applied yet")
    except Exception as e:
        logger.error(f"Error processing Paystack webhook: {e}")
        raise HTTPException(status_code=500, detail="Failed to process webhook")

    return success_response(result)
