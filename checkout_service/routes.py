import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from checkout_service.checkout import create_checkout_session
from checkout_service.database import get_db
from checkout_service.errors import AuthenticationError, InvalidInput, ReconciliationError, SessionCreationFailed
from checkout_service.pricing import CartItem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment")


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cart_items: List[CartItem] = Field(alias="cartItems")
    user_id: Optional[str] = Field(default=None, alias="userId")


@router.post("/create-checkout-session")
def create_checkout_session_api(request: Request, body: CheckoutRequest, db=Depends(get_db)):
    state = request.app.state
    try:
        session = create_checkout_session(
            db, state.gateway, state.settings, body.cart_items, user_ref=body.user_id
        )
    except InvalidInput as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except SessionCreationFailed:
        return JSONResponse(status_code=500, content={"error": "Unable to create checkout session"})

    return {"url": session.redirect_url}


@router.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = request.app.state.authenticator.verify(payload, stripe_signature)
    except AuthenticationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # Once authenticated the event is always acknowledged; redelivery is idempotent
    # and failures are recovered from the logs, not through Stripe's retry schedule.
    try:
        result = await run_in_threadpool(request.app.state.reconciler.reconcile, event)
        logger.info("webhook.processed event_id=%s type=%s outcome=%s",
                    event.event_id, event.type, result.outcome.value)
    except ReconciliationError as e:
        logger.error("webhook.reconcile_failed event_id=%s retryable=%s: %s",
                     event.event_id, e.retryable, e, exc_info=True)
    except Exception:
        logger.exception("webhook.reconcile_crashed event_id=%s", event.event_id)

    return {"received": True}
