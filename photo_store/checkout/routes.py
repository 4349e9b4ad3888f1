"""
Checkout HTTP routes — POST /api/checkout-session,
                        POST /api/webhook,
                        GET  /api/stripe-key

The webhook endpoint answers 200 {"received": true} for every authentic event,
including ones whose record could not be written (see WebhookIngestor).
"""
from __future__ import annotations

import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from photo_store.cache import make_temp_cart_key, save_temp_cart
from photo_store.checkout.gateway import StripeGateway
from photo_store.checkout.schemas import CartItem, CheckoutRequest
from photo_store.config import settings
from photo_store.dependencies import get_gateway, get_ingestor, get_redis
from photo_store.purchases.ingestor import WebhookIngestor

router = APIRouter(prefix="/api", tags=["checkout"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# GET /api/stripe-key
# ---------------------------------------------------------------------------

@router.get("/stripe-key")
async def get_stripe_key() -> JSONResponse:
    """Publishable key for Stripe.js — safe to expose, unlike the secret key."""
    if not settings.stripe_publishable_key:
        logger.error("STRIPE_PUBLISHABLE_KEY is not set")
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "CONFIGURATION_ERROR",
                    "message": "Stripe publishable key not configured",
                    "details": [],
                }
            },
        )
    return JSONResponse(status_code=200, content={"publishable_key": settings.stripe_publishable_key})


# ---------------------------------------------------------------------------
# POST /api/checkout-session
# ---------------------------------------------------------------------------

@router.post("/checkout-session")
async def create_checkout_session(
    body: CheckoutRequest,
    client: aioredis.Redis = Depends(get_redis),
    gateway: StripeGateway = Depends(get_gateway),
) -> JSONResponse:
    """
    Park the cart in Redis, then open a Stripe Checkout session for it.

    Returns:
        200: {id, url}
        400: PAYMENT_ERROR (card / invalid request at Stripe)
        422: VALIDATION_ERROR (empty cart, missing name, price <= 0, quantity < 1)
        502: PAYMENT_PROVIDER_ERROR
    """
    cart_items = [
        CartItem(
            product_id=item.product_id,
            name=item.name,
            title=item.name,
            image_src=item.image_src,
            image_hq=item.image_hq,
            quantity=item.quantity,
        ).model_dump()
        for item in body.items
    ]
    temp_cart_key = make_temp_cart_key()
    await save_temp_cart(client, temp_cart_key, cart_items)

    created = await gateway.create_checkout_session(body, temp_cart_key)
    return JSONResponse(status_code=200, content=created.model_dump())


# ---------------------------------------------------------------------------
# POST /api/webhook
# ---------------------------------------------------------------------------

@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> JSONResponse:
    """
    Stripe webhook receiver. Signature is verified against the RAW body.

    Returns:
        200: {"received": true}
        400: missing / invalid signature, or completed session without id or email
    """
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Stripe signature header is required")

    payload = await request.body()
    outcome = await ingestor.ingest(payload, stripe_signature)
    logger.info(
        "Webhook processed type=%s session_id=%s stored=%s items=%d",
        outcome.event_type,
        outcome.session_id,
        outcome.stored,
        outcome.item_count,
    )
    return JSONResponse(status_code=200, content={"received": True})
