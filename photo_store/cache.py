"""
cache.py — Redis key-value layer for the photo store.

Namespace conventions:
  purchase:{session_id}   → PurchaseRecord JSON        no TTL (retention is a store concern)
  temp_cart:{token}       → {"cartItems": [...]}       TTL 1h (temp_cart_ttl)

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x — do NOT use aioredis separately)
  - Pool created once in lifespan, stored on app.state.redis
  - Helper functions take the client as a param — no module-level global state
  - The cart side channel exists because Stripe metadata values are capped at 500 chars;
    the checkout route parks the cart here and passes only the key through metadata
  - Logs only keys and counts — never customer emails
"""
import json
import logging
import uuid
from typing import Optional

import redis.asyncio as aioredis

from photo_store.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
PURCHASE_PREFIX = "purchase"
TEMP_CART_PREFIX = "temp_cart"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_purchase_key(session_id: str) -> str:
    """Build Redis key for a purchase record: purchase:{session_id}"""
    return f"{PURCHASE_PREFIX}:{session_id}"


def make_temp_cart_key(token: Optional[str] = None) -> str:
    """
    Build Redis key for a pre-payment cart: temp_cart:{token}
    A random token is generated when none is given (checkout happens before
    the provider has assigned a session id).
    """
    return f"{TEMP_CART_PREFIX}:{token or uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# Pool factory — called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup — stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established")
    return client


# ---------------------------------------------------------------------------
# Cart side-channel helpers
# ---------------------------------------------------------------------------

async def save_temp_cart(
    client: aioredis.Redis, key: str, cart_items: list[dict]
) -> None:
    """
    Park checkout cart items under key with TTL so the webhook can recover
    asset references Stripe never sees.
    """
    await client.setex(key, settings.temp_cart_ttl, json.dumps({"cartItems": cart_items}))
    logger.info("Temp cart stored key=%s items=%d ttl=%ds", key, len(cart_items), settings.temp_cart_ttl)


async def get_temp_cart(
    client: aioredis.Redis, key: str
) -> Optional[list[dict]]:
    """
    Retrieve parked cart items.
    Returns None if the cart expired, never existed, or holds no item list.
    """
    raw = await client.get(key)
    if raw is None:
        return None
    data = json.loads(raw)
    items = data.get("cartItems") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return None
    return items
