"""
gateway.py — Stripe payment-provider client.

StripeGateway wraps one instance-scoped stripe.StripeClient (constructed once in
lifespan — never via the stripe.api_key module global) and exposes only what the
photo store consumes:
  - construct_event          verify a webhook signature, return the event as a plain dict
  - fetch_line_items         expanded line items of a checkout session
  - create_checkout_session  hosted payment page for a cart

The Stripe SDK is synchronous; network calls run in a worker thread so the event
loop is never blocked. Everything returned is plain Python data, so ingestion never
depends on SDK object types.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import stripe

from photo_store.checkout.schemas import (
    CheckoutItem,
    CheckoutRequest,
    CheckoutSessionCreated,
    LineItem,
)
from photo_store.config import settings
from photo_store.errors import InvalidSignatureError, PaymentProviderError

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"
LINE_ITEM_EXPAND = ["line_items.data.price.product"]
METADATA_VALUE_LIMIT = 500


def to_plain(value: Any) -> Any:
    """Recursively convert StripeObjects into dicts / lists."""
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value


def line_items_from_session(session: dict[str, Any]) -> list[LineItem]:
    """Reduce an expanded checkout session dict to LineItems."""
    data = (session.get("line_items") or {}).get("data") or []
    items: list[LineItem] = []
    for raw in data:
        price = raw.get("price") or {}
        product = price.get("product")
        product = product if isinstance(product, dict) else {}
        metadata = product.get("metadata") or {}
        items.append(LineItem(
            id=raw.get("id"),
            product_name=product.get("name") or raw.get("description") or "Photo",
            quantity=raw.get("quantity") or 1,
            product_ref=metadata.get("productId"),
            asset_ref=metadata.get("assetRef") or "",
        ))
    return items


def build_success_url(success_url: Optional[str]) -> str:
    """Default to the store's success page; always carry the session id placeholder."""
    url = success_url or f"{settings.public_base_url}/payment-success.html"
    if CHECKOUT_SESSION_PLACEHOLDER in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}session_id={CHECKOUT_SESSION_PLACEHOLDER}"


def build_cancel_url(cancel_url: Optional[str]) -> str:
    return cancel_url or f"{settings.public_base_url}/payment-cancel.html"


def product_metadata(item: CheckoutItem) -> dict[str, str]:
    """
    Product id and deliverable path stored on the Stripe product, so a webhook can
    rebuild the purchase after the parked cart has expired.
    """
    metadata: dict[str, str] = {}
    if item.product_id:
        metadata["productId"] = item.product_id
    asset_ref = item.image_hq or item.image_src
    if asset_ref and len(asset_ref) <= METADATA_VALUE_LIMIT:
        metadata["assetRef"] = asset_ref
    return metadata


class StripeGateway:
    def __init__(
        self,
        client: stripe.StripeClient,
        webhook_secret: str,
        currency: str = "aud",
    ):
        self._client = client
        self._webhook_secret = webhook_secret
        self._currency = currency

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        if not settings.stripe_api_key:
            logger.warning(
                "Stripe secret key not configured (mode=%s) — provider calls will fail",
                "TEST" if settings.use_test_stripe else "LIVE",
            )
        return cls(
            client=stripe.StripeClient(settings.stripe_api_key),
            webhook_secret=settings.stripe_webhook_secret,
            currency=settings.checkout_currency,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify payload against the Stripe-Signature header.

        Raises:
            InvalidSignatureError: bad signature, bad payload, or no secret configured.
                The message never says which.
        """
        if not self._webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set — rejecting webhook")
            raise InvalidSignatureError("Webhook signature verification failed")
        try:
            event = self._client.construct_event(payload, signature, self._webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.warning("Webhook signature verification failed: %s", type(exc).__name__)
            raise InvalidSignatureError("Webhook signature verification failed") from exc
        return to_plain(event)

    # ------------------------------------------------------------------
    # Checkout sessions
    # ------------------------------------------------------------------

    async def fetch_line_items(self, session_id: str) -> list[LineItem]:
        """Retrieve a session with line items expanded down to the product."""
        session = await asyncio.to_thread(
            self._client.checkout.sessions.retrieve,
            session_id,
            params={"expand": LINE_ITEM_EXPAND},
        )
        items = line_items_from_session(to_plain(session))
        logger.info("Retrieved %d line items session_id=%s", len(items), session_id)
        return items

    async def create_checkout_session(
        self,
        request: CheckoutRequest,
        temp_cart_key: str,
    ) -> CheckoutSessionCreated:
        """
        Create a hosted card-payment page for the cart.

        Only temp_cart_key travels in metadata (Stripe caps metadata values at 500
        chars); the cart itself waits in Redis for the webhook.
        """
        params: dict[str, Any] = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self._currency,
                        "product_data": {
                            "name": item.name,
                            "description": item.description,
                            "metadata": product_metadata(item),
                        },
                        "unit_amount": round(item.price * 100),
                    },
                    "quantity": item.quantity,
                }
                for item in request.items
            ],
            "success_url": build_success_url(request.success_url),
            "cancel_url": build_cancel_url(request.cancel_url),
            "metadata": {
                "order_type": "digital_photo_download",
                "item_count": str(len(request.items)),
                "temp_cart_key": temp_cart_key,
            },
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
        }
        if request.customer_email:
            params["customer_email"] = request.customer_email

        try:
            session = await asyncio.to_thread(self._client.checkout.sessions.create, params=params)
        except (stripe.CardError, stripe.InvalidRequestError) as exc:
            logger.warning("Checkout rejected by Stripe: %s", exc)
            raise PaymentProviderError(str(exc), user_error=True) from exc
        except stripe.StripeError as exc:
            logger.error("Checkout session creation failed: %s", exc)
            raise PaymentProviderError("Failed to create checkout session") from exc

        logger.info("Checkout session created session_id=%s items=%d", session.id, len(request.items))
        return CheckoutSessionCreated(id=session.id, url=getattr(session, "url", None))
