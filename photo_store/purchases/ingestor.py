"""
WebhookIngestor — checkout.session.completed → PurchaseRecord.

Pipeline per delivery:
  1. Verify signature (StripeGateway)         → InvalidSignatureError, nothing stored
  2. Ignore any event type except checkout.session.completed (acknowledged)
  3. Require a session id and customer email  → MalformedEventError / MissingEmailError,
                                                 nothing stored
  4. Gather line items (Stripe) and cart items (side channel), reconcile them
  5. Build one PurchasedItem per resolved product, downloaded=False
  6. PurchaseRepository.create with is_final=True — retried with backoff; a record
     that still cannot be written is logged CRITICAL (dead letter) and the event is
     acknowledged anyway

Steps 4-5 depend only on the event payload and the Stripe product metadata it points
at (timestamps come from the event's `created`), so a redelivered event rebuilds the
same record. Once a record is final, step 6 keeps the stored items anyway, so a late
replay with an expired cart cannot reshape the purchase.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis
import stripe
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from photo_store.cache import get_temp_cart, make_temp_cart_key
from photo_store.checkout.schemas import CartItem, LineItem
from photo_store.config import settings
from photo_store.errors import MalformedEventError, MissingEmailError, PurchaseStoreError
from photo_store.purchases.schemas import PurchasedItem, PurchaseRecord
from photo_store.store import PurchaseRepository

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-z0-9]", re.IGNORECASE)


class PaymentEvents(Protocol):
    """The slice of StripeGateway the ingestor needs."""

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]: ...

    async def fetch_line_items(self, session_id: str) -> list[LineItem]: ...


class IngestionOutcome(BaseModel):
    event_type: str
    session_id: Optional[str] = None
    handled: bool = False
    stored: bool = False
    item_count: int = 0


# ---------------------------------------------------------------------------
# Reconciliation — pure
# ---------------------------------------------------------------------------

def _file_name_for(asset_ref: str, title: str) -> str:
    base = asset_ref.split("?", 1)[0].rstrip("/").split("/")[-1] if asset_ref else ""
    if base:
        return base
    return f"{_UNSAFE_FILENAME_CHARS.sub('_', title or 'photo')}.jpg"


def _match_cart_item(
    line_item: LineItem,
    cart_items: list[CartItem],
    used: set[int],
) -> Optional[int]:
    """
    Index of the cart item behind line_item, or None.

    A product-id reference on the Stripe product wins. Otherwise the title must
    identify exactly one unused cart item; ambiguous titles match nothing.
    """
    if line_item.product_ref:
        for index, cart_item in enumerate(cart_items):
            if index not in used and cart_item.product_id == line_item.product_ref:
                return index

    candidates = [
        index
        for index, cart_item in enumerate(cart_items)
        if index not in used
        and line_item.product_name in (cart_item.name, cart_item.title)
    ]
    if len(candidates) == 1:
        return candidates[0]
    return None


def _append_or_merge(items: list[PurchasedItem], item: PurchasedItem) -> None:
    # product_id must stay unique within a record; repeats add their quantities
    for existing in items:
        if existing.product_id == item.product_id:
            existing.quantity_purchased += item.quantity_purchased
            return
    items.append(item)


def resolve_purchased_items(
    line_items: list[LineItem],
    cart_items: list[CartItem],
) -> list[PurchasedItem]:
    """
    Combine provider line items with the pre-payment cart.

    Line items are authoritative for names and quantities. Product ids and asset
    references come from the matched cart item, else from the Stripe product
    metadata written at checkout. Without line items the cart alone is used.
    """
    items: list[PurchasedItem] = []

    if line_items:
        used: set[int] = set()
        for position, line_item in enumerate(line_items):
            index = _match_cart_item(line_item, cart_items, used)
            cart_item = cart_items[index] if index is not None else None
            if index is not None:
                used.add(index)

            asset_ref = (cart_item.asset_ref if cart_item else "") or line_item.asset_ref
            product_id = (
                (cart_item.product_id if cart_item else None)
                or line_item.product_ref
                or line_item.id
                or f"item_{position}"
            )
            _append_or_merge(items, PurchasedItem(
                product_id=product_id,
                title=line_item.product_name,
                file_name=_file_name_for(asset_ref, line_item.product_name),
                asset_ref=asset_ref,
                image_src=cart_item.image_src if cart_item else "",
                quantity_purchased=max(1, line_item.quantity),
            ))
        return items

    for position, cart_item in enumerate(cart_items):
        title = cart_item.display_title
        _append_or_merge(items, PurchasedItem(
            product_id=cart_item.product_id or f"item_{position}",
            title=title,
            file_name=_file_name_for(cart_item.asset_ref, title),
            asset_ref=cart_item.asset_ref,
            image_src=cart_item.image_src,
            quantity_purchased=max(1, cart_item.quantity),
        ))
    return items


def extract_customer_email(session: dict[str, Any]) -> Optional[str]:
    details = session.get("customer_details") or {}
    return session.get("customer_email") or details.get("email") or None


def build_purchase_record(
    session: dict[str, Any],
    event_created: Optional[int],
    items: list[PurchasedItem],
) -> PurchaseRecord:
    email = extract_customer_email(session)
    if not email:
        raise MissingEmailError("Customer email not found in checkout session")

    stamp_source = event_created or session.get("created") or 0
    stamp = datetime.fromtimestamp(stamp_source, tz=timezone.utc).isoformat()
    return PurchaseRecord(
        session_id=session["id"],
        customer_email=email,
        items=items,
        payment_status=session.get("payment_status") or "",
        is_final=True,
        created_at=stamp,
        finalized_at=stamp,
    )


# ---------------------------------------------------------------------------
# WebhookIngestor
# ---------------------------------------------------------------------------

class WebhookIngestor:
    def __init__(
        self,
        repository: PurchaseRepository,
        payments: PaymentEvents,
        client: aioredis.Redis,
        write_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        self._repository = repository
        self._payments = payments
        self._client = client
        self._write_attempts = write_attempts or settings.ingest_write_attempts
        self._retry_backoff = settings.ingest_retry_backoff if retry_backoff is None else retry_backoff

    async def ingest(self, payload: bytes, signature: str) -> IngestionOutcome:
        """Verify, then ingest. Raises InvalidSignatureError / MissingEmailError."""
        event = self._payments.construct_event(payload, signature)
        return await self.ingest_event(event)

    async def ingest_event(self, event: dict[str, Any]) -> IngestionOutcome:
        event_type = event.get("type", "unknown")
        if event_type != CHECKOUT_COMPLETED:
            logger.info("Unhandled webhook event type=%s", event_type)
            return IngestionOutcome(event_type=event_type)

        session = (event.get("data") or {}).get("object") or {}
        session_id = session.get("id")
        if not session_id:
            logger.error(
                "Completed checkout event without a session id event_id=%s — rejecting",
                event.get("id"),
            )
            raise MalformedEventError("Checkout session id missing from event")
        logger.info(
            "Webhook received session_id=%s payment_status=%s",
            session_id,
            session.get("payment_status"),
        )

        if not extract_customer_email(session):
            logger.error("No customer email in session session_id=%s — rejecting", session_id)
            raise MissingEmailError("Customer email not found in checkout session")

        line_items = await self._load_line_items(session_id)
        cart_items = await self._load_cart_items(session)
        items = resolve_purchased_items(line_items, cart_items)
        if not items:
            logger.warning(
                "No purchased items resolved session_id=%s line_items=%d cart_items=%d",
                session_id,
                len(line_items),
                len(cart_items),
            )

        record = build_purchase_record(session, event.get("created"), items)
        stored = await self._persist(record)
        return IngestionOutcome(
            event_type=event_type,
            session_id=session_id,
            handled=True,
            stored=stored,
            item_count=len(items),
        )

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def _load_line_items(self, session_id: str) -> list[LineItem]:
        try:
            return await self._payments.fetch_line_items(session_id)
        except stripe.StripeError as exc:
            logger.error("Error fetching line items session_id=%s: %s", session_id, exc)
            return []

    async def _load_cart_items(self, session: dict[str, Any]) -> list[CartItem]:
        """
        Cart side channel, first hit wins:
          metadata.temp_cart_key → temp_cart:{session_id} → legacy metadata.cart_items JSON
        """
        metadata = session.get("metadata") or {}
        keys = []
        if metadata.get("temp_cart_key"):
            keys.append(metadata["temp_cart_key"])
        keys.append(make_temp_cart_key(session["id"]))

        for key in keys:
            try:
                raw_items = await get_temp_cart(self._client, key)
            except (RedisError, json.JSONDecodeError) as exc:
                logger.warning("Could not read cart items key=%s: %s", key, exc)
                continue
            if raw_items:
                parsed = self._parse_cart(raw_items, source=key)
                if parsed:
                    return parsed

        if metadata.get("cart_items"):
            try:
                raw_items = json.loads(metadata["cart_items"])
            except json.JSONDecodeError as exc:
                logger.error("Error parsing cart_items from metadata: %s", exc)
                return []
            if isinstance(raw_items, list):
                return self._parse_cart(raw_items, source="metadata")
        return []

    @staticmethod
    def _parse_cart(raw_items: list[Any], source: str) -> list[CartItem]:
        try:
            items = [CartItem.model_validate(raw) for raw in raw_items]
        except ValidationError as exc:
            logger.warning("Discarding malformed cart items source=%s: %s", source, exc)
            return []
        logger.info("Retrieved %d cart items source=%s", len(items), source)
        return items

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self, record: PurchaseRecord) -> bool:
        for attempt in range(1, self._write_attempts + 1):
            try:
                await self._repository.create(record)
                return True
            except PurchaseStoreError as exc:
                if attempt == self._write_attempts:
                    logger.critical(
                        "CRITICAL: failed to save purchase session_id=%s after %d attempts: %s "
                        "— dead-letter record follows: %s",
                        record.session_id,
                        attempt,
                        exc,
                        record.model_dump_json(),
                    )
                    return False
                delay = self._retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Purchase write failed session_id=%s attempt=%d/%d — retrying in %.2fs",
                    record.session_id,
                    attempt,
                    self._write_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
        return False
