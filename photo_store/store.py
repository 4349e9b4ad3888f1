"""
store.py — PurchaseRepository, the data access facade for purchase records.

Provides purchase-shaped get / create / update on top of the Redis key-value store.
No route, ingestor or authorizer touches Redis keys for purchases directly.

Design principles:
  - The Redis client is injected (constructed once in lifespan) — no hidden global
  - One canonical PurchaseRecord shape is written; legacy shapes are normalised here
    on read and nowhere else
  - get() returns None for "not found"; only real I/O failures raise PurchaseStoreError
  - create() and update() are WATCH/MULTI transactions: a write only lands if the key
    is unchanged since it was read, otherwise the step re-runs on the fresh value
  - No cache, no retry on I/O errors — failures propagate to the caller
  - Logs only session_id / counts — never customer emails
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from photo_store.cache import make_purchase_key
from photo_store.config import settings
from photo_store.errors import PurchaseNotFoundError, PurchaseStoreError
from photo_store.purchases.schemas import PurchaseRecord

logger = logging.getLogger(__name__)

Mutator = Callable[[PurchaseRecord], Optional[PurchaseRecord]]


# ---------------------------------------------------------------------------
# Legacy shape adapter
# ---------------------------------------------------------------------------

def _first_present(data: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return default


def normalize_record_data(data: dict[str, Any]) -> dict[str, Any]:
    """
    Map a stored value onto the canonical PurchaseRecord field layout.

    Canonical values (those with an "items" list) pass through untouched. Older
    records used camelCase product lists under "products" or "purchased_items",
    kept the customer email under "customer_email" or "email", and tracked
    downloads in a separate {productId: bool} map.
    """
    if "items" in data:
        return data

    downloaded_map = data.get("downloaded") or {}
    legacy_items = data.get("products") or data.get("purchased_items") or []
    created_at = _first_present(data, "createdAt", "timestamp", default="")

    items = []
    for raw in legacy_items:
        product_id = raw.get("productId")
        asset_ref = _first_present(raw, "imageHQ", "imageSrc", default="")
        items.append({
            "product_id": product_id,
            "title": raw.get("title") or "",
            "file_name": raw.get("fileName") or "",
            "asset_ref": asset_ref,
            "image_src": raw.get("imageSrc") or "",
            "quantity_purchased": max(1, int(_first_present(
                raw, "quantityPurchased", "quantity", "maxDownloads", "max_downloads", default=1,
            ))),
            "downloaded": downloaded_map.get(product_id) is True,
        })

    return {
        "session_id": _first_present(data, "session_id", "sessionId", default=""),
        "customer_email": _first_present(data, "customer_email", "email", default=""),
        "items": items,
        "payment_status": data.get("payment_status") or "",
        "is_final": data.get("isFinal", True) is not False,
        "created_at": created_at,
        "finalized_at": data.get("finalizedAt") or created_at or None,
    }


def _decode(raw: str) -> PurchaseRecord:
    try:
        return PurchaseRecord.model_validate(normalize_record_data(json.loads(raw)))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise PurchaseStoreError(f"Stored purchase record is unreadable: {exc}") from exc


def _encode(record: PurchaseRecord) -> str:
    return record.model_dump_json()


def _product_ids(record: PurchaseRecord) -> set[str]:
    return {item.product_id for item in record.items}


def carry_download_state(existing: PurchaseRecord, incoming: PurchaseRecord) -> PurchaseRecord:
    """
    Return incoming with the downloaded flags of existing copied over for shared
    product ids. Keeps a replayed webhook from handing a consumed item back.
    """
    released = {
        item.product_id: item.downloaded_at
        for item in existing.items
        if item.downloaded
    }
    if not released:
        return incoming
    merged = incoming.model_copy(deep=True)
    for item in merged.items:
        if item.product_id in released and not item.downloaded:
            item.downloaded = True
            item.downloaded_at = released[item.product_id]
    return merged


# ---------------------------------------------------------------------------
# PurchaseRepository
# ---------------------------------------------------------------------------

class PurchaseRepository:
    """
    Purchase-domain operations over the key-value store.

    Args:
        client: shared redis.asyncio client (decode_responses=True).
        max_attempts: how many times a contended create/update re-runs before
            giving up with PurchaseStoreError.
    """

    def __init__(self, client: aioredis.Redis, max_attempts: Optional[int] = None):
        self._client = client
        self._max_attempts = max_attempts or settings.store_update_attempts

    async def get(self, session_id: str) -> Optional[PurchaseRecord]:
        """
        Retrieve the PurchaseRecord for session_id.
        Returns None if no purchase exists (a normal outcome, not a fault).
        """
        key = make_purchase_key(session_id)
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            logger.error("Purchase read failed session_id=%s: %s", session_id, exc)
            raise PurchaseStoreError("Purchase store unavailable") from exc

        if raw is None:
            logger.info("Purchase not found session_id=%s", session_id)
            return None
        return _decode(raw)

    async def create(self, record: PurchaseRecord) -> PurchaseRecord:
        """
        Write record under purchase:{session_id}.

        A stored record that is already final is kept as it is: its items were fixed
        at ingestion, so a redelivered event can neither add, drop nor reset them.
        A non-final stored record is replaced, keeping the downloaded flags already
        set on it. Returns the value stored after the call.
        """
        key = make_purchase_key(record.session_id)

        def _upsert(existing: Optional[PurchaseRecord]) -> Optional[PurchaseRecord]:
            if existing is None:
                return record
            if existing.is_final:
                if _product_ids(existing) != _product_ids(record):
                    logger.warning(
                        "Replay for final purchase session_id=%s has different items "
                        "(stored=%d incoming=%d) — keeping stored record",
                        record.session_id,
                        len(existing.items),
                        len(record.items),
                    )
                return None
            return carry_download_state(existing, record)

        written = await self._transact(key, record.session_id, _upsert)
        logger.info(
            "Saved purchase session_id=%s items=%d",
            record.session_id,
            len(written.items),
        )
        return written

    async def update(self, session_id: str, mutator: Mutator) -> PurchaseRecord:
        """
        Read-modify-write the record for session_id atomically.

        mutator receives the current record and returns the replacement, or None for
        "no change". If another writer touches the key before ours lands, the write is
        discarded and mutator runs again against the new value — so a mutator must be
        a pure function of its input.

        Raises:
            PurchaseNotFoundError: no record for session_id.
            PurchaseStoreError: store failure, or contention outlasted max_attempts.
        """
        key = make_purchase_key(session_id)

        def _apply(existing: Optional[PurchaseRecord]) -> Optional[PurchaseRecord]:
            if existing is None:
                raise PurchaseNotFoundError(session_id)
            return mutator(existing)

        return await self._transact(key, session_id, _apply)

    async def _transact(
        self,
        key: str,
        session_id: str,
        step: Callable[[Optional[PurchaseRecord]], Optional[PurchaseRecord]],
    ) -> PurchaseRecord:
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._client.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    current = _decode(raw) if raw is not None else None
                    updated = step(current)
                    if updated is None:
                        await pipe.unwatch()
                        return current
                    pipe.multi()
                    pipe.set(key, _encode(updated))
                    await pipe.execute()
                    return updated
            except WatchError:
                logger.info(
                    "Purchase write conflict session_id=%s attempt=%d/%d — retrying",
                    session_id,
                    attempt,
                    self._max_attempts,
                )
            except RedisError as exc:
                logger.error("Purchase write failed session_id=%s: %s", session_id, exc)
                raise PurchaseStoreError("Purchase store unavailable") from exc

        raise PurchaseStoreError(
            f"Purchase for session '{session_id}' kept changing; gave up after "
            f"{self._max_attempts} attempts"
        )
