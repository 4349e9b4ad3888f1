"""
DownloadAuthorizer — "may this session download this product now?"

authorize_download(session_id, product_id):
  1. validate_session_id          → InvalidSessionIdError before any store access
  2. repository.get               → None ⇒ denied session_not_found
  3. repository.update(try_consume) — the consume decision is taken inside the
     WATCH transaction, so of two racing requests only one flips the flag; the
     other re-reads and is denied already_downloaded
  4. admitted ⇒ DownloadGrant (asset ref + copy count + suggested filename)

A store failure in step 2 or 3 propagates as PurchaseStoreError: the caller is never
told "admitted" unless the downloaded flag is durably written, and a grant is never
built from an unwritten consume.

get_entitlements(session_id) is the read-only projection used by the success page.
"""
from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Optional

from photo_store.errors import PurchaseNotFoundError
from photo_store.purchases.entitlement import SESSION_NOT_FOUND_MESSAGE, EntitlementEngine
from photo_store.purchases.schemas import (
    AuthorizationResult,
    ConsumeResult,
    DenialReason,
    DownloadGrant,
    EntitlementView,
    PurchaseEntitlements,
    PurchasedItem,
    PurchaseRecord,
)
from photo_store.purchases.validator import validate_product_id, validate_session_id
from photo_store.store import PurchaseRepository

logger = logging.getLogger(__name__)


def suggested_filename(item: PurchasedItem) -> str:
    """
    Single copy → the file itself; several copies → one ZIP named after the file.
    e.g. sunset.jpg x3 → sunset_3_copies.zip
    """
    file_name = item.file_name or f"{item.product_id}.jpg"
    if item.quantity_purchased <= 1:
        return file_name
    stem = PurePosixPath(file_name).stem or item.product_id
    return f"{stem}_{item.quantity_purchased}_copies.zip"


def build_grant(item: PurchasedItem) -> DownloadGrant:
    return DownloadGrant(
        product_id=item.product_id,
        title=item.title,
        asset_ref=item.asset_ref,
        count=item.quantity_purchased,
        suggested_filename=suggested_filename(item),
        is_remote=item.asset_ref.startswith(("http://", "https://")),
    )


def project_entitlements(record: PurchaseRecord, engine: EntitlementEngine) -> PurchaseEntitlements:
    return PurchaseEntitlements(
        session_id=record.session_id,
        customer_email=record.customer_email,
        payment_status=record.payment_status,
        purchase_date=record.created_at,
        is_final=record.is_final,
        finalized_at=record.finalized_at,
        total_quantity=record.total_quantity,
        items=[
            EntitlementView(
                product_id=item.product_id,
                title=item.title,
                file_name=item.file_name,
                quantity_purchased=item.quantity_purchased,
                downloaded=item.downloaded,
                can_download=engine.can_download(record, item.product_id),
            )
            for item in record.items
        ],
    )


class DownloadAuthorizer:
    def __init__(
        self,
        repository: PurchaseRepository,
        engine: Optional[EntitlementEngine] = None,
    ):
        self._repository = repository
        self._engine = engine or EntitlementEngine()

    async def authorize_download(self, session_id: str, product_id: str) -> AuthorizationResult:
        validate_session_id(session_id)
        validate_product_id(product_id)

        record = await self._repository.get(session_id)
        if record is None:
            return _session_not_found(session_id)

        # Closure keeps the decision from the attempt whose write actually landed
        decision: dict[str, ConsumeResult] = {}

        def _consume(current: PurchaseRecord) -> Optional[PurchaseRecord]:
            result = self._engine.try_consume(current, product_id)
            decision["result"] = result
            return result.updated_record if result.admitted else None

        try:
            await self._repository.update(session_id, _consume)
        except PurchaseNotFoundError:
            return _session_not_found(session_id)

        result = decision["result"]
        if not result.admitted:
            logger.info(
                "Download denied session_id=%s product_id=%s reason=%s",
                session_id,
                product_id,
                result.reason.value,
            )
            return AuthorizationResult(admitted=False, reason=result.reason, message=result.message)

        grant = build_grant(result.item)
        logger.info(
            "Download released session_id=%s product_id=%s copies=%d",
            session_id,
            product_id,
            grant.count,
        )
        return AuthorizationResult(admitted=True, grant=grant)

    async def get_entitlements(self, session_id: str) -> Optional[PurchaseEntitlements]:
        """
        Project the purchase and every purchased item for display.
        Returns None for an unknown session. Never writes.
        """
        validate_session_id(session_id)
        record = await self._repository.get(session_id)
        if record is None:
            return None
        return project_entitlements(record, self._engine)


def _session_not_found(session_id: str) -> AuthorizationResult:
    logger.info("Download denied session_id=%s reason=session_not_found", session_id)
    return AuthorizationResult(
        admitted=False,
        reason=DenialReason.session_not_found,
        message=SESSION_NOT_FOUND_MESSAGE,
    )
