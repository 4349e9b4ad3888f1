"""
Purchase HTTP routes — POST /api/download,
                        GET  /api/download-links,
                        GET  /api/purchase-final,
                        GET  /api/webhook/check

File bytes are NOT streamed here: an admitted download returns the DownloadGrant
(asset reference, copy count, suggested filename) for the file-serving layer.
"""
from __future__ import annotations

import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from photo_store.dependencies import get_authorizer, get_repository
from photo_store.purchases.authorization import DownloadAuthorizer
from photo_store.purchases.schemas import DenialReason, ErrorBody, ErrorResponse
from photo_store.purchases.validator import validate_session_id
from photo_store.store import PurchaseRepository

router = APIRouter(prefix="/api", tags=["purchases"])
logger = logging.getLogger(__name__)

# not found → 404 (retry later), anything else → 403 (final answer)
_DENIAL_STATUS = {
    DenialReason.session_not_found: 404,
    DenialReason.not_purchased: 403,
    DenialReason.already_downloaded: 403,
}


class DownloadRequest(BaseModel):
    session_id: str
    product_id: str


def _download_url(session_id: str, product_id: str) -> str:
    return f"/api/download?session_id={quote(session_id)}&product_id={quote(product_id)}"


# ---------------------------------------------------------------------------
# POST /api/download
# ---------------------------------------------------------------------------

@router.post("/download")
async def authorize_download(
    body: DownloadRequest,
    authorizer: DownloadAuthorizer = Depends(get_authorizer),
) -> JSONResponse:
    """
    Release one purchased item, once.

    Returns:
        200: {admitted: true, grant: {asset_ref, count, suggested_filename, ...}}
        403: ALREADY_DOWNLOADED / NOT_PURCHASED error envelope
        404: SESSION_NOT_FOUND error envelope
        400: INVALID_SESSION_ID
        503: STORE_UNAVAILABLE — nothing was released, safe to retry
    """
    result = await authorizer.authorize_download(body.session_id, body.product_id)
    if result.admitted:
        return JSONResponse(status_code=200, content=result.model_dump(mode="json"))

    body_out = ErrorResponse(
        error=ErrorBody(code=result.reason.value.upper(), message=result.message)
    )
    return JSONResponse(status_code=_DENIAL_STATUS[result.reason], content=body_out.model_dump())


# ---------------------------------------------------------------------------
# GET /api/download-links
# ---------------------------------------------------------------------------

@router.get("/download-links")
async def get_download_links(
    session_id: str = Query(...),
    authorizer: DownloadAuthorizer = Depends(get_authorizer),
) -> JSONResponse:
    """Purchase summary plus per-item download state. Read-only."""
    entitlements = await authorizer.get_entitlements(session_id)
    if entitlements is None:
        raise HTTPException(
            status_code=404,
            detail=(
                "No purchase found for this session ID. The purchase may not have been "
                "processed yet, or the session ID is invalid."
            ),
        )

    downloads = [
        {**view.model_dump(), "download_url": _download_url(session_id, view.product_id)}
        for view in entitlements.items
    ]
    logger.info("Download links returned session_id=%s items=%d", session_id, len(downloads))
    return JSONResponse(
        status_code=200,
        content={
            "purchase": {
                "session_id": entitlements.session_id,
                "email": entitlements.customer_email,
                "purchase_date": entitlements.purchase_date,
                "payment_status": entitlements.payment_status,
            },
            "downloads": downloads,
            "quantity": entitlements.total_quantity,
        },
    )


# ---------------------------------------------------------------------------
# GET /api/purchase-final
# ---------------------------------------------------------------------------

@router.get("/purchase-final")
async def check_purchase_final(
    session_id: str = Query(...),
    authorizer: DownloadAuthorizer = Depends(get_authorizer),
) -> JSONResponse:
    """Whether quantities for the purchase are locked (always true once ingested)."""
    entitlements = await authorizer.get_entitlements(session_id)
    if entitlements is None:
        raise HTTPException(status_code=404, detail="No purchase found for this session ID")

    return JSONResponse(
        status_code=200,
        content={
            "session_id": session_id,
            "is_final": entitlements.is_final,
            "finalized_at": entitlements.finalized_at,
            "message": (
                "Purchase is final - quantities cannot be modified"
                if entitlements.is_final
                else "Purchase is not final"
            ),
        },
    )


# ---------------------------------------------------------------------------
# GET /api/webhook/check
# ---------------------------------------------------------------------------

@router.get("/webhook/check")
async def check_webhook(
    session_id: str = Query(...),
    repository: PurchaseRepository = Depends(get_repository),
) -> JSONResponse:
    """Debug aid: has the webhook for this session been ingested yet?"""
    validate_session_id(session_id)
    record = await repository.get(session_id)
    return JSONResponse(
        status_code=200,
        content={
            "session_id": session_id,
            "found": record is not None,
            "item_count": len(record.items) if record else 0,
        },
    )
