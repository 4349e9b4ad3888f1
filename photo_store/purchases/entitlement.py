"""
Entitlement engine — download state machine over a PurchaseRecord.
Pure Python, zero I/O, deterministic. Same record in → same decision out.

States per (session_id, product_id):
  NOT_PURCHASED  product absent from record.items              (terminal)
  AVAILABLE      item present, downloaded == False             (initial)
  CONSUMED       item present, downloaded == True              (terminal)

Single-release policy: the first admitted download releases the WHOLE line item
(all quantity_purchased copies, packaged together). quantity_purchased is carried
for packaging and labelling only — it is not a remaining-download counter.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from photo_store.purchases.schemas import (
    ConsumeResult,
    DenialReason,
    EntitlementEvaluation,
    EntitlementState,
    PurchaseRecord,
)

# ===========================================================================
# DENIAL MESSAGES (shown verbatim to customers)
# ===========================================================================

NOT_PURCHASED_MESSAGE = "This product was not part of your purchase."
SESSION_NOT_FOUND_MESSAGE = (
    "No purchase found for this session. The payment may still be processing — "
    "please refresh in a moment."
)


def already_downloaded_message(quantity_purchased: int) -> str:
    return (
        "This item has already been downloaded. "
        f"You purchased {quantity_purchased} copy/copies and they have been delivered."
    )


# ===========================================================================
# STATE QUERIES
# ===========================================================================

def evaluate(record: PurchaseRecord, product_id: str) -> EntitlementEvaluation:
    """Classify product_id within record. Never mutates."""
    item = record.find_item(product_id)
    if item is None:
        return EntitlementEvaluation(state=EntitlementState.not_purchased)
    state = EntitlementState.consumed if item.downloaded else EntitlementState.available
    return EntitlementEvaluation(state=state, quantity_purchased=item.quantity_purchased)


def can_download(record: PurchaseRecord, product_id: str) -> bool:
    return evaluate(record, product_id).state is EntitlementState.available


# ===========================================================================
# TRANSITION: AVAILABLE -> CONSUMED
# ===========================================================================

def try_consume(
    record: PurchaseRecord,
    product_id: str,
    now: Optional[datetime] = None,
) -> ConsumeResult:
    """
    Attempt the AVAILABLE -> CONSUMED transition for product_id.

    Returns admitted=True with a deep-copied record whose item is marked downloaded,
    or admitted=False with reason not_purchased / already_downloaded. Denials are
    ordinary outcomes; nothing is raised and the input record is left untouched.
    """
    evaluation = evaluate(record, product_id)

    if evaluation.state is EntitlementState.not_purchased:
        return ConsumeResult(
            admitted=False,
            reason=DenialReason.not_purchased,
            message=NOT_PURCHASED_MESSAGE,
        )

    if evaluation.state is EntitlementState.consumed:
        return ConsumeResult(
            admitted=False,
            item=record.find_item(product_id),
            reason=DenialReason.already_downloaded,
            message=already_downloaded_message(evaluation.quantity_purchased),
        )

    stamp = (now or datetime.now(timezone.utc)).isoformat()
    updated = record.model_copy(deep=True)
    item = updated.find_item(product_id)
    item.downloaded = True
    item.downloaded_at = stamp

    return ConsumeResult(admitted=True, updated_record=updated, item=item)


class EntitlementEngine:
    """
    Stateless facade over the module functions, injected into DownloadAuthorizer.
    Holding no state, one instance is shared process-wide.
    """

    def evaluate(self, record: PurchaseRecord, product_id: str) -> EntitlementEvaluation:
        return evaluate(record, product_id)

    def can_download(self, record: PurchaseRecord, product_id: str) -> bool:
        return can_download(record, product_id)

    def try_consume(
        self,
        record: PurchaseRecord,
        product_id: str,
        now: Optional[datetime] = None,
    ) -> ConsumeResult:
        return try_consume(record, product_id, now=now)
