"""
Shared fixtures for the photo store test suite.

Redis is replaced by fakeredis (a real in-process Redis implementation, including
WATCH/MULTI/EXEC), so repository transactions run exactly as in production.
Stripe is replaced by a MagicMock gateway — no network calls.

sys.path is configured so the suite runs from the repository root or from
photo_store/tests/ without an editable install.
"""
import sys
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer

_project_root = Path(__file__).parent.parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from photo_store.purchases.schemas import PurchasedItem, PurchaseRecord  # noqa: E402
from photo_store.store import PurchaseRepository  # noqa: E402


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_item(product_id: str = "p1", quantity: int = 1, **overrides: Any) -> PurchasedItem:
    fields = {
        "product_id": product_id,
        "title": f"Photo {product_id}",
        "file_name": f"{product_id}.jpg",
        "asset_ref": f"/Images/High-Quality Photos/{product_id}.jpg",
        "image_src": f"/Images/previews/{product_id}.webp",
        "quantity_purchased": quantity,
    }
    fields.update(overrides)
    return PurchasedItem(**fields)


def make_record(session_id: str = "cs_test_1", items: list[PurchasedItem] | None = None) -> PurchaseRecord:
    return PurchaseRecord(
        session_id=session_id,
        customer_email="a@b.com",
        items=[make_item("p1", 3)] if items is None else items,
        payment_status="paid",
        created_at="2026-01-05T10:00:00+00:00",
        finalized_at="2026-01-05T10:00:00+00:00",
    )


def make_completed_event(
    session_id: str = "cs_test_1",
    email: str | None = "a@b.com",
    metadata: dict | None = None,
    created: int = 1767607200,
) -> dict:
    session: dict[str, Any] = {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": "paid",
        "customer_email": email,
        "customer_details": {},
        "metadata": metadata or {},
    }
    return {
        "id": "evt_test_1",
        "type": "checkout.session.completed",
        "created": created,
        "data": {"object": session},
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def redis_server() -> FakeServer:
    return FakeServer()


@pytest_asyncio.fixture
async def redis_client(redis_server: FakeServer):
    client = FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def repository(redis_client) -> PurchaseRepository:
    return PurchaseRepository(redis_client, max_attempts=5)


@pytest.fixture
def gateway() -> MagicMock:
    """Stand-in for StripeGateway: no line items unless a test sets them."""
    mock = MagicMock()
    mock.construct_event.return_value = make_completed_event()
    mock.fetch_line_items = AsyncMock(return_value=[])
    mock.create_checkout_session = AsyncMock()
    return mock
