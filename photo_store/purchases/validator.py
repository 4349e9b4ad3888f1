"""
Purchase request validation — runs BEFORE any store access.

Rules:
  1. session_id present and at most 255 characters
  2. session_id starts with the provider prefix (settings.session_id_prefix, "cs_")
  3. session_id contains only letters, digits and underscores
  4. product_id present and at most 255 characters

Violations raise InvalidSessionIdError / ValueError so the route layer builds the
standard error envelope; nothing here touches Redis.
"""
from __future__ import annotations

import re

from photo_store.config import settings
from photo_store.errors import InvalidSessionIdError

_MAX_ID_LENGTH = 255
_SESSION_BODY = re.compile(r"^[A-Za-z0-9_]+$")


def validate_session_id(session_id: str | None) -> str:
    """
    Return session_id unchanged if it has the checkout-session shape.

    Raises:
        InvalidSessionIdError: missing, too long, wrong prefix, or bad characters.
    """
    if not session_id:
        raise InvalidSessionIdError("session_id is required")
    if len(session_id) > _MAX_ID_LENGTH:
        raise InvalidSessionIdError("Invalid session ID format")

    prefix = settings.session_id_prefix
    if not session_id.startswith(prefix) or len(session_id) == len(prefix):
        raise InvalidSessionIdError(
            f'Invalid session ID format. Session ID must start with "{prefix}"'
        )
    if not _SESSION_BODY.match(session_id):
        raise InvalidSessionIdError("Invalid session ID format")
    return session_id


def validate_product_id(product_id: str | None) -> str:
    if not product_id or not product_id.strip():
        raise ValueError("product_id is required")
    if len(product_id) > _MAX_ID_LENGTH:
        raise ValueError("product_id is too long")
    return product_id
