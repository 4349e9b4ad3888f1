"""
errors.py — exception types shared by the purchase, checkout and download layers.

Entitlement denials are NOT exceptions (they are returned as AuthorizationResult
data). Everything here is either a rejected request or an infrastructure fault;
main.py maps each type onto the standard {error: {code, message, details}} envelope.
"""


class PurchaseStoreError(Exception):
    """The key-value store failed, or a contended key never settled."""


class PurchaseNotFoundError(LookupError):
    """Raised by PurchaseRepository.update when no record exists for the session."""

    def __init__(self, session_id: str):
        super().__init__(f"No purchase found for session '{session_id}'")
        self.session_id = session_id


class InvalidSessionIdError(ValueError):
    """Session id does not have the payment provider's shape."""


class MissingEmailError(ValueError):
    """Completed checkout session carries no customer email."""


class InvalidSignatureError(Exception):
    """Webhook payload failed authenticity verification."""


class PaymentProviderError(Exception):
    """The payment provider rejected or failed a checkout call."""

    def __init__(self, message: str, user_error: bool = False):
        super().__init__(message)
        # True for card / invalid-request failures the customer can fix
        self.user_error = user_error


class MalformedEventError(ValueError):
    """Authentic webhook event that lacks the fields ingestion needs (e.g. session id)."""
