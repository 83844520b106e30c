"""
Storefront error taxonomy.

Hard-gate errors (Validation, NotFound, Identity, Payment, Replay) abort the
order pipeline and map straight to an HTTP status. LedgerError during commit
is fatal (500). Fulfillment/Attestation errors never leave the orchestrator:
they are caught and recorded on the order.
"""

from typing import Optional


class StorefrontError(Exception):
    """Base class. Carries the HTTP status and a JSON-safe detail dict."""

    status_code: int = 500
    error: str = "Internal error"

    def __init__(self, message: str, detail: Optional[dict] = None, error: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        if error:
            self.error = error

    def to_dict(self) -> dict:
        body = {"error": self.error, "message": self.message}
        body.update(self.detail)
        return body


class ValidationError(StorefrontError):
    status_code = 400
    error = "Invalid request"


class NotFoundError(StorefrontError):
    status_code = 404
    error = "Not found"


class IdentityError(StorefrontError):
    """Agent missing, not owned by the claimed wallet, or registry unreachable."""
    status_code = 403
    error = "Agent verification failed"


class AccessDeniedError(StorefrontError):
    """Caller may not read this resource (order lookup wallet mismatch, admin token)."""
    status_code = 403
    error = "Access denied"


class PaymentError(StorefrontError):
    """Missing, failed, underpaid or unverifiable payment. Always 402."""
    status_code = 402
    error = "Payment verification failed"


class ReplayError(StorefrontError):
    """Payment reference already consumed by another order."""
    status_code = 400
    error = "Payment already used"


class LedgerError(StorefrontError):
    status_code = 500
    error = "Order creation failed"


class FulfillmentError(StorefrontError):
    """Provider rejected or unreachable. Non-fatal to the order."""
    status_code = 502
    error = "Fulfillment failed"


class AttestationError(StorefrontError):
    """Receipt publish failed. Non-fatal to the order."""
    status_code = 502
    error = "Attestation failed"


class UploadError(StorefrontError):
    """Permanent-store upload failed. Swallowed by the receipt minter."""
    status_code = 502
    error = "Upload failed"
