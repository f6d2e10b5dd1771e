"""
Error taxonomy shared by the webhook handlers, the captive endpoints
and the payment initiation service.
"""

VALIDATION_ERROR = "validation_error"
NOT_FOUND = "not_found"
DUPLICATE = "duplicate"
DUPLICATE_PURCHASE = "duplicate_purchase"
AMOUNT_MISMATCH = "amount_mismatch"
GATEWAY_ERROR = "gateway_error"
INTERNAL_ERROR = "internal_error"


class BillingError(Exception):
    """Base class for errors the HTTP layer turns into JSON responses."""

    code = INTERNAL_ERROR
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        body = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BillingError):
    code = VALIDATION_ERROR
    status_code = 400


class NotFoundError(BillingError):
    code = NOT_FOUND
    status_code = 404


class GatewayError(BillingError):
    code = GATEWAY_ERROR
    status_code = 502


class ConflictError(BillingError):
    code = DUPLICATE
    status_code = 409


class DuplicatePurchaseError(ConflictError):
    """The purchaser already has an STK prompt in flight; point them back at it."""

    code = DUPLICATE_PURCHASE

    def __init__(self, message, checkout_request_id, amount=None, created_at=None):
        super().__init__(message)
        self.checkout_request_id = checkout_request_id
        self.amount = amount
        self.created_at = created_at

    @property
    def polling_url(self):
        return f"/api/captive/payment-status?checkout_id={self.checkout_request_id}"

    def to_dict(self):
        body = super().to_dict()
        body["existing_payment"] = {
            "checkout_id": self.checkout_request_id,
            "amount": self.amount,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        body["polling_url"] = self.polling_url
        return body
