"""
Error taxonomy for the registration and ticket APIs.

Every API failure is rendered as `{"success": false, "error": "..."}` by the
handlers registered in main.py. Best-effort side effects (mail, admin
notifications, index creation) never raise; they log and move on.
"""


class ApiException(Exception):
    status_code = 500
    message = "An unexpected error occurred."

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.message)
        if message is not None:
            self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"success": False, "error": self.message}


class ValidationError(ApiException):
    status_code = 400
    message = "Invalid request."


class InvalidPayload(ValidationError):
    """No ticket key could be extracted from a scan payload."""
    message = "Invalid ticket"


class NotFound(ApiException):
    status_code = 404
    message = "Not found"


class TicketNotFound(NotFound):
    message = "Ticket not found"

    def __init__(self, message=None, key=None):
        super().__init__(message)
        self.key = key

    def to_dict(self):
        body = super().to_dict()
        if self.key is not None:
            body["debug"] = {"extracted": self.key}
        return body


class PaymentRequired(ApiException):
    """The ticket is valid but its payment has not completed."""
    status_code = 402
    message = "Payment not completed for this ticket"


class Conflict(ApiException):
    status_code = 409
    message = "Conflict"


class UpstreamFailure(ApiException):
    status_code = 502
    message = "Failed to create payment order"

    def __init__(self, message=None, raw=None):
        super().__init__(message)
        self.raw = raw

    def to_dict(self):
        body = super().to_dict()
        if self.raw is not None:
            body["raw"] = self.raw
        return body


class StorageExhausted(ApiException):
    """Retry attempts exhausted while assigning a unique ticket code."""
    status_code = 500
    message = "Could not allocate a unique ticket code"
