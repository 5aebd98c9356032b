"""Error taxonomy shared by every service.

Each error carries the HTTP status the API layer maps it to and a stable
machine-readable ``code``.
"""


class LedgerServiceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", code: str = None):
        super().__init__(message or self.code)
        if code:
            self.code = code


class ValidationError(LedgerServiceError):
    status_code = 400
    code = "validation_error"


class LegalAcceptanceRequired(ValidationError):
    code = "legal_accept_required"


class MissingIdentityError(ValidationError):
    code = "missing_identity"


class UnauthorizedError(LedgerServiceError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(LedgerServiceError):
    status_code = 404
    code = "not_found"


class ConflictError(LedgerServiceError):
    status_code = 409
    code = "conflict"


class AlreadyReferredError(ConflictError):
    code = "already_referred"


class BalanceMismatchError(LedgerServiceError):
    status_code = 422
    code = "balance_mismatch"


class WebhookSignatureError(LedgerServiceError):
    status_code = 400
    code = "invalid_signature"


class UpstreamError(LedgerServiceError):
    status_code = 502
    code = "upstream_error"
