# exceptions.py — Error taxonomy for entity operations
# Each kind maps to one HTTP status; main.py renders them as JSON.


class ITSMError(Exception):
    status_code = 500
    error = "internal_error"

    def __init__(self, detail: str, status_code: int = None):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ITSMError):
    """Malformed id, missing field, or value outside an enum/length constraint."""
    status_code = 400
    error = "validation_error"


class NotFoundError(ITSMError):
    status_code = 404
    error = "not_found"


class AuthorizationError(ITSMError):
    """Caller lacks the ownership or role needed for this entity."""
    status_code = 403
    error = "not_authorized"


class UploadError(ITSMError):
    """File too large (400) or the storage backend failed (500)."""
    status_code = 400
    error = "upload_error"
