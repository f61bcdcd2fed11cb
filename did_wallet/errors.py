"""
Error taxonomy shared by the services and the HTTP layer.

Each error carries a user-facing message, a machine code and the HTTP status
the API answers with.
"""

from typing import Any, Dict, Optional


class WalletError(Exception):
    status = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": False, "error": self.message, "code": self.code}
        if self.extra:
            result["extra"] = self.extra
        return result


class AuthenticationError(WalletError):
    """Missing or invalid caller credential"""
    status = 401
    code = "UNAUTHORIZED"


class PermissionDeniedError(WalletError):
    """Caller is authenticated but lacks the required role"""
    status = 403
    code = "FORBIDDEN"


class NotFoundError(WalletError):
    status = 404
    code = "NOT_FOUND"


class ConflictError(WalletError):
    """Duplicate DID, duplicate application, illegal state transition"""
    status = 400
    code = "CONFLICT"


class ValidationError(WalletError):
    status = 400
    code = "VALIDATION_ERROR"


class EmptySelection(ValidationError):
    code = "EMPTY_SELECTION"

    def __init__(self, message: str = "Please select at least one credential to share"):
        super().__init__(message)


class StorageError(WalletError):
    status = 500
    code = "STORAGE_ERROR"


class ExternalServiceError(WalletError):
    """Anchoring network unreachable or answered non-2xx"""
    status = 500
    code = "EXTERNAL_SERVICE_ERROR"
