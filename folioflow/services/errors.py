"""
folioflow Error Handling

Specific error types with user-facing messages and debugging context.

Every error a chat user can trigger maps to one bucket of the taxonomy:
validation, authorization, not-found, conflict or infrastructure. The
inbound handler turns them into reply text; the reports API turns them
into HTTP errors.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors
    VALIDATION = "VALIDATION"
    MALFORMED_CODE = "MALFORMED_CODE"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_AMOUNT = "INVALID_AMOUNT"

    # Auth errors
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_API_KEY = "INVALID_API_KEY"

    # Lookup errors
    NOT_FOUND = "NOT_FOUND"

    # State errors
    CONFLICT = "CONFLICT"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"

    # Infrastructure errors
    DATABASE_ERROR = "DATABASE_ERROR"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"


class FolioflowError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    @property
    def user_message(self) -> str:
        """Text safe to send back to the chat user."""
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(FolioflowError):
    """Malformed input. No state change."""

    def __init__(self, message: str, field: Optional[str] = None, code: ErrorCode = ErrorCode.VALIDATION):
        super().__init__(
            code=code,
            message=message,
            context={"field": field} if field else None,
        )


class AuthorizationError(FolioflowError):
    """The actor's role may not perform this edge."""

    def __init__(self, message: str, role: Optional[str] = None, edge: Optional[str] = None):
        context = {}
        if role:
            context["role"] = role
        if edge:
            context["edge"] = edge
        super().__init__(code=ErrorCode.FORBIDDEN, message=message, context=context)


class NotFoundError(FolioflowError):
    """Record, actor or org unit does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{kind} {identifier} does not exist.",
            context={"kind": kind, "identifier": identifier},
        )


class ConflictError(FolioflowError):
    """Record is already in the target state or in an incompatible one."""

    def __init__(self, message: str, current_status: Optional[str] = None, code: ErrorCode = ErrorCode.CONFLICT):
        super().__init__(
            code=code,
            message=message,
            context={"current_status": current_status} if current_status else None,
        )


class ConfirmationRequired(ConflictError):
    """A second, explicit confirmation message is needed before proceeding."""

    def __init__(self, message: str, record_code: str, pending: int = 0):
        super().__init__(message, code=ErrorCode.CONFIRMATION_REQUIRED)
        self.context.update({"record_code": record_code, "pending": pending})


class InfrastructureError(FolioflowError):
    """Store, transport or storage unavailable."""

    def __init__(self, service: str, detail: str):
        code_map = {
            "database": ErrorCode.DATABASE_ERROR,
            "transport": ErrorCode.TRANSPORT_ERROR,
            "storage": ErrorCode.STORAGE_ERROR,
        }
        super().__init__(
            code=code_map.get(service.lower(), ErrorCode.DATABASE_ERROR),
            message="We could not process your request. Please try again in a minute.",
            detail=detail,
            context={"service": service}
        )


class ExternalServiceError(InfrastructureError):
    """A collaborator (transport, object store) is not configured or failed."""

    def __init__(self, service: str, detail: str, message: Optional[str] = None):
        super().__init__(service, detail)
        if message:
            self.message = message


def to_http_exception(error: FolioflowError) -> HTTPException:
    """Convert FolioflowError to HTTPException."""
    status_map = {
        ErrorCode.VALIDATION: 400,
        ErrorCode.MALFORMED_CODE: 400,
        ErrorCode.MISSING_FIELD: 400,
        ErrorCode.INVALID_AMOUNT: 400,
        ErrorCode.UNAUTHENTICATED: 401,
        ErrorCode.INVALID_API_KEY: 401,
        ErrorCode.FORBIDDEN: 403,
        ErrorCode.NOT_FOUND: 404,
        ErrorCode.CONFLICT: 409,
        ErrorCode.CONFIRMATION_REQUIRED: 409,
        ErrorCode.DATABASE_ERROR: 500,
        ErrorCode.TRANSPORT_ERROR: 502,
        ErrorCode.STORAGE_ERROR: 502,
    }

    return HTTPException(
        status_code=status_map.get(error.code, 500),
        detail=error.to_dict()
    )
