"""
Custom Exceptions for the medconsent package

Provides a unified exception hierarchy for consent lifecycle, access
decisions, audit logging and storage. Every error carries a machine-readable
code so the caller layer can map it onto its own transport.
"""

from typing import Optional, Dict, Any, List


class ConsentServiceError(Exception):
    """
    Base exception for all medconsent errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        error_code: str = "CONSENT_SERVICE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        result: Dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# NOT FOUND
# =============================================================================

class NotFoundError(ConsentServiceError):
    """Raised when a patient, provider or consent record does not exist"""

    def __init__(
        self,
        message: str,
        error_code: str = "NOT_FOUND",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code, details)


class PatientNotFoundError(NotFoundError):
    """Raised when the patient directory has no such patient"""

    def __init__(self, patient_id: str):
        super().__init__(
            message="Patient not found",
            error_code="PATIENT_NOT_FOUND",
            details={"patient_id": patient_id}
        )


class ProviderNotFoundError(NotFoundError):
    """Raised when the provider directory has no such provider"""

    def __init__(self, provider_id: str):
        super().__init__(
            message="Provider not found",
            error_code="PROVIDER_NOT_FOUND",
            details={"provider_id": provider_id}
        )


class ConsentNotFoundError(NotFoundError):
    """Raised when a consent record id is unknown"""

    def __init__(self, consent_id: str):
        super().__init__(
            message="Consent not found",
            error_code="CONSENT_NOT_FOUND",
            details={"consent_id": consent_id}
        )


# =============================================================================
# FORBIDDEN
# =============================================================================

class ForbiddenError(ConsentServiceError):
    """Raised when the actor lacks the right to perform an operation"""

    def __init__(
        self,
        message: str,
        error_code: str = "FORBIDDEN",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code, details)


class OwnershipError(ForbiddenError):
    """Raised when an actor touches a record that belongs to another patient"""

    def __init__(
        self,
        message: str = "You can only revoke your own consent",
        patient_id: Optional[str] = None,
        consent_id: Optional[str] = None
    ):
        details: Dict[str, Any] = {}
        if patient_id:
            details["patient_id"] = patient_id
        if consent_id:
            details["consent_id"] = consent_id
        super().__init__(message, "NOT_OWNER", details)


class OperationNotPermittedError(ForbiddenError):
    """Raised when a role is not allowed to invoke an operation"""

    def __init__(self, role: str, operation: str):
        super().__init__(
            message=f"Role '{role}' may not perform '{operation}'",
            error_code="OPERATION_NOT_PERMITTED",
            details={"role": role, "operation": operation}
        )


class ConsentDeniedError(ForbiddenError):
    """Raised when consent is missing or does not cover the requested data"""

    def __init__(
        self,
        patient_id: str,
        provider_id: str,
        reason: str,
        categories: Optional[List[str]] = None
    ):
        details: Dict[str, Any] = {
            "patient_id": patient_id,
            "provider_id": provider_id,
            "reason": reason,
        }
        if categories:
            details["categories"] = categories
        super().__init__(
            message=f"Consent denied: {reason}",
            error_code="CONSENT_DENIED",
            details=details
        )


# =============================================================================
# BAD REQUEST
# =============================================================================

class BadRequestError(ConsentServiceError):
    """Raised for invalid input or an invalid state transition"""

    def __init__(
        self,
        message: str,
        error_code: str = "BAD_REQUEST",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code, details)


class InvalidStateTransitionError(BadRequestError):
    """Raised when a consent is not in a state that allows the operation"""

    def __init__(self, consent_id: str, status: str, message: str = "Consent is not active"):
        super().__init__(
            message=message,
            error_code="INVALID_STATE_TRANSITION",
            details={"consent_id": consent_id, "status": status}
        )


class InvalidScopeError(BadRequestError):
    """Raised when an unknown scope category is requested"""

    def __init__(
        self,
        scope: str,
        valid_scopes: Optional[List[str]] = None
    ):
        details: Dict[str, Any] = {"invalid_scope": scope}
        if valid_scopes:
            details["valid_scopes"] = valid_scopes
        super().__init__(
            message=f"Invalid consent scope: {scope}",
            error_code="INVALID_SCOPE",
            details=details
        )


class ValidationError(BadRequestError):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, "VALIDATION_ERROR", details)


# =============================================================================
# UNAVAILABLE
# =============================================================================

class UnavailableError(ConsentServiceError):
    """Raised when storage or transport is unavailable"""

    def __init__(
        self,
        message: str,
        error_code: str = "UNAVAILABLE",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code, details)


class StorageUnavailableError(UnavailableError):
    """Raised when a storage adapter operation fails"""

    def __init__(
        self,
        message: str = "Storage operation failed",
        operation: Optional[str] = None,
        reason: Optional[str] = None,
        error_code: str = "STORAGE_UNAVAILABLE"
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if reason:
            details["reason"] = reason
        super().__init__(message, error_code, details)


class DuplicateActiveGrantError(StorageUnavailableError):
    """Raised when a write would create a second GRANTED consent for one pair"""

    def __init__(self, patient_id: str, provider_id: str):
        super().__init__(
            message="An active consent already exists for this patient and provider",
            operation="save",
            error_code="DUPLICATE_ACTIVE_GRANT"
        )
        self.details.update({"patient_id": patient_id, "provider_id": provider_id})


class AuditLogError(StorageUnavailableError):
    """Raised when an audit log entry could not be written"""

    def __init__(
        self,
        message: str = "Failed to write audit log",
        reason: Optional[str] = None
    ):
        super().__init__(
            message=message,
            operation="log_access",
            reason=reason,
            error_code="AUDIT_LOG_ERROR"
        )


# =============================================================================
# INTEGRITY
# =============================================================================

class HashError(ConsentServiceError):
    """Raised for an unsupported hash algorithm"""

    def __init__(self, algorithm: str):
        super().__init__(
            message=f"Unsupported hash algorithm: {algorithm}",
            error_code="UNSUPPORTED_HASH_ALGORITHM",
            details={"algorithm": algorithm}
        )
