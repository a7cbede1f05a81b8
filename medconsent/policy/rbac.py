"""
Role-Based Access Control for the consent engine
Closed role set, consent operations, and the single can_act predicate
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional
import structlog

from ..exceptions import OperationNotPermittedError, ValidationError

logger = structlog.get_logger(__name__)


class ProviderType(str, Enum):
    """Kinds of provider a consent can be granted to"""
    DOCTOR = "doctor"
    HOSPITAL = "hospital"
    PHARMACY = "pharmacy"
    LAB = "lab"


class Role(str, Enum):
    """Actor roles, as authenticated by the caller layer"""
    DOCTOR = "doctor"
    HOSPITAL = "hospital"
    PHARMACY = "pharmacy"
    LAB = "lab"
    PATIENT = "patient"
    ADMIN = "admin"

    @property
    def is_provider(self) -> bool:
        return self in _PROVIDER_ROLES

    @property
    def provider_type(self) -> Optional[ProviderType]:
        """Provider type a role acts as, None for patients and admins"""
        if not self.is_provider:
            return None
        return ProviderType(self.value)

    @classmethod
    def parse(cls, value: "Role | str") -> "Role":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown role: {value}", field="actor_role")


_PROVIDER_ROLES = frozenset({Role.DOCTOR, Role.HOSPITAL, Role.PHARMACY, Role.LAB})


class Operation(str, Enum):
    """Operations exposed by the consent service"""
    GRANT_CONSENT = "grant_consent"
    UPDATE_CONSENT = "update_consent"
    REVOKE_CONSENT = "revoke_consent"
    CHECK_CONSENT = "check_consent"
    VIEW_PATIENT_CONSENTS = "view_patient_consents"
    VIEW_ACCESS_LOGS = "view_access_logs"
    GRANT_FULL_CONSENT = "grant_full_consent"
    EMERGENCY_ACCESS = "emergency_access"
    LOG_ACCESS = "log_access"
    SWEEP_EXPIRED = "sweep_expired"


_PATIENT_OPERATIONS = frozenset({
    Operation.GRANT_CONSENT,
    Operation.UPDATE_CONSENT,
    Operation.REVOKE_CONSENT,
    Operation.CHECK_CONSENT,
    Operation.VIEW_PATIENT_CONSENTS,
    Operation.VIEW_ACCESS_LOGS,
    Operation.GRANT_FULL_CONSENT,
})

# Clinical providers can break the glass; pharmacies and labs cannot
_CLINICAL_PROVIDER_OPERATIONS = frozenset({
    Operation.CHECK_CONSENT,
    Operation.VIEW_PATIENT_CONSENTS,
    Operation.EMERGENCY_ACCESS,
    Operation.LOG_ACCESS,
})

_SUPPORT_PROVIDER_OPERATIONS = frozenset({
    Operation.CHECK_CONSENT,
    Operation.VIEW_PATIENT_CONSENTS,
    Operation.LOG_ACCESS,
})

ROLE_OPERATIONS: Dict[Role, FrozenSet[Operation]] = {
    Role.PATIENT: _PATIENT_OPERATIONS,
    Role.DOCTOR: _CLINICAL_PROVIDER_OPERATIONS,
    Role.HOSPITAL: _CLINICAL_PROVIDER_OPERATIONS,
    Role.PHARMACY: _SUPPORT_PROVIDER_OPERATIONS,
    Role.LAB: _SUPPORT_PROVIDER_OPERATIONS,
    Role.ADMIN: frozenset(Operation),
}


def can_act(role: "Role | str", operation: Operation) -> bool:
    """Check if a role may perform an operation"""
    try:
        role = Role.parse(role)
    except ValidationError:
        return False
    return operation in ROLE_OPERATIONS[role]


def require_operation(role: "Role | str", operation: Operation) -> Role:
    """Raise OperationNotPermittedError unless the role may perform the operation"""
    if not can_act(role, operation):
        logger.warning("Operation not permitted", role=str(role), operation=operation.value)
        raise OperationNotPermittedError(str(getattr(role, "value", role)), operation.value)
    return Role.parse(role)
