"""
Constants for the medconsent package

Audit action verbs, disclosed-data labels, decision reasons and
storage defaults shared by the consent and audit modules.
"""

from typing import Final, Tuple

# =============================================================================
# AUDIT ACTIONS
# =============================================================================

class AuditActions:
    """Action verbs recorded in access logs"""
    VIEW_PATIENT: Final[str] = "VIEW_PATIENT"
    VIEW_PATIENT_BY_HEALTH_ID: Final[str] = "VIEW_PATIENT_BY_HEALTH_ID"

    # Emergency entries carry the stated reason after this prefix
    EMERGENCY_ACCESS_PREFIX: Final[str] = "EMERGENCY_ACCESS: "

    @staticmethod
    def emergency(reason: str) -> str:
        return f"{AuditActions.EMERGENCY_ACCESS_PREFIX}{reason}"


# =============================================================================
# DISCLOSED DATA LABELS
# =============================================================================

class DataLabels:
    """Labels for categories of data actually disclosed to an actor"""
    BASIC_INFO: Final[str] = "basic_info"
    EMERGENCY_PROFILE: Final[str] = "emergency_profile"
    FULL_MEDICAL_HISTORY: Final[str] = "full_medical_history"

    EMERGENCY_OVERRIDE: Final[Tuple[str, ...]] = (
        EMERGENCY_PROFILE, FULL_MEDICAL_HISTORY
    )


# =============================================================================
# DECISION REASONS
# =============================================================================

class DecisionReasons:
    """Machine-readable reasons attached to access decisions"""
    GRANTED: Final[str] = "granted"
    NO_ACTIVE_GRANT: Final[str] = "no_active_grant"
    EXPIRED: Final[str] = "expired"
    SCOPE_NOT_GRANTED: Final[str] = "scope_not_granted"
    NO_FLAGS_GRANTED: Final[str] = "no_flags_granted"


# =============================================================================
# STORAGE
# =============================================================================

class TableNames:
    """Database table names"""
    CONSENTS: Final[str] = "consents"
    ACCESS_LOGS: Final[str] = "access_logs"
