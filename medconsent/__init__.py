"""
medconsent
Patient consent and access control: scoped grants, access decisions,
emergency override and a tamper-evident access audit trail
"""

__version__ = "0.1.0"

# Core exports
from .config import ConsentConfig, get_consent_config, update_consent_config

# Consent management
from .consent import (
    AccessDecision, AccessDecisionEngine, Consent, ConsentLifecycleManager,
    ConsentScope, ConsentStatus, ConsentUpdate, EmergencyAccessManager,
    EmergencyGrant, ExpirySweeper, ScopeCategory, satisfies,
)

# Audit trail
from .audit import AccessLog, AuditLogWriter

# Policy enforcement
from .policy import Operation, ProviderType, Role, can_act

# Caller-facing service
from .service import (
    Actor, ConsentService, PatientDataAccess,
    build_consent_service, get_consent_service, init_consent_service,
)

from .exceptions import ConsentServiceError

__all__ = [
    # Config
    "ConsentConfig",
    "get_consent_config",
    "update_consent_config",

    # Consent
    "AccessDecision",
    "AccessDecisionEngine",
    "Consent",
    "ConsentLifecycleManager",
    "ConsentScope",
    "ConsentStatus",
    "ConsentUpdate",
    "EmergencyAccessManager",
    "EmergencyGrant",
    "ExpirySweeper",
    "ScopeCategory",
    "satisfies",

    # Audit
    "AccessLog",
    "AuditLogWriter",

    # Policy
    "Operation",
    "ProviderType",
    "Role",
    "can_act",

    # Service
    "Actor",
    "ConsentService",
    "PatientDataAccess",
    "build_consent_service",
    "get_consent_service",
    "init_consent_service",

    # Errors
    "ConsentServiceError",
]
