"""
Consent management
Lifecycle, access decisions and emergency override for patient consent
"""

from .models import (
    AccessDecision, Consent, ConsentScope, ConsentStatus, ConsentUpdate,
    ScopeCategory, satisfies,
)
from .storage import ConsentRecordDB, ConsentStorage, InMemoryConsentStorage, SQLConsentStorage
from .engine import AccessDecisionEngine
from .manager import ConsentLifecycleManager
from .emergency import EmergencyAccessManager, EmergencyGrant
from .sweeper import ExpirySweeper

__all__ = [
    "AccessDecision",
    "Consent",
    "ConsentScope",
    "ConsentStatus",
    "ConsentUpdate",
    "ScopeCategory",
    "satisfies",
    "ConsentRecordDB",
    "ConsentStorage",
    "InMemoryConsentStorage",
    "SQLConsentStorage",
    "AccessDecisionEngine",
    "ConsentLifecycleManager",
    "EmergencyAccessManager",
    "EmergencyGrant",
    "ExpirySweeper",
]
