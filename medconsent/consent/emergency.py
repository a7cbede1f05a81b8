"""
Emergency override ("break-glass")
Time-boxed full consent for a clinician, never without an audit entry
"""

from typing import NamedTuple, Optional
import structlog

from .manager import ConsentLifecycleManager
from .models import Consent
from ..audit.models import AccessLog
from ..audit.writer import AuditLogWriter
from ..config import ConsentConfig, get_consent_config
from ..constants import AuditActions, DataLabels
from ..exceptions import ValidationError
from ..policy.rbac import ProviderType, Role

logger = structlog.get_logger(__name__)


class EmergencyGrant(NamedTuple):
    """Result of a break-glass request"""
    consent: Consent
    access_log: AccessLog


class EmergencyAccessManager:
    """Grants emergency access and records it in the audit trail"""

    def __init__(self, lifecycle: ConsentLifecycleManager, audit: AuditLogWriter,
                 config: Optional[ConsentConfig] = None):
        self.lifecycle = lifecycle
        self.audit = audit
        self.config = config or get_consent_config()

    def grant_emergency_access(self, patient_id: str, provider_id: str,
                               provider_type: "ProviderType | str",
                               provider_role: "Role | str",
                               reason: str,
                               ip_address: Optional[str] = None) -> EmergencyGrant:
        """
        Grant full consent for a fixed window after logging the override.

        The audit entry is written first. If it cannot be persisted the
        AuditLogError propagates and no consent is created.
        """
        if reason is None or not reason.strip():
            raise ValidationError("Emergency access requires a reason", field="reason")
        reason = reason.strip()

        # Surface unknown patients before anything reaches the audit trail
        self.lifecycle.patient_directory.get_patient_by_id(patient_id)

        with self.lifecycle.storage.key_lock(patient_id, provider_id):
            access_log = self.audit.log_access(
                patient_id=patient_id,
                accessed_by=provider_id,
                accessed_by_role=provider_role,
                action=AuditActions.emergency(reason),
                data_accessed=DataLabels.EMERGENCY_OVERRIDE,
                is_emergency_access=True,
                ip_address=ip_address,
            )

            consent = self.lifecycle.grant_full_consent(
                patient_id=patient_id,
                provider_id=provider_id,
                provider_type=provider_type,
                duration_hours=self.config.emergency_access_hours,
            )

        logger.warning("Emergency access granted", patient_id=patient_id,
                       provider_id=provider_id, consent_id=consent.id,
                       audit_id=access_log.id, expires_at=consent.expires_at)
        return EmergencyGrant(consent=consent, access_log=access_log)
