"""
Consent service
Public entry point: role and ownership checks in front of the consent engine
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional
import structlog
from pydantic import BaseModel, ConfigDict, field_validator

from .audit import AccessLog, AccessLogStorage, AuditLogWriter, InMemoryAccessLogStorage, SQLAccessLogStorage
from .config import ConsentConfig, get_consent_config
from .consent import (
    AccessDecision,
    AccessDecisionEngine,
    Consent,
    ConsentLifecycleManager,
    ConsentScope,
    ConsentStorage,
    ConsentUpdate,
    EmergencyAccessManager,
    EmergencyGrant,
    ExpirySweeper,
    InMemoryConsentStorage,
    ScopeCategory,
    SQLConsentStorage,
)
from .constants import AuditActions, DataLabels
from .db import create_db_engine
from .directory import PatientDirectory, ProviderDirectory
from .exceptions import OwnershipError, ValidationError
from .logging import configure_logging
from .policy.rbac import Operation, ProviderType, Role, require_operation
from .utils.clock import Clock, utc_now
from .utils.ids import validate_id

logger = structlog.get_logger(__name__)


class Actor(BaseModel):
    """Authenticated caller, as established by the transport layer"""
    model_config = ConfigDict(frozen=True)

    actor_id: str
    actor_role: Role

    @field_validator("actor_role", mode="before")
    @classmethod
    def parse_role(cls, value):
        return Role.parse(value)

    @property
    def is_admin(self) -> bool:
        return self.actor_role == Role.ADMIN


class PatientDataAccess(NamedTuple):
    """Outcome of a provider read: the decision, what was disclosed and its log entry"""
    decision: AccessDecision
    disclosed: List[ScopeCategory]
    access_log: AccessLog


class ConsentService:
    """Authorizes callers and delegates to the lifecycle, decision and audit components"""

    def __init__(self, lifecycle: ConsentLifecycleManager, engine: AccessDecisionEngine,
                 audit: AuditLogWriter, emergency: EmergencyAccessManager,
                 config: Optional[ConsentConfig] = None,
                 sweeper: Optional[ExpirySweeper] = None):
        self.lifecycle = lifecycle
        self.engine = engine
        self.audit = audit
        self.emergency = emergency
        self.config = config or get_consent_config()
        self.sweeper = sweeper

    # ------------------------------------------------------------------
    # Patient-facing operations
    # ------------------------------------------------------------------

    def grant_consent(self, actor: Actor, granted_to: str,
                      granted_to_type: "ProviderType | str",
                      scope: "ConsentScope | Dict[str, bool]",
                      expires_at: Optional[datetime] = None,
                      patient_id: Optional[str] = None) -> Consent:
        require_operation(actor.actor_role, Operation.GRANT_CONSENT)
        patient_id = self._acting_patient(actor, patient_id)
        granted_to = validate_id(granted_to, "granted_to")

        return self.lifecycle.grant_consent(
            patient_id=patient_id,
            granted_to=granted_to,
            granted_to_type=granted_to_type,
            scope=scope,
            expires_at=expires_at,
        )

    def update_consent(self, actor: Actor, consent_id: str,
                       update: "ConsentUpdate | Dict[str, Any]") -> Consent:
        require_operation(actor.actor_role, Operation.UPDATE_CONSENT)
        consent_id = validate_id(consent_id, "consent_id", expected_prefix="consent_")

        consent = self.lifecycle.storage.get_by_id(consent_id)
        if not actor.is_admin and consent.patient_id != actor.actor_id:
            raise OwnershipError("You can only update your own consent",
                                 patient_id=actor.actor_id, consent_id=consent_id)
        return self.lifecycle.update_consent(consent_id, update)

    def revoke_consent(self, actor: Actor, consent_id: str) -> Consent:
        require_operation(actor.actor_role, Operation.REVOKE_CONSENT)
        consent_id = validate_id(consent_id, "consent_id", expected_prefix="consent_")

        if actor.is_admin:
            owner = self.lifecycle.storage.get_by_id(consent_id).patient_id
            logger.info("Admin revoking consent", admin_id=actor.actor_id,
                        consent_id=consent_id, patient_id=owner)
            return self.lifecycle.revoke_consent(owner, consent_id)
        return self.lifecycle.revoke_consent(actor.actor_id, consent_id)

    def grant_full_consent(self, actor: Actor, provider_id: str,
                           provider_type: "ProviderType | str",
                           duration_hours: Optional[float] = None,
                           patient_id: Optional[str] = None) -> Consent:
        require_operation(actor.actor_role, Operation.GRANT_FULL_CONSENT)
        patient_id = self._acting_patient(actor, patient_id)
        provider_id = validate_id(provider_id, "provider_id")
        if duration_hours is not None and duration_hours <= 0:
            raise ValidationError("duration_hours must be positive", field="duration_hours")

        return self.lifecycle.grant_full_consent(
            patient_id=patient_id,
            provider_id=provider_id,
            provider_type=provider_type,
            duration_hours=duration_hours,
        )

    def get_patient_consents(self, actor: Actor, patient_id: str) -> List[Consent]:
        """Active consents; providers only see the ones granted to them"""
        require_operation(actor.actor_role, Operation.VIEW_PATIENT_CONSENTS)
        patient_id = validate_id(patient_id, "patient_id")

        if actor.actor_role == Role.PATIENT:
            self._require_self(actor, patient_id)
        consents = self.lifecycle.get_patient_consents(patient_id)
        if actor.actor_role.is_provider:
            consents = [c for c in consents if c.granted_to == actor.actor_id]
        return consents

    def get_patient_access_logs(self, actor: Actor, patient_id: str,
                                start_date: Optional[datetime] = None,
                                end_date: Optional[datetime] = None) -> List[AccessLog]:
        require_operation(actor.actor_role, Operation.VIEW_ACCESS_LOGS)
        patient_id = validate_id(patient_id, "patient_id")
        self._require_self(actor, patient_id)
        return self.audit.get_patient_access_logs(patient_id, start_date, end_date)

    # ------------------------------------------------------------------
    # Provider-facing operations
    # ------------------------------------------------------------------

    def check_consent(self, actor: Actor, patient_id: str, provider_id: Optional[str] = None,
                      required_category: "ScopeCategory | str | None" = None) -> AccessDecision:
        """Providers check on their own behalf, patients on their own records"""
        require_operation(actor.actor_role, Operation.CHECK_CONSENT)
        patient_id = validate_id(patient_id, "patient_id")

        if actor.actor_role.is_provider:
            if provider_id is not None and provider_id != actor.actor_id:
                raise OwnershipError("Providers can only check their own consent",
                                     patient_id=patient_id)
            provider_id = actor.actor_id
        else:
            if actor.actor_role == Role.PATIENT:
                self._require_self(actor, patient_id)
            provider_id = validate_id(provider_id, "provider_id")

        return self.engine.check_consent(patient_id, provider_id, required_category)

    def grant_emergency_access(self, actor: Actor, patient_id: str, reason: str,
                               ip_address: Optional[str] = None) -> EmergencyGrant:
        require_operation(actor.actor_role, Operation.EMERGENCY_ACCESS)
        patient_id = validate_id(patient_id, "patient_id")

        # Admins break the glass on behalf of the hospital
        provider_type = actor.actor_role.provider_type or ProviderType.HOSPITAL
        return self.emergency.grant_emergency_access(
            patient_id=patient_id,
            provider_id=actor.actor_id,
            provider_type=provider_type,
            provider_role=actor.actor_role,
            reason=reason,
            ip_address=ip_address,
        )

    def log_access(self, actor: Actor, patient_id: str, action: str,
                   data_accessed: Iterable[str], is_emergency_access: bool = False,
                   ip_address: Optional[str] = None) -> AccessLog:
        require_operation(actor.actor_role, Operation.LOG_ACCESS)
        patient_id = validate_id(patient_id, "patient_id")

        return self.audit.log_access(
            patient_id=patient_id,
            accessed_by=actor.actor_id,
            accessed_by_role=actor.actor_role,
            action=action,
            data_accessed=data_accessed,
            is_emergency_access=is_emergency_access,
            ip_address=ip_address,
        )

    def access_patient_data(self, actor: Actor, patient_id: str,
                            categories: Iterable["ScopeCategory | str"] = (),
                            action: str = AuditActions.VIEW_PATIENT,
                            ip_address: Optional[str] = None) -> PatientDataAccess:
        """
        Decide what a provider may see and record the access in one step.

        Basic patient info is always disclosed and logged. Requested categories
        are disclosed only when the current consent covers them. If the audit
        entry cannot be written the whole request fails with AuditLogError.
        """
        require_operation(actor.actor_role, Operation.LOG_ACCESS)
        patient_id = validate_id(patient_id, "patient_id")
        self.lifecycle.patient_directory.get_patient_by_id(patient_id)
        requested = [ScopeCategory.parse(c) for c in categories]

        decision = self.engine.check_consent(patient_id, actor.actor_id)
        if decision.has_consent:
            disclosed = [c for c in requested if decision.consent.scope.allows(c)]
        else:
            disclosed = []

        access_log = self.audit.log_access(
            patient_id=patient_id,
            accessed_by=actor.actor_id,
            accessed_by_role=actor.actor_role,
            action=action,
            data_accessed=[DataLabels.BASIC_INFO] + [c.value for c in disclosed],
            ip_address=ip_address,
        )
        return PatientDataAccess(decision=decision, disclosed=disclosed, access_log=access_log)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def expire_stale_grants(self, actor: Actor) -> int:
        require_operation(actor.actor_role, Operation.SWEEP_EXPIRED)
        return self.lifecycle.expire_stale_grants()

    def export_consent_history(self, actor: Actor, patient_id: str) -> Dict[str, Any]:
        require_operation(actor.actor_role, Operation.VIEW_PATIENT_CONSENTS)
        patient_id = validate_id(patient_id, "patient_id")
        if not actor.is_admin:
            self._require_self(actor, patient_id)
        return self.lifecycle.export_consent_history(patient_id)

    def _acting_patient(self, actor: Actor, patient_id: Optional[str]) -> str:
        """Patient a write is made for; admins must name one"""
        if actor.is_admin:
            return validate_id(patient_id, "patient_id")
        patient_id = validate_id(patient_id or actor.actor_id, "patient_id")
        self._require_self(actor, patient_id)
        return patient_id

    def _require_self(self, actor: Actor, patient_id: str) -> None:
        if actor.is_admin or actor.actor_id == patient_id:
            return
        logger.warning("Cross-patient request refused", actor_id=actor.actor_id,
                       actor_role=actor.actor_role.value, patient_id=patient_id)
        raise OwnershipError("Patients can only act on their own records",
                             patient_id=patient_id)


def build_consent_service(patient_directory: PatientDirectory,
                          provider_directory: Optional[ProviderDirectory] = None,
                          config: Optional[ConsentConfig] = None,
                          clock: Clock = utc_now,
                          consent_storage: Optional[ConsentStorage] = None,
                          audit_storage: Optional[AccessLogStorage] = None) -> ConsentService:
    """Wire storages and components from configuration"""
    config = config or get_consent_config()

    if consent_storage is None or audit_storage is None:
        if config.uses_memory_storage:
            consent_storage = consent_storage or InMemoryConsentStorage()
            audit_storage = audit_storage or InMemoryAccessLogStorage()
        else:
            engine = create_db_engine(config.database_url, echo=config.database_echo)
            consent_storage = consent_storage or SQLConsentStorage(config.database_url, engine=engine)
            audit_storage = audit_storage or SQLAccessLogStorage(config.database_url, engine=engine)

    lifecycle = ConsentLifecycleManager(consent_storage, patient_directory, provider_directory,
                                        config=config, clock=clock)
    audit = AuditLogWriter(audit_storage, config=config, clock=clock)
    sweeper = None
    if config.expiry_sweep_enabled:
        sweeper = ExpirySweeper(lifecycle, config.expiry_sweep_interval_seconds)

    logger.info("Consent service initialised", storage=type(consent_storage).__name__,
                audit_storage=type(audit_storage).__name__)
    return ConsentService(
        lifecycle=lifecycle,
        engine=AccessDecisionEngine(consent_storage, config=config, clock=clock),
        audit=audit,
        emergency=EmergencyAccessManager(lifecycle, audit, config=config),
        config=config,
        sweeper=sweeper,
    )


# Global service instance
_consent_service: Optional[ConsentService] = None


def init_consent_service(patient_directory: PatientDirectory, **kwargs) -> ConsentService:
    """Build the process-wide service instance"""
    global _consent_service
    config = kwargs.get("config") or get_consent_config()
    configure_logging(json_output=config.log_json, level=config.log_level)
    if _consent_service is not None and _consent_service.sweeper is not None:
        _consent_service.sweeper.stop()
    _consent_service = build_consent_service(patient_directory, **kwargs)
    if _consent_service.sweeper is not None:
        _consent_service.sweeper.start()
    return _consent_service


def get_consent_service() -> ConsentService:
    """Get the global consent service instance"""
    if _consent_service is None:
        raise RuntimeError("Consent service not initialised; call init_consent_service first")
    return _consent_service
