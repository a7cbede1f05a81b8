"""
Consent lifecycle manager
Grant, update, revoke and lazy-expire; one active grant per patient/provider pair
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import structlog
from pydantic import ValidationError as PydanticValidationError

from .models import Consent, ConsentScope, ConsentStatus, ConsentUpdate
from .storage import ConsentStorage
from ..config import ConsentConfig, get_consent_config
from ..directory import PatientDirectory, ProviderDirectory
from ..exceptions import (
    DuplicateActiveGrantError,
    InvalidStateTransitionError,
    OwnershipError,
    StorageUnavailableError,
    ValidationError,
)
from ..policy.rbac import ProviderType
from ..utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)

# Upsert retries when another process inserts the same pair first
_MAX_GRANT_ATTEMPTS = 3


def _coerce_provider_type(value: "ProviderType | str") -> ProviderType:
    try:
        return ProviderType(value)
    except ValueError:
        raise ValidationError(f"Invalid provider type: {value}", field="granted_to_type")


def _coerce_scope(value: "ConsentScope | Dict[str, bool]") -> ConsentScope:
    if isinstance(value, ConsentScope):
        return value
    try:
        return ConsentScope.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationError("Invalid consent scope", field="scope",
                              details={"errors": e.errors(include_url=False)})


class ConsentLifecycleManager:
    """Creates, widens, revokes and expires consent records"""

    def __init__(self, storage: ConsentStorage, patient_directory: PatientDirectory,
                 provider_directory: Optional[ProviderDirectory] = None,
                 config: Optional[ConsentConfig] = None, clock: Clock = utc_now):
        self.storage = storage
        self.patient_directory = patient_directory
        self.provider_directory = provider_directory
        self.config = config or get_consent_config()
        self.clock = clock

    def grant_consent(self, patient_id: str, granted_to: str,
                      granted_to_type: "ProviderType | str",
                      scope: "ConsentScope | Dict[str, bool]",
                      expires_at: Optional[datetime] = None) -> Consent:
        """Grant consent to a provider, or overwrite the existing active grant"""
        self.patient_directory.get_patient_by_id(patient_id)
        if self.provider_directory is not None:
            self.provider_directory.get_provider_by_id(granted_to)

        granted_to_type = _coerce_provider_type(granted_to_type)
        scope = _coerce_scope(scope)
        update = ConsentUpdate(scope=scope, expires_at=expires_at)

        with self.storage.key_lock(patient_id, granted_to):
            for attempt in range(1, _MAX_GRANT_ATTEMPTS + 1):
                existing = self.storage.find_active_grant(patient_id, granted_to)
                if existing is not None and existing.is_expired(self.clock()):
                    # A lapsed grant is closed out, never revived
                    self.storage.transition(existing.id, ConsentStatus.EXPIRED, self.clock())
                    logger.info("Consent expired", consent_id=existing.id,
                                patient_id=patient_id, provider_id=granted_to)
                    existing = None

                if existing is not None:
                    existing.apply_update(update, self.clock())
                    if self.storage.update_active(existing) is None:
                        # Revoked or expired elsewhere since the lookup
                        logger.warning("Active consent closed during grant, retrying",
                                       consent_id=existing.id, patient_id=patient_id,
                                       provider_id=granted_to, attempt=attempt)
                        continue
                    logger.info("Updated existing consent", consent_id=existing.id,
                                patient_id=patient_id, provider_id=granted_to,
                                expires_at=existing.expires_at)
                    return existing

                now = self.clock()
                consent = Consent(
                    patient_id=patient_id,
                    granted_to=granted_to,
                    granted_to_type=granted_to_type,
                    status=ConsentStatus.GRANTED,
                    scope=scope,
                    expires_at=update.expires_at,
                    created_at=now,
                    updated_at=now,
                )
                try:
                    self.storage.save(consent)
                except DuplicateActiveGrantError:
                    logger.warning("Concurrent grant detected, retrying as update",
                                   patient_id=patient_id, provider_id=granted_to,
                                   attempt=attempt)
                    continue

                logger.info("Granted new consent", consent_id=consent.id, patient_id=patient_id,
                            provider_id=granted_to, provider_type=granted_to_type.value,
                            expires_at=consent.expires_at)
                return consent

        raise StorageUnavailableError(
            message="Could not settle a concurrent consent grant",
            operation="grant_consent",
        )

    def update_consent(self, consent_id: str,
                       update: "ConsentUpdate | Dict[str, Any]") -> Consent:
        """Merge scope and/or expiry onto an active consent; status is unchanged"""
        if not isinstance(update, ConsentUpdate):
            try:
                update = ConsentUpdate.model_validate(update)
            except PydanticValidationError as e:
                raise ValidationError("Invalid consent update",
                                      details={"errors": e.errors(include_url=False)})

        consent = self.storage.get_by_id(consent_id)
        with self.storage.key_lock(consent.patient_id, consent.granted_to):
            consent = self.storage.get_by_id(consent_id)
            if consent.status.is_terminal:
                raise InvalidStateTransitionError(consent_id, consent.status.value)

            consent.apply_update(update, self.clock())
            if self.storage.update_active(consent) is None:
                current = self.storage.get_by_id(consent_id)
                raise InvalidStateTransitionError(consent_id, current.status.value)

        logger.info("Updated consent", consent_id=consent_id,
                    fields=sorted(update.model_fields_set))
        return consent

    def revoke_consent(self, patient_id: str, consent_id: str) -> Consent:
        """Revoke consent; only the owning patient may do this"""
        consent = self.storage.get_by_id(consent_id)

        if consent.patient_id != patient_id:
            logger.warning("Revoke by non-owner refused", consent_id=consent_id,
                           patient_id=patient_id)
            raise OwnershipError(patient_id=patient_id, consent_id=consent_id)

        if consent.status.is_terminal:
            raise InvalidStateTransitionError(consent_id, consent.status.value)

        with self.storage.key_lock(consent.patient_id, consent.granted_to):
            revoked = self.storage.transition(consent_id, ConsentStatus.REVOKED, self.clock())

        if revoked is None:
            current = self.storage.get_by_id(consent_id)
            raise InvalidStateTransitionError(consent_id, current.status.value)

        logger.info("Revoked consent", consent_id=consent_id, patient_id=patient_id,
                    provider_id=revoked.granted_to)
        return revoked

    def grant_full_consent(self, patient_id: str, provider_id: str,
                           provider_type: "ProviderType | str",
                           duration_hours: Optional[float] = None) -> Consent:
        """Grant every scope flag for a limited number of hours"""
        if duration_hours is None:
            duration_hours = self.config.default_full_consent_hours
        expires_at = self.clock() + timedelta(hours=duration_hours)

        return self.grant_consent(
            patient_id=patient_id,
            granted_to=provider_id,
            granted_to_type=provider_type,
            scope=ConsentScope.full(),
            expires_at=expires_at,
        )

    def get_patient_consents(self, patient_id: str) -> List[Consent]:
        """Active consents for a patient; past-due grants are expired on the way"""
        now = self.clock()
        active: List[Consent] = []
        for consent in self.storage.list_active_for_patient(patient_id):
            if consent.is_active(now):
                active.append(consent)
            else:
                self._expire(consent, now)
        return active

    def expire_stale_grants(self) -> int:
        """Flip every past-due GRANTED record to EXPIRED"""
        now = self.clock()
        count = 0
        for consent in self.storage.list_expired_grants(now):
            if self._expire(consent, now):
                count += 1

        if count:
            logger.info("Cleaned up expired consents", count=count)
        return count

    def export_consent_history(self, patient_id: str) -> Dict[str, Any]:
        """Export complete consent history for compliance requests"""
        consents = self.storage.list_for_patient(patient_id)
        return {
            "patient_id": patient_id,
            "exported_at": self.clock().isoformat(),
            "consents": [consent.model_dump(mode="json") for consent in consents],
        }

    def _expire(self, consent: Consent, now: datetime) -> bool:
        try:
            expired = self.storage.expire_if_due(consent, now)
        except StorageUnavailableError as e:
            logger.warning("Failed to persist consent expiry", consent_id=consent.id, error=e.message)
            return False
        return expired is not None
