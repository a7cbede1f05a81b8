"""
Access decision engine
Runtime answer to "may this provider see this category of this patient's data now"
"""

from typing import Iterable, List, Optional
import structlog

from .models import AccessDecision, Consent, ScopeCategory, satisfies
from .storage import ConsentStorage
from ..config import ConsentConfig, get_consent_config
from ..constants import DecisionReasons
from ..exceptions import ConsentDeniedError, StorageUnavailableError
from ..utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class AccessDecisionEngine:
    """Single authorization gate in front of every sensitive read"""

    def __init__(self, storage: ConsentStorage, config: Optional[ConsentConfig] = None,
                 clock: Clock = utc_now):
        self.storage = storage
        self.config = config or get_consent_config()
        self.clock = clock

    def check_consent(self, patient_id: str, provider_id: str,
                      required_category: "ScopeCategory | str | None" = None) -> AccessDecision:
        """Check if a provider currently holds consent, optionally for one category.

        An unrecognised category label is a denial, not an error.
        """
        category = _category_label(required_category)

        consent = self.storage.find_active_grant(patient_id, provider_id)
        if consent is None:
            return self._deny(patient_id, provider_id, category, DecisionReasons.NO_ACTIVE_GRANT)

        now = self.clock()
        if consent.is_expired(now):
            self.expire_lazily(consent)
            return self._deny(patient_id, provider_id, category, DecisionReasons.EXPIRED)

        if required_category is not None and not satisfies(consent.scope, required_category):
            return self._deny(patient_id, provider_id, category,
                              DecisionReasons.SCOPE_NOT_GRANTED, consent)

        if (required_category is None and self.config.require_flag_for_unscoped_check
                and not consent.scope.any_granted()):
            return self._deny(patient_id, provider_id, category,
                              DecisionReasons.NO_FLAGS_GRANTED, consent)

        logger.debug("Consent check passed", patient_id=patient_id, provider_id=provider_id,
                     consent_id=consent.id, category=category)
        return AccessDecision(has_consent=True, consent=consent, reason=DecisionReasons.GRANTED)

    def expire_lazily(self, consent: Consent) -> Optional[Consent]:
        """Flip a past-due grant to EXPIRED. Best effort: write failures are logged only."""
        now = self.clock()
        try:
            expired = self.storage.expire_if_due(consent, now)
        except StorageUnavailableError as e:
            logger.warning("Failed to persist consent expiry", consent_id=consent.id,
                           patient_id=consent.patient_id, error=e.message)
            return None

        if expired is not None:
            logger.info("Consent expired", consent_id=consent.id, patient_id=consent.patient_id,
                        provider_id=consent.granted_to, expires_at=consent.expires_at)
        return expired

    def enforce_scope(self, patient_id: str, provider_id: str,
                      categories: Iterable["ScopeCategory | str"]) -> Consent:
        """Enforce consent for every requested category - raises if denied"""
        requested = [ScopeCategory.parse(c) for c in categories]

        decision = self.check_consent(patient_id, provider_id)
        if not decision.has_consent:
            raise ConsentDeniedError(patient_id, provider_id, decision.reason,
                                     [c.value for c in requested])

        missing = [c.value for c in requested if not decision.consent.scope.allows(c)]
        if missing:
            logger.info("Consent scope insufficient", patient_id=patient_id,
                        provider_id=provider_id, missing=missing)
            raise ConsentDeniedError(patient_id, provider_id,
                                     DecisionReasons.SCOPE_NOT_GRANTED, missing)

        return decision.consent

    def disclosable_categories(self, patient_id: str, provider_id: str) -> List[ScopeCategory]:
        """Categories the provider may currently see, empty without a valid grant"""
        decision = self.check_consent(patient_id, provider_id)
        if decision.consent is None or not decision.has_consent:
            return []
        return decision.consent.scope.granted_categories()

    def _deny(self, patient_id: str, provider_id: str, category: Optional[str],
              reason: str, consent: Optional[Consent] = None) -> AccessDecision:
        logger.info("Consent check denied", patient_id=patient_id, provider_id=provider_id,
                    category=category, reason=reason)
        return AccessDecision(has_consent=False, consent=consent, reason=reason)


def _category_label(value: "ScopeCategory | str | None") -> Optional[str]:
    if value is None:
        return None
    return value.value if isinstance(value, ScopeCategory) else str(value)
