"""
Consent data models
Scope flags, consent records and access decisions
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..exceptions import InvalidScopeError
from ..policy.rbac import ProviderType
from ..utils.clock import ensure_utc, utc_now
from ..utils.ids import generate_consent_id


class ScopeCategory(str, Enum):
    """Independently toggleable data categories a consent can authorize"""
    VIEW_DIAGNOSIS = "viewDiagnosis"
    VIEW_MEDICATIONS = "viewMedications"
    VIEW_LAB_RESULTS = "viewLabResults"
    VIEW_ALLERGIES = "viewAllergies"
    VIEW_FULL_HISTORY = "viewFullHistory"  # Superset: everything

    @property
    def field_name(self) -> str:
        return _CATEGORY_FIELDS[self]

    @classmethod
    def parse(cls, value: "ScopeCategory | str") -> "ScopeCategory":
        """Accept the enum, its camelCase label or the snake_case field name"""
        if isinstance(value, cls):
            return value
        raw = str(value).strip()
        for category in cls:
            if raw == category.value or raw == category.field_name:
                return category
        raise InvalidScopeError(raw, [c.value for c in cls])


_CATEGORY_FIELDS = {
    ScopeCategory.VIEW_DIAGNOSIS: "view_diagnosis",
    ScopeCategory.VIEW_MEDICATIONS: "view_medications",
    ScopeCategory.VIEW_LAB_RESULTS: "view_lab_results",
    ScopeCategory.VIEW_ALLERGIES: "view_allergies",
    ScopeCategory.VIEW_FULL_HISTORY: "view_full_history",
}


class ConsentStatus(str, Enum):
    """Consent record status"""
    GRANTED = "granted"
    REVOKED = "revoked"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ConsentStatus.GRANTED


class ConsentScope(BaseModel):
    """Data categories a consent authorizes. Flags are additive."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    view_diagnosis: bool = False
    view_medications: bool = False
    view_lab_results: bool = False
    view_allergies: bool = False
    view_full_history: bool = False

    @classmethod
    def full(cls) -> "ConsentScope":
        """Scope with every flag set"""
        return cls(**{name: True for name in _CATEGORY_FIELDS.values()})

    def allows(self, category: ScopeCategory) -> bool:
        if self.view_full_history:
            return True
        return bool(getattr(self, category.field_name))

    def any_granted(self) -> bool:
        return any(getattr(self, name) for name in _CATEGORY_FIELDS.values())

    def granted_categories(self) -> List[ScopeCategory]:
        """Categories disclosable under this scope, in declaration order"""
        return [category for category in ScopeCategory if self.allows(category)]


def satisfies(scope: ConsentScope,
              required_category: "ScopeCategory | str | None" = None) -> bool:
    """
    Check whether a scope covers a required data category.

    No category means the caller only needs "any access". The full-history
    flag covers every category. Unknown labels are never satisfied.
    """
    if required_category is None:
        return True
    try:
        category = ScopeCategory.parse(required_category)
    except InvalidScopeError:
        return False
    return scope.allows(category)


class ConsentUpdate(BaseModel):
    """Partial update of a consent; only explicitly set fields are applied"""
    scope: Optional[ConsentScope] = None
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class Consent(BaseModel):
    """One patient's standing authorization toward one provider"""
    id: str = Field(default_factory=generate_consent_id)
    patient_id: str = Field(..., description="Patient whose data is shared")
    granted_to: str = Field(..., description="Provider identifier")
    granted_to_type: ProviderType
    status: ConsentStatus = Field(default=ConsentStatus.GRANTED)
    scope: ConsentScope = Field(default_factory=ConsentScope)

    # Timestamps
    expires_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    revoked_at: Optional[datetime] = Field(default=None)

    @field_validator("expires_at", "created_at", "updated_at", "revoked_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    def is_expired(self, now: datetime) -> bool:
        """True once the expiry instant has passed"""
        return self.expires_at is not None and self.expires_at < ensure_utc(now)

    def is_active(self, now: datetime) -> bool:
        """Check if consent currently authorizes anything"""
        return self.status == ConsentStatus.GRANTED and not self.is_expired(now)

    def apply_update(self, update: ConsentUpdate, now: datetime) -> None:
        """Merge the explicitly set fields of an update"""
        for field_name in update.model_fields_set:
            setattr(self, field_name, getattr(update, field_name))
        self.updated_at = ensure_utc(now)

    def revoke(self, now: datetime) -> None:
        """Revoke consent"""
        self.status = ConsentStatus.REVOKED
        self.revoked_at = ensure_utc(now)
        self.updated_at = ensure_utc(now)

    def expire(self, now: datetime) -> None:
        """Mark consent as expired"""
        self.status = ConsentStatus.EXPIRED
        self.updated_at = ensure_utc(now)


class AccessDecision(BaseModel):
    """Outcome of an access check"""
    has_consent: bool
    consent: Optional[Consent] = None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "hasConsent": self.has_consent,
            "consent": self.consent.model_dump(mode="json") if self.consent else None,
            "reason": self.reason,
        }
