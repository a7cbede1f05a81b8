"""Tests for the consent lifecycle manager."""

from __future__ import annotations

from datetime import datetime, timedelta, UTC

import pytest

from medconsent.config import ConsentConfig
from medconsent.consent.manager import ConsentLifecycleManager
from medconsent.consent.models import ConsentScope, ConsentStatus, ConsentUpdate
from medconsent.consent.storage import InMemoryConsentStorage
from medconsent.directory import InMemoryPatientDirectory, InMemoryProviderDirectory
from medconsent.exceptions import (
    ConsentNotFoundError,
    InvalidStateTransitionError,
    OwnershipError,
    PatientNotFoundError,
    ProviderNotFoundError,
    ValidationError,
)
from medconsent.policy.rbac import ProviderType
from medconsent.utils.clock import FrozenClock

START = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class TestConsentLifecycle:
    """Grant, update, revoke and expiry."""

    def setup_method(self) -> None:
        self.clock = FrozenClock(START)
        self.storage = InMemoryConsentStorage()
        self.manager = ConsentLifecycleManager(
            self.storage,
            InMemoryPatientDirectory(["P1", "P2"]),
            InMemoryProviderDirectory(["DOC1", "DOC2", "HOSP1"]),
            config=ConsentConfig(database_url="memory://"),
            clock=self.clock,
        )

    def test_grant_creates_record(self) -> None:
        consent = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})

        assert consent.id.startswith("consent_")
        assert consent.status == ConsentStatus.GRANTED
        assert consent.granted_to_type == ProviderType.DOCTOR
        assert consent.scope.view_diagnosis
        assert consent.expires_at is None
        assert consent.created_at == START

    def test_regrant_overwrites_in_place(self) -> None:
        """A second grant keeps the id and creation time."""
        first = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})
        self.clock.advance(minutes=10)

        second = self.manager.grant_consent(
            "P1", "DOC1", "doctor", {"viewLabResults": True},
            expires_at=START + timedelta(days=1),
        )

        assert second.id == first.id
        assert second.created_at == START
        assert second.updated_at == START + timedelta(minutes=10)
        assert second.scope == ConsentScope(view_lab_results=True)
        assert second.expires_at == START + timedelta(days=1)
        assert len(self.storage.list_for_patient("P1")) == 1

    def test_grant_unknown_patient(self) -> None:
        with pytest.raises(PatientNotFoundError):
            self.manager.grant_consent("P9", "DOC1", "doctor", {})

    def test_grant_unknown_provider(self) -> None:
        with pytest.raises(ProviderNotFoundError):
            self.manager.grant_consent("P1", "DOC9", "doctor", {})

    def test_grant_invalid_provider_type(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            self.manager.grant_consent("P1", "DOC1", "dentist", {})

        assert exc_info.value.details["field"] == "granted_to_type"

    def test_grant_invalid_scope(self) -> None:
        with pytest.raises(ValidationError):
            self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": "maybe"})

    def test_update_merges_only_given_fields(self) -> None:
        consent = self.manager.grant_consent(
            "P1", "DOC1", "doctor", {"viewDiagnosis": True},
            expires_at=START + timedelta(hours=8),
        )

        updated = self.manager.update_consent(
            consent.id, ConsentUpdate(scope=ConsentScope(view_allergies=True))
        )

        assert updated.scope == ConsentScope(view_allergies=True)
        assert updated.expires_at == START + timedelta(hours=8)
        assert updated.status == ConsentStatus.GRANTED

    def test_update_accepts_dict(self) -> None:
        consent = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})

        updated = self.manager.update_consent(consent.id, {"expires_at": START + timedelta(hours=1)})

        assert updated.expires_at == START + timedelta(hours=1)
        assert updated.scope.view_diagnosis

    def test_update_revoked_fails(self) -> None:
        consent = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})
        self.manager.revoke_consent("P1", consent.id)

        with pytest.raises(InvalidStateTransitionError):
            self.manager.update_consent(consent.id, {"scope": {"viewAllergies": True}})

    def test_revoke(self) -> None:
        consent = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})
        self.clock.advance(minutes=1)

        revoked = self.manager.revoke_consent("P1", consent.id)

        assert revoked.status == ConsentStatus.REVOKED
        assert revoked.revoked_at == START + timedelta(minutes=1)
        assert self.manager.get_patient_consents("P1") == []

    def test_revoke_by_other_patient(self) -> None:
        """Revocation is ownership-checked and leaves the record untouched."""
        consent = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})

        with pytest.raises(OwnershipError) as exc_info:
            self.manager.revoke_consent("P2", consent.id)

        assert exc_info.value.message == "You can only revoke your own consent"
        assert self.storage.get_by_id(consent.id).status == ConsentStatus.GRANTED

    def test_revoke_twice(self) -> None:
        consent = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})
        self.manager.revoke_consent("P1", consent.id)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            self.manager.revoke_consent("P1", consent.id)

        assert exc_info.value.message == "Consent is not active"

    def test_revoke_unknown(self) -> None:
        with pytest.raises(ConsentNotFoundError):
            self.manager.revoke_consent("P1", "consent_missing")

    def test_grant_after_revoke_creates_new_record(self) -> None:
        first = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})
        self.manager.revoke_consent("P1", first.id)

        second = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})

        assert second.id != first.id
        assert self.storage.get_by_id(first.id).status == ConsentStatus.REVOKED

    def test_grant_full_consent(self) -> None:
        consent = self.manager.grant_full_consent("P1", "HOSP1", "hospital")

        assert consent.scope == ConsentScope.full()
        assert consent.expires_at == START + timedelta(hours=24)

    def test_grant_full_consent_custom_duration(self) -> None:
        consent = self.manager.grant_full_consent("P1", "HOSP1", "hospital", duration_hours=2)

        assert consent.expires_at == START + timedelta(hours=2)

    def test_get_patient_consents_expires_lazily(self) -> None:
        """Past-due grants drop out of the active list and are persisted as EXPIRED."""
        short = self.manager.grant_consent(
            "P1", "DOC1", "doctor", {"viewDiagnosis": True},
            expires_at=START + timedelta(hours=1),
        )
        lasting = self.manager.grant_consent("P1", "DOC2", "doctor", {"viewDiagnosis": True})
        self.clock.advance(hours=2)

        active = self.manager.get_patient_consents("P1")

        assert [c.id for c in active] == [lasting.id]
        assert self.storage.get_by_id(short.id).status == ConsentStatus.EXPIRED

    def test_expire_stale_grants(self) -> None:
        self.manager.grant_consent("P1", "DOC1", "doctor", {}, expires_at=START + timedelta(minutes=5))
        self.manager.grant_consent("P2", "DOC1", "doctor", {}, expires_at=START + timedelta(minutes=5))
        self.manager.grant_consent("P1", "DOC2", "doctor", {})
        self.clock.advance(minutes=6)

        assert self.manager.expire_stale_grants() == 2
        assert self.manager.expire_stale_grants() == 0

    def test_export_consent_history(self) -> None:
        consent = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewDiagnosis": True})
        self.manager.revoke_consent("P1", consent.id)

        export = self.manager.export_consent_history("P1")

        assert export["patient_id"] == "P1"
        assert export["consents"][0]["id"] == consent.id
        assert export["consents"][0]["status"] == "revoked"

    def test_regrant_after_lapse_creates_new_record(self) -> None:
        """An expired grant that was never read is closed out, not revived."""
        lapsed = self.manager.grant_consent(
            "P1", "DOC1", "doctor", {"viewDiagnosis": True},
            expires_at=START + timedelta(hours=1),
        )
        self.clock.advance(hours=2)

        fresh = self.manager.grant_consent("P1", "DOC1", "doctor", {"viewAllergies": True})

        assert fresh.id != lapsed.id
        assert self.storage.get_by_id(lapsed.id).status == ConsentStatus.EXPIRED
        assert self.storage.get_by_id(fresh.id).status == ConsentStatus.GRANTED
