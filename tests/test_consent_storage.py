"""Tests for the consent storage adapters (SQL and in-memory)."""

from __future__ import annotations

from datetime import datetime, timedelta, UTC

import pytest

from medconsent.consent.models import Consent, ConsentScope, ConsentStatus
from medconsent.consent.storage import InMemoryConsentStorage, SQLConsentStorage
from medconsent.exceptions import ConsentNotFoundError, DuplicateActiveGrantError
from medconsent.policy.rbac import ProviderType

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(params=["memory", "sql"])
def storage(request, tmp_path):
    if request.param == "memory":
        return InMemoryConsentStorage()
    return SQLConsentStorage(f"sqlite:///{tmp_path / 'consents.db'}")


def make_consent(patient_id: str = "P1", provider_id: str = "DOC1", **kwargs) -> Consent:
    kwargs.setdefault("created_at", NOW)
    kwargs.setdefault("updated_at", NOW)
    return Consent(
        patient_id=patient_id,
        granted_to=provider_id,
        granted_to_type=ProviderType.DOCTOR,
        scope=kwargs.pop("scope", ConsentScope(view_diagnosis=True)),
        **kwargs,
    )


class TestConsentStorage:
    """Behaviour shared by every storage adapter."""

    def test_save_and_get(self, storage) -> None:
        consent = make_consent(expires_at=NOW + timedelta(hours=2))
        storage.save(consent)

        loaded = storage.get_by_id(consent.id)

        assert loaded.id == consent.id
        assert loaded.status == ConsentStatus.GRANTED
        assert loaded.scope == ConsentScope(view_diagnosis=True)
        assert loaded.expires_at == NOW + timedelta(hours=2)
        assert loaded.created_at.tzinfo is not None

    def test_get_unknown_raises(self, storage) -> None:
        with pytest.raises(ConsentNotFoundError):
            storage.get_by_id("consent_missing")

    def test_find_active_grant(self, storage) -> None:
        consent = storage.save(make_consent())

        assert storage.find_active_grant("P1", "DOC1").id == consent.id
        assert storage.find_active_grant("P1", "DOC2") is None
        assert storage.find_active_grant("P2", "DOC1") is None

    def test_second_active_grant_rejected(self, storage) -> None:
        """The store refuses two GRANTED records for one pair."""
        storage.save(make_consent())

        with pytest.raises(DuplicateActiveGrantError):
            storage.save(make_consent())

    def test_new_grant_allowed_after_revoke(self, storage) -> None:
        first = storage.save(make_consent())
        storage.transition(first.id, ConsentStatus.REVOKED, NOW)

        second = storage.save(make_consent())

        assert storage.find_active_grant("P1", "DOC1").id == second.id
        assert len(storage.list_for_patient("P1")) == 2

    def test_overwrite_existing_record(self, storage) -> None:
        consent = storage.save(make_consent())
        consent.scope = ConsentScope.full()
        storage.save(consent)

        assert storage.get_by_id(consent.id).scope == ConsentScope.full()

    def test_update_active(self, storage) -> None:
        consent = storage.save(make_consent())
        consent.scope = ConsentScope(view_allergies=True)
        consent.expires_at = NOW + timedelta(hours=1)

        assert storage.update_active(consent) is not None

        loaded = storage.get_by_id(consent.id)
        assert loaded.scope == ConsentScope(view_allergies=True)
        assert loaded.expires_at == NOW + timedelta(hours=1)

    def test_update_active_skips_closed_record(self, storage) -> None:
        """A stale copy never writes a revoked record back to GRANTED."""
        consent = storage.save(make_consent())
        storage.transition(consent.id, ConsentStatus.REVOKED, NOW)
        consent.scope = ConsentScope.full()

        assert storage.update_active(consent) is None

        loaded = storage.get_by_id(consent.id)
        assert loaded.status == ConsentStatus.REVOKED
        assert loaded.revoked_at == NOW
        assert loaded.scope == ConsentScope(view_diagnosis=True)

    def test_transition_is_compare_and_set(self, storage) -> None:
        """A terminal record is never moved again."""
        consent = storage.save(make_consent())

        revoked = storage.transition(consent.id, ConsentStatus.REVOKED, NOW)
        assert revoked.status == ConsentStatus.REVOKED
        assert revoked.revoked_at == NOW

        assert storage.transition(consent.id, ConsentStatus.EXPIRED, NOW) is None
        assert storage.get_by_id(consent.id).status == ConsentStatus.REVOKED

    def test_transition_unknown_raises(self, storage) -> None:
        with pytest.raises(ConsentNotFoundError):
            storage.transition("consent_missing", ConsentStatus.REVOKED, NOW)

    def test_list_active_and_history(self, storage) -> None:
        old = storage.save(make_consent(provider_id="DOC1"))
        storage.transition(old.id, ConsentStatus.REVOKED, NOW)
        later = NOW + timedelta(minutes=5)
        current = storage.save(make_consent(provider_id="DOC2", created_at=later, updated_at=later))

        active = storage.list_active_for_patient("P1")
        history = storage.list_for_patient("P1")

        assert [c.id for c in active] == [current.id]
        assert [c.id for c in history] == [current.id, old.id]

    def test_list_expired_grants(self, storage) -> None:
        stale = storage.save(make_consent(provider_id="DOC1", expires_at=NOW - timedelta(seconds=1)))
        storage.save(make_consent(provider_id="DOC2", expires_at=NOW + timedelta(hours=1)))
        storage.save(make_consent(provider_id="DOC3"))

        expired = storage.list_expired_grants(NOW)

        assert [c.id for c in expired] == [stale.id]

    def test_expire_if_due_rechecks_current_record(self, storage) -> None:
        """A grant extended after it was read is not expired."""
        consent = storage.save(make_consent(expires_at=NOW - timedelta(seconds=1)))
        stale_copy = storage.get_by_id(consent.id)

        consent.expires_at = NOW + timedelta(hours=1)
        storage.save(consent)

        assert storage.expire_if_due(stale_copy, NOW) is None
        assert storage.get_by_id(consent.id).status == ConsentStatus.GRANTED

    def test_expire_if_due(self, storage) -> None:
        consent = storage.save(make_consent(expires_at=NOW - timedelta(seconds=1)))

        expired = storage.expire_if_due(consent, NOW)

        assert expired.status == ConsentStatus.EXPIRED
        assert storage.find_active_grant("P1", "DOC1") is None
