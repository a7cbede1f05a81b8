"""Tests for emergency (break-glass) access."""

from __future__ import annotations

from datetime import datetime, timedelta, UTC

import pytest

from medconsent.audit.storage import InMemoryAccessLogStorage
from medconsent.audit.writer import AuditLogWriter
from medconsent.config import ConsentConfig
from medconsent.consent.emergency import EmergencyAccessManager
from medconsent.consent.manager import ConsentLifecycleManager
from medconsent.consent.models import ConsentScope
from medconsent.consent.storage import InMemoryConsentStorage
from medconsent.directory import InMemoryPatientDirectory
from medconsent.exceptions import (
    AuditLogError,
    PatientNotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from medconsent.policy.rbac import ProviderType, Role
from medconsent.utils.clock import FrozenClock

START = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class FailingAccessLogStorage(InMemoryAccessLogStorage):
    def append(self, entry):
        raise StorageUnavailableError(operation="append", reason="read-only replica")


class TestEmergencyAccess:
    """Break-glass grants and their audit entries."""

    def setup_method(self) -> None:
        self.clock = FrozenClock(START)
        self.config = ConsentConfig(database_url="memory://")
        self.consents = InMemoryConsentStorage()
        self.logs = InMemoryAccessLogStorage()
        self._build(self.logs)

    def _build(self, log_storage: InMemoryAccessLogStorage) -> None:
        self.lifecycle = ConsentLifecycleManager(
            self.consents, InMemoryPatientDirectory(["P1"]), config=self.config, clock=self.clock
        )
        self.audit = AuditLogWriter(log_storage, config=self.config, clock=self.clock)
        self.emergency = EmergencyAccessManager(self.lifecycle, self.audit, config=self.config)

    def test_grant_emergency_access(self) -> None:
        result = self.emergency.grant_emergency_access(
            "P1", "HOSP1", ProviderType.HOSPITAL, Role.HOSPITAL, "patient unconscious"
        )

        assert result.consent.scope.view_full_history
        assert result.consent.scope == ConsentScope.full()
        assert result.consent.expires_at == START + timedelta(hours=4)
        assert result.access_log.action == "EMERGENCY_ACCESS: patient unconscious"
        assert result.access_log.action.startswith("EMERGENCY_ACCESS:")
        assert result.access_log.is_emergency_access
        assert result.access_log.data_accessed == ("emergency_profile", "full_medical_history")

    def test_exactly_one_emergency_entry(self) -> None:
        self.emergency.grant_emergency_access("P1", "DOC1", "doctor", "doctor", "cardiac arrest")

        emergency_logs = [e for e in self.audit.get_patient_access_logs("P1")
                          if e.is_emergency_access]

        assert len(emergency_logs) == 1
        assert emergency_logs[0].accessed_by == "DOC1"

    def test_overrides_narrower_grant(self) -> None:
        """An existing narrow grant is widened in place, not duplicated."""
        narrow = self.lifecycle.grant_consent("P1", "DOC1", "doctor", {"viewAllergies": True})

        result = self.emergency.grant_emergency_access("P1", "DOC1", "doctor", "doctor", "stroke")

        assert result.consent.id == narrow.id
        assert result.consent.scope == ConsentScope.full()
        assert len(self.consents.list_active_for_patient("P1")) == 1

    def test_empty_reason_rejected(self) -> None:
        with pytest.raises(ValidationError):
            self.emergency.grant_emergency_access("P1", "DOC1", "doctor", "doctor", "   ")

        assert self.logs.entries == []
        assert self.consents.find_active_grant("P1", "DOC1") is None

    def test_unknown_patient_not_logged(self) -> None:
        with pytest.raises(PatientNotFoundError):
            self.emergency.grant_emergency_access("P9", "DOC1", "doctor", "doctor", "trauma")

        assert self.logs.entries == []

    def test_audit_failure_blocks_grant(self) -> None:
        """No audit entry, no access."""
        self._build(FailingAccessLogStorage())

        with pytest.raises(AuditLogError):
            self.emergency.grant_emergency_access("P1", "DOC1", "doctor", "doctor", "trauma")

        assert self.consents.find_active_grant("P1", "DOC1") is None

    def test_emergency_grant_expires(self) -> None:
        self.emergency.grant_emergency_access("P1", "DOC1", "doctor", "doctor", "trauma")
        self.clock.advance(hours=4, seconds=1)

        assert self.lifecycle.get_patient_consents("P1") == []
