"""Tests for identifiers, clocks, keyed locks, hashing and directories."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, UTC
import threading
import time

import pytest

from medconsent.consent.models import AccessDecision
from medconsent.directory import InMemoryPatientDirectory, InMemoryProviderDirectory
from medconsent.exceptions import (
    AuditLogError,
    ConsentDeniedError,
    ConsentServiceError,
    ForbiddenError,
    HashError,
    PatientNotFoundError,
    ProviderNotFoundError,
    UnavailableError,
    ValidationError,
)
from medconsent.utils.clock import FrozenClock, ensure_utc
from medconsent.utils.hashing import GENESIS_HASH, HashChain, chain_hash, secure_hash
from medconsent.utils.ids import generate_audit_id, generate_consent_id, validate_id
from medconsent.utils.locks import KeyedLock


class TestIds:
    def test_prefixes(self) -> None:
        assert generate_consent_id().startswith("consent_")
        assert generate_audit_id().startswith("audit_")
        assert generate_consent_id() != generate_consent_id()

    def test_validate_id(self) -> None:
        assert validate_id("  P1 ", "patient_id") == "P1"

        for bad in (None, "", "   ", 42, "P 1", "x" * 200):
            with pytest.raises(ValidationError):
                validate_id(bad, "patient_id")

        with pytest.raises(ValidationError):
            validate_id("audit_123", "consent_id", expected_prefix="consent_")


class TestClock:
    def test_ensure_utc(self) -> None:
        naive = datetime(2025, 1, 1, 9, 0)
        cet = datetime(2025, 1, 1, 10, 0, tzinfo=timezone(timedelta(hours=1)))

        assert ensure_utc(naive) == datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
        assert ensure_utc(cet).tzinfo == UTC
        assert ensure_utc(cet) == ensure_utc(naive)
        assert ensure_utc(None) is None

    def test_frozen_clock(self) -> None:
        clock = FrozenClock(datetime(2025, 1, 1, tzinfo=UTC))

        assert clock() == clock()
        clock.advance(hours=4)
        assert clock() == datetime(2025, 1, 1, 4, tzinfo=UTC)
        clock.set(datetime(2024, 6, 1))
        assert clock() == datetime(2024, 6, 1, tzinfo=UTC)


class TestKeyedLock:
    def test_same_key_is_exclusive(self) -> None:
        locks = KeyedLock()
        inside = []
        overlap = threading.Event()

        def worker() -> None:
            with locks.hold(("P1", "DOC1")):
                inside.append(1)
                if len(inside) > 1:
                    overlap.set()
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not overlap.is_set()
        assert len(locks) == 0

    def test_reentrant(self) -> None:
        locks = KeyedLock()

        with locks.hold("k"):
            with locks.hold("k"):
                assert len(locks) == 1
        assert len(locks) == 0


class TestHashing:
    def test_secure_hash(self) -> None:
        assert len(secure_hash(b"data")) == 64
        assert len(secure_hash(b"data", "sha512")) == 128
        with pytest.raises(HashError) as exc_info:
            secure_hash(b"data", "md5")
        assert isinstance(exc_info.value, ConsentServiceError)
        assert exc_info.value.error_code == "UNSUPPORTED_HASH_ALGORITHM"

    def test_chain(self) -> None:
        chain = HashChain()

        first = chain.add_entry("a")
        second = chain.add_entry("b")

        assert first == chain_hash(GENESIS_HASH, "a")
        assert second == chain_hash(first, "b")
        assert chain.chain_length == 2


class TestDirectories:
    def test_patient_directory(self) -> None:
        directory = InMemoryPatientDirectory(["P1"])
        directory.add("P2", {"id": "P2", "name": "Ada"})

        assert directory.get_patient_by_id("P2")["name"] == "Ada"
        with pytest.raises(PatientNotFoundError):
            directory.get_patient_by_id("P3")

    def test_provider_directory(self) -> None:
        directory = InMemoryProviderDirectory({"DOC1": {"type": "doctor"}})

        assert directory.get_provider_by_id("DOC1") == {"type": "doctor"}
        with pytest.raises(ProviderNotFoundError):
            directory.get_provider_by_id("DOC2")


class TestErrorPayloads:
    def test_error_to_dict(self) -> None:
        error = ConsentDeniedError("P1", "DOC1", "expired", ["viewDiagnosis"])

        assert isinstance(error, ForbiddenError)
        assert error.to_dict() == {
            "error": "CONSENT_DENIED",
            "message": "Consent denied: expired",
            "details": {
                "patient_id": "P1",
                "provider_id": "DOC1",
                "reason": "expired",
                "categories": ["viewDiagnosis"],
            },
        }

    def test_audit_error_is_unavailable(self) -> None:
        error = AuditLogError(reason="disk full")

        assert isinstance(error, UnavailableError)
        assert error.to_dict()["details"] == {"operation": "log_access", "reason": "disk full"}

    def test_decision_to_dict(self) -> None:
        decision = AccessDecision(has_consent=False, reason="no_active_grant")

        assert decision.to_dict() == {
            "hasConsent": False,
            "consent": None,
            "reason": "no_active_grant",
        }
