"""
Consent storage adapters
Persistence boundary for consent records, keyed by patient and provider
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional
import threading
import structlog
from sqlalchemy import Boolean, Column, DateTime, Index, String, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .models import Consent, ConsentScope, ConsentStatus
from ..constants import TableNames
from ..db import Base, create_session_factory, from_db_time, to_db_time
from ..exceptions import (
    ConsentNotFoundError,
    DuplicateActiveGrantError,
    StorageUnavailableError,
)
from ..policy.rbac import ProviderType
from ..utils.clock import ensure_utc
from ..utils.locks import KeyedLock

logger = structlog.get_logger(__name__)

_ACTIVE_ONLY = text("status = 'granted'")


class ConsentRecordDB(Base):
    """SQLAlchemy model for consent records"""
    __tablename__ = TableNames.CONSENTS

    id = Column(String, primary_key=True)
    patient_id = Column(String, nullable=False, index=True)
    granted_to = Column(String, nullable=False, index=True)
    granted_to_type = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)

    view_diagnosis = Column(Boolean, nullable=False, default=False)
    view_medications = Column(Boolean, nullable=False, default=False)
    view_lab_results = Column(Boolean, nullable=False, default=False)
    view_allergies = Column(Boolean, nullable=False, default=False)
    view_full_history = Column(Boolean, nullable=False, default=False)

    expires_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime)

    # At most one GRANTED row per (patient, provider), enforced by the database
    __table_args__ = (
        Index(
            "uq_consents_active_pair",
            "patient_id",
            "granted_to",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
    )


_SCOPE_COLUMNS = tuple(ConsentScope.model_fields)


class ConsentStorage(ABC):
    """Storage contract for consent records"""

    def __init__(self):
        self._key_locks = KeyedLock()

    @contextmanager
    def key_lock(self, patient_id: str, provider_id: str) -> Iterator[None]:
        """Serialise read-modify-write sequences on one (patient, provider) pair"""
        with self._key_locks.hold((patient_id, provider_id)):
            yield

    def expire_if_due(self, consent: Consent, now: datetime) -> Optional[Consent]:
        """Flip a past-due grant to EXPIRED, re-reading it under the key lock.

        A re-grant may have extended the expiry since the caller read it, so
        the decision is taken again on the current record.
        """
        with self.key_lock(consent.patient_id, consent.granted_to):
            current = self.get_by_id(consent.id)
            if current.status != ConsentStatus.GRANTED or not current.is_expired(now):
                return None
            return self.transition(consent.id, ConsentStatus.EXPIRED, now)

    @abstractmethod
    def find_active_grant(self, patient_id: str, provider_id: str) -> Optional[Consent]:
        """Return the single GRANTED record for the pair, if any"""

    @abstractmethod
    def save(self, consent: Consent) -> Consent:
        """Insert or overwrite a consent record"""

    @abstractmethod
    def update_active(self, consent: Consent) -> Optional[Consent]:
        """Write new scope and expiry onto a record that is still GRANTED.

        Returns None if the record was revoked or expired in the meantime;
        the stored status is left as it is.
        """

    @abstractmethod
    def get_by_id(self, consent_id: str) -> Consent:
        """Get a consent record by ID, raising ConsentNotFoundError"""

    @abstractmethod
    def list_active_for_patient(self, patient_id: str) -> List[Consent]:
        """All GRANTED records for a patient"""

    @abstractmethod
    def list_for_patient(self, patient_id: str) -> List[Consent]:
        """Every record for a patient in any status, newest first"""

    @abstractmethod
    def transition(self, consent_id: str, to_status: ConsentStatus, at: datetime,
                   expected: ConsentStatus = ConsentStatus.GRANTED) -> Optional[Consent]:
        """Change status only if the record is still in `expected`.

        Returns the updated record, or None if another writer moved it first.
        Raises ConsentNotFoundError for an unknown id.
        """

    @abstractmethod
    def list_expired_grants(self, now: datetime) -> List[Consent]:
        """GRANTED records whose expiry has passed"""


class SQLConsentStorage(ConsentStorage):
    """SQLAlchemy storage adapter for consent records"""

    def __init__(self, database_url: Optional[str] = None,
                 engine: Optional[Engine] = None, echo: bool = False):
        super().__init__()
        # Default to SQLite for development
        self.database_url = database_url or "sqlite:///medconsent.db"
        self.SessionLocal = create_session_factory(self.database_url, engine=engine, echo=echo)

    def _to_db_model(self, consent: Consent) -> ConsentRecordDB:
        """Convert Consent to database model"""
        row = ConsentRecordDB(id=consent.id)
        self._copy_into(row, consent)
        return row

    def _copy_into(self, row: ConsentRecordDB, consent: Consent) -> None:
        row.patient_id = consent.patient_id
        row.granted_to = consent.granted_to
        row.granted_to_type = consent.granted_to_type.value
        row.status = consent.status.value
        for name in _SCOPE_COLUMNS:
            setattr(row, name, getattr(consent.scope, name))
        row.expires_at = to_db_time(consent.expires_at)
        row.created_at = to_db_time(consent.created_at)
        row.updated_at = to_db_time(consent.updated_at)
        row.revoked_at = to_db_time(consent.revoked_at)

    def _from_db_model(self, row: ConsentRecordDB) -> Consent:
        """Convert database model to Consent"""
        return Consent(
            id=row.id,
            patient_id=row.patient_id,
            granted_to=row.granted_to,
            granted_to_type=ProviderType(row.granted_to_type),
            status=ConsentStatus(row.status),
            scope=ConsentScope(**{name: bool(getattr(row, name)) for name in _SCOPE_COLUMNS}),
            expires_at=from_db_time(row.expires_at),
            created_at=from_db_time(row.created_at),
            updated_at=from_db_time(row.updated_at),
            revoked_at=from_db_time(row.revoked_at),
        )

    def find_active_grant(self, patient_id: str, provider_id: str) -> Optional[Consent]:
        try:
            with self.SessionLocal() as session:
                row = session.query(ConsentRecordDB).filter_by(
                    patient_id=patient_id,
                    granted_to=provider_id,
                    status=ConsentStatus.GRANTED.value,
                ).first()
                return self._from_db_model(row) if row else None

        except SQLAlchemyError as e:
            logger.error("Failed to find active grant", patient_id=patient_id,
                         provider_id=provider_id, error=str(e))
            raise StorageUnavailableError(operation="find_active_grant", reason=str(e)) from e

    def save(self, consent: Consent) -> Consent:
        try:
            with self.SessionLocal() as session:
                row = session.get(ConsentRecordDB, consent.id)
                if row is None:
                    session.add(self._to_db_model(consent))
                else:
                    self._copy_into(row, consent)
                session.commit()

                logger.debug("Stored consent record", consent_id=consent.id,
                             patient_id=consent.patient_id, status=consent.status.value)
                return consent

        except IntegrityError as e:
            logger.warning("Rejected second active grant", consent_id=consent.id,
                           patient_id=consent.patient_id, provider_id=consent.granted_to)
            raise DuplicateActiveGrantError(consent.patient_id, consent.granted_to) from e
        except SQLAlchemyError as e:
            logger.error("Failed to store consent", consent_id=consent.id, error=str(e))
            raise StorageUnavailableError(operation="save", reason=str(e)) from e

    def update_active(self, consent: Consent) -> Optional[Consent]:
        values = {name: getattr(consent.scope, name) for name in _SCOPE_COLUMNS}
        values["expires_at"] = to_db_time(consent.expires_at)
        values["updated_at"] = to_db_time(consent.updated_at)

        try:
            with self.SessionLocal() as session:
                updated = session.query(ConsentRecordDB).filter(
                    ConsentRecordDB.id == consent.id,
                    ConsentRecordDB.status == ConsentStatus.GRANTED.value,
                ).update(values, synchronize_session=False)
                session.commit()

        except SQLAlchemyError as e:
            logger.error("Failed to update consent", consent_id=consent.id, error=str(e))
            raise StorageUnavailableError(operation="update_active", reason=str(e)) from e

        if not updated:
            logger.info("Consent left GRANTED before update", consent_id=consent.id)
            return None
        return consent

    def get_by_id(self, consent_id: str) -> Consent:
        try:
            with self.SessionLocal() as session:
                row = session.get(ConsentRecordDB, consent_id)

        except SQLAlchemyError as e:
            logger.error("Failed to get consent", consent_id=consent_id, error=str(e))
            raise StorageUnavailableError(operation="get_by_id", reason=str(e)) from e

        if row is None:
            raise ConsentNotFoundError(consent_id)
        return self._from_db_model(row)

    def list_active_for_patient(self, patient_id: str) -> List[Consent]:
        try:
            with self.SessionLocal() as session:
                rows = session.query(ConsentRecordDB).filter_by(
                    patient_id=patient_id,
                    status=ConsentStatus.GRANTED.value,
                ).order_by(ConsentRecordDB.created_at.desc()).all()
                return [self._from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to list active consents", patient_id=patient_id, error=str(e))
            raise StorageUnavailableError(operation="list_active_for_patient", reason=str(e)) from e

    def list_for_patient(self, patient_id: str) -> List[Consent]:
        try:
            with self.SessionLocal() as session:
                rows = session.query(ConsentRecordDB).filter_by(
                    patient_id=patient_id
                ).order_by(ConsentRecordDB.created_at.desc()).all()
                return [self._from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to list consents", patient_id=patient_id, error=str(e))
            raise StorageUnavailableError(operation="list_for_patient", reason=str(e)) from e

    def transition(self, consent_id: str, to_status: ConsentStatus, at: datetime,
                   expected: ConsentStatus = ConsentStatus.GRANTED) -> Optional[Consent]:
        values = {"status": to_status.value, "updated_at": to_db_time(at)}
        if to_status == ConsentStatus.REVOKED:
            values["revoked_at"] = to_db_time(at)

        try:
            with self.SessionLocal() as session:
                updated = session.query(ConsentRecordDB).filter(
                    ConsentRecordDB.id == consent_id,
                    ConsentRecordDB.status == expected.value,
                ).update(values, synchronize_session=False)
                session.commit()

        except SQLAlchemyError as e:
            logger.error("Failed to transition consent", consent_id=consent_id,
                         to_status=to_status.value, error=str(e))
            raise StorageUnavailableError(operation="transition", reason=str(e)) from e

        current = self.get_by_id(consent_id)
        if not updated:
            logger.info("Consent transition lost race", consent_id=consent_id,
                        expected=expected.value, actual=current.status.value)
            return None
        return current

    def list_expired_grants(self, now: datetime) -> List[Consent]:
        try:
            with self.SessionLocal() as session:
                rows = session.query(ConsentRecordDB).filter(
                    ConsentRecordDB.status == ConsentStatus.GRANTED.value,
                    ConsentRecordDB.expires_at.isnot(None),
                    ConsentRecordDB.expires_at < to_db_time(now),
                ).all()
                return [self._from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to list expired grants", error=str(e))
            raise StorageUnavailableError(operation="list_expired_grants", reason=str(e)) from e


class InMemoryConsentStorage(ConsentStorage):
    """In-memory storage for testing"""

    def __init__(self):
        super().__init__()
        self.consents: Dict[str, Consent] = {}
        self._lock = threading.RLock()

    def find_active_grant(self, patient_id: str, provider_id: str) -> Optional[Consent]:
        with self._lock:
            for consent in self.consents.values():
                if (consent.patient_id == patient_id and consent.granted_to == provider_id
                        and consent.status == ConsentStatus.GRANTED):
                    return consent.model_copy(deep=True)
        return None

    def save(self, consent: Consent) -> Consent:
        with self._lock:
            if consent.status == ConsentStatus.GRANTED:
                clash = self.find_active_grant(consent.patient_id, consent.granted_to)
                if clash is not None and clash.id != consent.id:
                    raise DuplicateActiveGrantError(consent.patient_id, consent.granted_to)
            self.consents[consent.id] = consent.model_copy(deep=True)
        return consent

    def update_active(self, consent: Consent) -> Optional[Consent]:
        with self._lock:
            current = self.consents.get(consent.id)
            if current is None or current.status != ConsentStatus.GRANTED:
                return None
            current.scope = consent.scope
            current.expires_at = consent.expires_at
            current.updated_at = consent.updated_at
            return current.model_copy(deep=True)

    def get_by_id(self, consent_id: str) -> Consent:
        with self._lock:
            consent = self.consents.get(consent_id)
            if consent is None:
                raise ConsentNotFoundError(consent_id)
            return consent.model_copy(deep=True)

    def list_active_for_patient(self, patient_id: str) -> List[Consent]:
        return [c for c in self.list_for_patient(patient_id) if c.status == ConsentStatus.GRANTED]

    def list_for_patient(self, patient_id: str) -> List[Consent]:
        with self._lock:
            consents = [c.model_copy(deep=True) for c in self.consents.values()
                        if c.patient_id == patient_id]
        consents.sort(key=lambda c: c.created_at, reverse=True)
        return consents

    def transition(self, consent_id: str, to_status: ConsentStatus, at: datetime,
                   expected: ConsentStatus = ConsentStatus.GRANTED) -> Optional[Consent]:
        with self._lock:
            consent = self.consents.get(consent_id)
            if consent is None:
                raise ConsentNotFoundError(consent_id)
            if consent.status != expected:
                return None
            if to_status == ConsentStatus.REVOKED:
                consent.revoke(at)
            elif to_status == ConsentStatus.EXPIRED:
                consent.expire(at)
            else:
                consent.status = to_status
                consent.updated_at = ensure_utc(at)
            return consent.model_copy(deep=True)

    def list_expired_grants(self, now: datetime) -> List[Consent]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self.consents.values()
                    if c.status == ConsentStatus.GRANTED and c.is_expired(now)]
