"""
Access log storage adapters
Append-only persistence for access log entries
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterator, List, Optional
import threading
import structlog
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .models import AccessLog
from ..constants import TableNames
from ..db import Base, create_session_factory, from_db_time, to_db_time
from ..exceptions import StorageUnavailableError
from ..policy.rbac import Role
from ..utils.clock import ensure_utc

logger = structlog.get_logger(__name__)


class AccessLogDB(Base):
    """SQLAlchemy model for access log entries"""
    __tablename__ = TableNames.ACCESS_LOGS

    # Insertion order, which is also chain order
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)
    patient_id = Column(String, nullable=False, index=True)
    accessed_by = Column(String, nullable=False, index=True)
    accessed_by_role = Column(String, nullable=False)
    action = Column(String, nullable=False)
    data_accessed = Column(JSON, nullable=False)
    is_emergency_access = Column(Boolean, nullable=False, default=False)
    ip_address = Column(String)
    created_at = Column(DateTime, nullable=False, index=True)
    previous_hash = Column(String)
    hash = Column(String)


class AccessLogStorage(ABC):
    """Append-only storage contract; there is no update or delete"""

    @abstractmethod
    def append(self, entry: AccessLog) -> AccessLog:
        """Persist one entry"""

    @abstractmethod
    def query(self, patient_id: str, start: Optional[datetime] = None,
              end: Optional[datetime] = None) -> List[AccessLog]:
        """Entries for a patient within an inclusive range, newest first"""

    @abstractmethod
    def iter_chain(self) -> Iterator[AccessLog]:
        """Every entry in insertion order"""

    @abstractmethod
    def last_hash(self) -> Optional[str]:
        """Hash of the newest sealed entry, None for an empty chain"""


class SQLAccessLogStorage(AccessLogStorage):
    """SQLAlchemy storage adapter for access logs"""

    def __init__(self, database_url: Optional[str] = None,
                 engine: Optional[Engine] = None, echo: bool = False):
        self.database_url = database_url or "sqlite:///medconsent.db"
        self.SessionLocal = create_session_factory(self.database_url, engine=engine, echo=echo)

    def _to_db_model(self, entry: AccessLog) -> AccessLogDB:
        return AccessLogDB(
            id=entry.id,
            patient_id=entry.patient_id,
            accessed_by=entry.accessed_by,
            accessed_by_role=entry.accessed_by_role.value,
            action=entry.action,
            data_accessed=list(entry.data_accessed),
            is_emergency_access=entry.is_emergency_access,
            ip_address=entry.ip_address,
            created_at=to_db_time(entry.created_at),
            previous_hash=entry.previous_hash,
            hash=entry.hash,
        )

    def _from_db_model(self, row: AccessLogDB) -> AccessLog:
        return AccessLog(
            id=row.id,
            patient_id=row.patient_id,
            accessed_by=row.accessed_by,
            accessed_by_role=Role(row.accessed_by_role),
            action=row.action,
            data_accessed=row.data_accessed or [],
            is_emergency_access=bool(row.is_emergency_access),
            ip_address=row.ip_address,
            created_at=from_db_time(row.created_at),
            previous_hash=row.previous_hash,
            hash=row.hash,
        )

    def append(self, entry: AccessLog) -> AccessLog:
        try:
            with self.SessionLocal() as session:
                session.add(self._to_db_model(entry))
                session.commit()
                return entry

        except SQLAlchemyError as e:
            logger.error("Failed to append access log", audit_id=entry.id,
                         patient_id=entry.patient_id, error=str(e))
            raise StorageUnavailableError(operation="append", reason=str(e)) from e

    def query(self, patient_id: str, start: Optional[datetime] = None,
              end: Optional[datetime] = None) -> List[AccessLog]:
        try:
            with self.SessionLocal() as session:
                query = session.query(AccessLogDB).filter(AccessLogDB.patient_id == patient_id)
                if start is not None:
                    query = query.filter(AccessLogDB.created_at >= to_db_time(start))
                if end is not None:
                    query = query.filter(AccessLogDB.created_at <= to_db_time(end))
                rows = query.order_by(AccessLogDB.created_at.desc(), AccessLogDB.seq.desc()).all()
                return [self._from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to query access logs", patient_id=patient_id, error=str(e))
            raise StorageUnavailableError(operation="query", reason=str(e)) from e

    def iter_chain(self) -> Iterator[AccessLog]:
        try:
            with self.SessionLocal() as session:
                rows = session.query(AccessLogDB).order_by(AccessLogDB.seq.asc()).all()
                entries = [self._from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to read access log chain", error=str(e))
            raise StorageUnavailableError(operation="iter_chain", reason=str(e)) from e

        return iter(entries)

    def last_hash(self) -> Optional[str]:
        try:
            with self.SessionLocal() as session:
                row = session.query(AccessLogDB).filter(
                    AccessLogDB.hash.isnot(None)
                ).order_by(AccessLogDB.seq.desc()).first()
                return row.hash if row else None

        except SQLAlchemyError as e:
            logger.error("Failed to read last chain hash", error=str(e))
            raise StorageUnavailableError(operation="last_hash", reason=str(e)) from e


class InMemoryAccessLogStorage(AccessLogStorage):
    """In-memory access log storage for testing"""

    def __init__(self):
        self.entries: List[AccessLog] = []
        self._lock = threading.Lock()

    def append(self, entry: AccessLog) -> AccessLog:
        with self._lock:
            self.entries.append(entry)
        return entry

    def query(self, patient_id: str, start: Optional[datetime] = None,
              end: Optional[datetime] = None) -> List[AccessLog]:
        start, end = ensure_utc(start), ensure_utc(end)
        with self._lock:
            indexed = [(i, e) for i, e in enumerate(self.entries) if e.patient_id == patient_id]

        if start:
            indexed = [(i, e) for i, e in indexed if e.created_at >= start]
        if end:
            indexed = [(i, e) for i, e in indexed if e.created_at <= end]

        # Sort by timestamp (newest first), later inserts first on ties
        indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [e for _, e in indexed]

    def iter_chain(self) -> Iterator[AccessLog]:
        with self._lock:
            return iter(list(self.entries))

    def last_hash(self) -> Optional[str]:
        with self._lock:
            for entry in reversed(self.entries):
                if entry.hash is not None:
                    return entry.hash
        return None
