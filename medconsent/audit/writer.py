"""
Audit log writer
Append-only, tamper-evident trail of every disclosure of patient data
"""

from datetime import datetime
from typing import Iterable, List, Optional
import threading
import structlog

from .models import AccessLog
from .storage import AccessLogStorage
from ..config import ConsentConfig, get_consent_config
from ..exceptions import AuditLogError, StorageUnavailableError, ValidationError
from ..policy.rbac import Role
from ..utils.clock import Clock, utc_now
from ..utils.hashing import GENESIS_HASH, HashChain

logger = structlog.get_logger(__name__)


class AuditLogWriter:
    """Audit logging with hash-chain integrity protection"""

    def __init__(self, storage: AccessLogStorage, config: Optional[ConsentConfig] = None,
                 clock: Clock = utc_now):
        self.storage = storage
        self.config = config or get_consent_config()
        self.clock = clock
        # Reading the chain head and appending must not interleave
        self._chain_lock = threading.Lock()

    def log_access(self, patient_id: str, accessed_by: str, accessed_by_role: "Role | str",
                   action: str, data_accessed: Iterable[str],
                   is_emergency_access: bool = False,
                   ip_address: Optional[str] = None) -> AccessLog:
        """Record a disclosure. Raises AuditLogError if the entry was not persisted."""
        if not action or not action.strip():
            raise ValidationError("Audit action is required", field="action")

        entry = AccessLog(
            patient_id=patient_id,
            accessed_by=accessed_by,
            accessed_by_role=Role.parse(accessed_by_role),
            action=action,
            data_accessed=list(data_accessed),
            is_emergency_access=is_emergency_access,
            ip_address=ip_address,
            created_at=self.clock(),
        )

        with self._chain_lock:
            try:
                if self.config.audit_hash_chain_enabled:
                    entry = entry.sealed(self.storage.last_hash() or GENESIS_HASH)
                self.storage.append(entry)
            except StorageUnavailableError as e:
                logger.error("Audit log write failed", patient_id=patient_id,
                             accessed_by=accessed_by, action=action, error=e.message)
                raise AuditLogError(reason=e.details.get("reason", e.message)) from e

        logger.info("Access logged", audit_id=entry.id, patient_id=patient_id,
                    accessed_by=accessed_by, action=action,
                    is_emergency_access=is_emergency_access)
        return entry

    def get_patient_access_logs(self, patient_id: str,
                                start_date: Optional[datetime] = None,
                                end_date: Optional[datetime] = None) -> List[AccessLog]:
        """Entries for a patient, newest first; both bounds inclusive"""
        if start_date is not None and end_date is not None and start_date > end_date:
            raise ValidationError("start_date must not be after end_date", field="start_date")
        return self.storage.query(patient_id, start_date, end_date)

    def verify_integrity(self) -> bool:
        """Recompute the hash chain and report whether it is intact"""
        chain = HashChain(GENESIS_HASH)
        for entry in self.storage.iter_chain():
            if entry.hash is None:
                # Written with the chain disabled
                continue

            previous_hash = chain.current_hash
            expected_hash = chain.add_entry(entry.to_audit_string())
            if entry.previous_hash != previous_hash or entry.hash != expected_hash:
                logger.error("Audit integrity violation",
                             audit_id=entry.id,
                             expected_hash=expected_hash,
                             actual_hash=entry.hash)
                return False

        logger.info("Audit integrity verified", entry_count=chain.chain_length)
        return True
