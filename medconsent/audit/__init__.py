"""
Audit trail for patient data access
"""

from .models import AccessLog
from .storage import AccessLogDB, AccessLogStorage, InMemoryAccessLogStorage, SQLAccessLogStorage
from .writer import AuditLogWriter

__all__ = [
    "AccessLog",
    "AccessLogDB",
    "AccessLogStorage",
    "InMemoryAccessLogStorage",
    "SQLAccessLogStorage",
    "AuditLogWriter",
]
