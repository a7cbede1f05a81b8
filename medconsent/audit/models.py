"""
Access log model
One immutable record per disclosure of patient data
"""

from datetime import datetime
from typing import Optional, Tuple
import json
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..policy.rbac import Role
from ..utils.clock import ensure_utc, utc_now
from ..utils.hashing import chain_hash
from ..utils.ids import generate_audit_id


class AccessLog(BaseModel):
    """Individual access log entry"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_audit_id)
    patient_id: str

    # Actor information
    accessed_by: str
    accessed_by_role: Role

    # Action details
    action: str
    data_accessed: Tuple[str, ...] = ()
    is_emergency_access: bool = False

    # Context
    ip_address: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    # Integrity
    previous_hash: Optional[str] = None
    hash: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("data_accessed", mode="before")
    @classmethod
    def normalize_data_accessed(cls, value):
        if isinstance(value, str):
            return (value,)
        return tuple(value or ())

    def to_audit_string(self) -> str:
        """Canonical form used for hashing"""
        audit_data = {
            "id": self.id,
            "patient_id": self.patient_id,
            "accessed_by": self.accessed_by,
            "accessed_by_role": self.accessed_by_role.value,
            "action": self.action,
            "data_accessed": list(self.data_accessed),
            "is_emergency_access": self.is_emergency_access,
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat(),
        }

        return json.dumps(audit_data, sort_keys=True, separators=(',', ':'))

    def compute_hash(self, previous_hash: str) -> str:
        """Compute the chain hash of this entry given its predecessor's"""
        return chain_hash(previous_hash, self.to_audit_string())

    def sealed(self, previous_hash: str) -> "AccessLog":
        """Copy of this entry with its integrity fields filled in"""
        return self.model_copy(update={
            "previous_hash": previous_hash,
            "hash": self.compute_hash(previous_hash),
        })
