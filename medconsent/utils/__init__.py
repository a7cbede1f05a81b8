"""
Utility functions for the consent engine
ID generation, clocks, per-key locks and hashing helpers
"""

from .ids import generate_consent_id, generate_audit_id, validate_id
from .clock import Clock, FrozenClock, utc_now, ensure_utc
from .locks import KeyedLock
from .hashing import HashChain, secure_hash, chain_hash, GENESIS_HASH

__all__ = [
    # ID generation
    "generate_consent_id",
    "generate_audit_id",
    "validate_id",
    # Time
    "Clock",
    "FrozenClock",
    "utc_now",
    "ensure_utc",
    # Concurrency
    "KeyedLock",
    # Integrity
    "HashChain",
    "secure_hash",
    "chain_hash",
    "GENESIS_HASH",
]
