"""
Hash chain for the access audit trail
Each link commits to its predecessor, so edits and gaps are detectable
"""

import hashlib

import structlog

from ..exceptions import HashError

logger = structlog.get_logger(__name__)

SUPPORTED_ALGORITHMS = frozenset({"sha256", "sha512", "blake2b"})


def secure_hash(data: bytes, algorithm: str = "sha256") -> str:
    """Hex digest of data with one of the supported algorithms"""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise HashError(algorithm)
    return hashlib.new(algorithm, data).hexdigest()


# Predecessor of the first entry in every chain
GENESIS_HASH = secure_hash(b"medconsent:audit:genesis")


def chain_hash(previous_hash: str, payload: str) -> str:
    """Hash of one link: the previous link's hash joined to this payload"""
    return secure_hash(f"{previous_hash}:{payload}".encode("utf-8"))


class HashChain:
    """Running head of an audit hash chain"""

    def __init__(self, initial_hash: str | None = None):
        self.current_hash = initial_hash or GENESIS_HASH
        self.chain_length = 0

    def add_entry(self, payload: str) -> str:
        """Extend the chain by one payload and return the new head"""
        self.current_hash = chain_hash(self.current_hash, payload)
        self.chain_length += 1
        logger.debug("Extended audit hash chain", length=self.chain_length,
                     head=self.current_hash[:16])
        return self.current_hash
