"""
Consent engine configuration
Storage backend, grant durations, expiry sweep and logging toggles
"""

from pydantic_settings import BaseSettings
from pydantic import Field


MEMORY_DATABASE_URL = "memory://"


class ConsentConfig(BaseSettings):
    """Consent, audit and storage configuration settings"""

    # Storage settings
    database_url: str = Field(
        default="sqlite:///medconsent.db",
        description="SQLAlchemy URL, or memory:// for the in-memory stores"
    )
    database_echo: bool = Field(default=False)

    # Consent lifecycle settings
    default_full_consent_hours: int = Field(default=24, gt=0)
    emergency_access_hours: int = Field(default=4, gt=0)
    require_flag_for_unscoped_check: bool = Field(
        default=False,
        description="Deny unscoped checks when the grant has no flag set"
    )

    # Expiry sweep settings
    expiry_sweep_enabled: bool = Field(default=False)
    expiry_sweep_interval_seconds: float = Field(default=300.0, gt=0)

    # Audit settings
    audit_hash_chain_enabled: bool = Field(default=True)

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    model_config = {"env_prefix": "MEDCONSENT_", "case_sensitive": False}

    @property
    def uses_memory_storage(self) -> bool:
        return self.database_url == MEMORY_DATABASE_URL


# Global configuration instance
consent_config = ConsentConfig()


def get_consent_config() -> ConsentConfig:
    """Get the global consent configuration instance"""
    return consent_config


def update_consent_config(**kwargs) -> ConsentConfig:
    """Update consent configuration with new values"""
    global consent_config
    for key, value in kwargs.items():
        if hasattr(consent_config, key):
            setattr(consent_config, key, value)
    return consent_config
