"""
ID generation and validation utilities
Unique identifiers for consent records and audit entries
"""

import re
import uuid
from typing import Any, Optional

from ..exceptions import ValidationError


ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.:-]{1,128}$")


def generate_consent_id() -> str:
    """Generate consent record ID"""
    return f"consent_{uuid.uuid4()}"


def generate_audit_id() -> str:
    """Generate audit event ID"""
    return f"audit_{uuid.uuid4()}"


def validate_id(id_value: Any, field_name: str = "id",
                expected_prefix: Optional[str] = None) -> str:
    """
    Validate an identifier coming from the caller layer.

    Args:
        id_value: Identifier to validate
        field_name: Field name for error messages
        expected_prefix: Prefix the identifier must carry, if any

    Returns:
        The stripped identifier

    Raises:
        ValidationError: If the identifier is missing or malformed
    """
    if id_value is None or (isinstance(id_value, str) and not id_value.strip()):
        raise ValidationError(f"{field_name} is required", field=field_name)

    if not isinstance(id_value, str):
        raise ValidationError(f"{field_name} must be a string", field=field_name)

    id_value = id_value.strip()

    if not ID_PATTERN.match(id_value):
        raise ValidationError(f"{field_name} contains invalid characters", field=field_name)

    if expected_prefix and not id_value.startswith(expected_prefix):
        raise ValidationError(
            f"{field_name} must start with '{expected_prefix}'", field=field_name
        )

    return id_value
