"""
Validators
==========

Common validation utilities.
"""

import re
import uuid
from typing import Optional

# Identifier format minted by the user store (Supabase auth.users.id)
_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_user_id(value: Optional[str]) -> bool:
    """
    Check whether a string has the shape of an internal user identifier.

    Only the canonical hyphenated form is accepted; ``uuid.UUID`` alone
    would also accept braces, URNs and bare hex.

    Args:
        value: Candidate identifier

    Returns:
        True if the value looks like a user id
    """
    if not value:
        return False
    return bool(_UUID_PATTERN.match(value))


def parse_user_id(value: Optional[str]) -> Optional[uuid.UUID]:
    """Parse a user identifier, returning None if it is not a valid one."""
    if not is_valid_user_id(value):
        return None
    return uuid.UUID(value)
