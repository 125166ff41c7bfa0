"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import from_epoch_ms, parse_date, utc_now
from app.utils.validators import is_valid_user_id, parse_user_id

__all__ = [
    "from_epoch_ms",
    "is_valid_user_id",
    "parse_date",
    "parse_user_id",
    "utc_now",
]
