"""
Staff Directory Factory

Returns the Mock or SQL directory based on ENV_MODE.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.staff.base import BaseStaffDirectory, StaffIdentity
from orderflow.services.staff.mock import MockStaffDirectory
from orderflow.services.staff.sql import SqlStaffDirectory

logger = logging.getLogger(__name__)


@lru_cache()
def get_staff_directory() -> BaseStaffDirectory:
    """Get the configured staff directory."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Staff Directory: Using MockStaffDirectory (development mode)")
        return MockStaffDirectory()
    else:
        logger.info(f"Staff Directory: Using SqlStaffDirectory ({settings.env_mode.value} mode)")
        return SqlStaffDirectory()


def reset_staff_directory() -> None:
    """Clear the cached directory instance."""
    get_staff_directory.cache_clear()


__all__ = [
    "get_staff_directory",
    "reset_staff_directory",
    "BaseStaffDirectory",
    "StaffIdentity",
    "MockStaffDirectory",
    "SqlStaffDirectory",
]
