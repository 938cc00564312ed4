"""
Mock Staff Directory

Fixed roster for development and tests.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from typing import Iterable, Optional

from orderflow.models import StaffRole
from orderflow.services.staff.base import BaseStaffDirectory, StaffIdentity

logger = logging.getLogger(__name__)


DEFAULT_ROSTER = (
    StaffIdentity(id=1, name="Ayesha (Manager)", role=StaffRole.MANAGER),
    StaffIdentity(id=2, name="Bilal (Cashier)", role=StaffRole.CASHIER),
    StaffIdentity(id=3, name="Hamza (Waiter)", role=StaffRole.WAITER),
    StaffIdentity(id=4, name="Usman (Rider)", role=StaffRole.RIDER),
    StaffIdentity(id=5, name="Zain (Rider)", role=StaffRole.RIDER),
    StaffIdentity(id=6, name="Sana (Admin)", role=StaffRole.ADMIN),
)


class MockStaffDirectory(BaseStaffDirectory):
    def __init__(self, staff: Optional[Iterable[StaffIdentity]] = None):
        self._staff = {member.id: member for member in (staff if staff is not None else DEFAULT_ROSTER)}
        logger.info(f"MockStaffDirectory initialized ({len(self._staff)} staff)")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def get_staff(self, staff_id, session=None):
        return self._staff.get(staff_id)
