"""
SQL Staff Directory

Reads the staff table owned by the HR / auth service.

Author: Khalil Bannouri
Version: 1.0.0
"""

from orderflow.models import Staff
from orderflow.services.staff.base import BaseStaffDirectory, StaffIdentity


class SqlStaffDirectory(BaseStaffDirectory):
    @property
    def provider_name(self) -> str:
        return "sql"

    async def get_staff(self, staff_id, session):
        row = await session.get(Staff, staff_id)
        if row is None:
            return None
        return StaffIdentity(id=row.id, name=row.name, role=row.role, active=row.is_active)
