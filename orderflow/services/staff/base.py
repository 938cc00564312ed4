"""
Staff Directory Abstract Base Class

Resolves a staff id to a role. Authentication happens upstream; the engine
only needs to know whether the acting person may grant a large discount,
void a closed order, or carry deliveries.

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.models import ELEVATED_ROLES, StaffRole


@dataclass(frozen=True)
class StaffIdentity:
    id: int
    name: str
    role: StaffRole
    active: bool = True

    @property
    def is_elevated(self) -> bool:
        return self.active and self.role in ELEVATED_ROLES


class BaseStaffDirectory(ABC):
    """Abstract base class for staff lookups."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def get_staff(self, staff_id: int, session: AsyncSession) -> Optional[StaffIdentity]:
        """Return the staff member or None if unknown."""
        pass
