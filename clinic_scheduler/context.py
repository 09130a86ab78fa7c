# clinic_scheduler/context.py
from dataclasses import dataclass

from .models import SCHEDULE_ADMIN_ROLES, UserRole


@dataclass(frozen=True)
class RequestContext:
    """Acting user and tenant, passed explicitly to every store and service call."""

    tenant_id: int
    user_id: int
    role: UserRole

    @property
    def is_schedule_admin(self) -> bool:
        return self.role in SCHEDULE_ADMIN_ROLES

    def can_manage_schedule_of(self, doctor_id: int) -> bool:
        return self.is_schedule_admin or self.user_id == doctor_id
