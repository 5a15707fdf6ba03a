from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header

from tana_valet_api.errors import AuthenticationRequired, Forbidden

ROLE_VALET = "valet"
ELEVATED_ROLES = frozenset({"manager", "admin", "system_admin"})
STAFF_ROLES = frozenset({ROLE_VALET}) | ELEVATED_ROLES


@dataclass(frozen=True)
class StaffIdentity:
    staff_id: str
    role: str
    park_zone_code: str | None = None

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    @property
    def is_valet(self) -> bool:
        return self.role == ROLE_VALET


async def get_current_staff(
    x_staff_id: str | None = Header(default=None),
    x_staff_role: str | None = Header(default=None),
    x_park_zone: str | None = Header(default=None),
) -> StaffIdentity:
    """Acting staff member as resolved by the upstream auth layer."""
    if not x_staff_id:
        raise AuthenticationRequired("Authentication required")
    role = (x_staff_role or ROLE_VALET).strip().lower()
    if role not in STAFF_ROLES:
        raise Forbidden(f"Unknown staff role: {role}")
    return StaffIdentity(staff_id=x_staff_id.strip(), role=role, park_zone_code=x_park_zone or None)


def ensure_owner_or_elevated(staff: StaffIdentity, owner_id: str, action: str = "update") -> None:
    if staff.is_elevated or staff.staff_id == owner_id:
        return
    raise Forbidden(f"You don't have permission to {action} this vehicle")


def ensure_valet(staff: StaffIdentity, action: str) -> None:
    if not staff.is_valet:
        raise Forbidden(f"Only valets can {action}")
