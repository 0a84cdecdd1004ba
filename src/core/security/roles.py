"""
Role-based access control for protected records.

Roles are owned by the identity collaborator; this module only interprets
them.
"""

from enum import Enum
from typing import FrozenSet, Iterable

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"


class RoleSet(BaseModel):
    """Roles held by one principal at lookup time"""
    model_config = ConfigDict(frozen=True)

    principal_id: str
    roles: FrozenSet[Role] = frozenset()

    @classmethod
    def from_tags(cls, principal_id: str, tags: Iterable[str]) -> "RoleSet":
        """Build a role set from raw tags, ignoring tags that are not known roles"""
        known = {role.value: role for role in Role}
        return cls(
            principal_id=principal_id,
            roles=frozenset(known[tag] for tag in tags if tag in known)
        )

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return self.has_role(Role.ADMIN)

    @property
    def is_staff(self) -> bool:
        # Admins can do everything staff can
        return self.has_role(Role.STAFF) or self.is_admin

    @property
    def is_empty(self) -> bool:
        return not self.roles


def can_read_protected(roles: RoleSet) -> bool:
    """Check if the principal may read client records (full or summary)"""
    return roles.is_staff


def can_read_access_log(roles: RoleSet) -> bool:
    """Check if the principal may read the access audit log"""
    return roles.is_admin
