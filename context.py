"""Caller identity handed to the engine by the upstream auth layer."""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable

from errors import PermissionDenied

APPROVE_HOLDS = "holds:approve"
VIEW_ALL_HOLDS = "holds:view_all"
MANAGE_EXCLUSIVITY = "exclusivity:manage"
MANAGE_INVENTORY = "inventory:manage"

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class RequestContext:
    organization_id: str
    actor_id: str
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def build(cls, organization_id: str, actor_id: str, permissions: Iterable[str] = ()) -> "RequestContext":
        return cls(organization_id, actor_id, frozenset(p.strip() for p in permissions if p and p.strip()))

    @classmethod
    def system(cls, organization_id: str) -> "RequestContext":
        return cls(organization_id, SYSTEM_ACTOR, frozenset({APPROVE_HOLDS, VIEW_ALL_HOLDS, MANAGE_EXCLUSIVITY, MANAGE_INVENTORY}))

    def can(self, permission: str) -> bool:
        return permission in self.permissions

    def require(self, permission: str) -> None:
        if not self.can(permission):
            raise PermissionDenied(
                f"missing permission {permission}",
                details={"actor_id": self.actor_id, "permission": permission},
            )
