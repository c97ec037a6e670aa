"""
Authorization scope resolution.

Services never look at the raw actor; they receive a resolved ``Scope`` and
check record ownership against it.
"""
from dataclasses import dataclass

from app.errors import UnauthorizedError
from app.models import ROLE_ADMIN, User


@dataclass(frozen=True)
class Scope:
    """
    Effective authorization context of one request.

    ``actor_id`` is always the caller's own id, also for Global scopes, so that
    records created by an administrator are stamped to the administrator.
    """
    actor_id: str
    is_global: bool = False

    @classmethod
    def self_of(cls, actor_id: str) -> "Scope":
        return cls(actor_id=actor_id, is_global=False)

    @classmethod
    def global_for(cls, actor_id: str) -> "Scope":
        return cls(actor_id=actor_id, is_global=True)

    def owns(self, owner_id: str) -> bool:
        return self.actor_id == owner_id

    def can_access(self, owner_id: str) -> bool:
        return self.is_global or self.owns(owner_id)

    def ensure_can_access(self, owner_id: str) -> None:
        if not self.can_access(owner_id):
            raise UnauthorizedError("Record belongs to another user.")


def resolve_scope(actor: User) -> Scope:
    """ADMIN actors resolve to Global, everyone else to Self."""
    if actor.role == ROLE_ADMIN:
        return Scope.global_for(actor.id)
    return Scope.self_of(actor.id)
