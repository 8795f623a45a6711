"""Permission checks. Pure functions of their inputs; no I/O, no state changes."""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable

from services.errors import PermissionDenied
from services.platform import ThreadInfo


@dataclass(frozen=True)
class Requester:
    """The user behind a command or event"""
    user_id: int
    role_ids: FrozenSet[int] = field(default_factory=frozenset)


class PermissionResolver:
    def __init__(self, admin_user_ids: Iterable[int] = (), admin_role_ids: Iterable[int] = ()):
        self.admin_user_ids = frozenset(admin_user_ids)
        self.admin_role_ids = frozenset(admin_role_ids)

    def is_admin(self, requester: Requester) -> bool:
        if requester.user_id in self.admin_user_ids:
            return True
        return not self.admin_role_ids.isdisjoint(requester.role_ids)

    def can_mutate(self, requester: Requester, thread: ThreadInfo) -> bool:
        """May the requester change the license post on this thread?"""
        return self.is_admin(requester) or requester.user_id == thread.author_id

    def can_manage_template(self, requester: Requester, template) -> bool:
        return self.is_admin(requester) or requester.user_id == template.owner_id

    def require_mutate(self, requester: Requester, thread: ThreadInfo) -> None:
        if not self.can_mutate(requester, thread):
            raise PermissionDenied(
                f"User {requester.user_id} may not change the license of thread {thread.thread_id}",
                user_message="You can only publish licenses on threads you created.",
            )

    def require_admin(self, requester: Requester) -> None:
        if not self.is_admin(requester):
            raise PermissionDenied(
                f"User {requester.user_id} is not an admin",
                user_message="This command is restricted to administrators.",
            )
