from threading import Lock
from typing import Dict, List, Optional, Set
from uuid import uuid4

from app.models import Group, GroupJoinRecord, GroupView


class GroupDirectory:
    """In-memory groups and memberships; answers access checks for the event core."""

    def __init__(self):
        self._lock = Lock()
        self._groups: Dict[str, Group] = {}
        self._memberships: List[GroupJoinRecord] = []

    def create(self, owner_user_id: str, name: str, is_private: bool = False) -> Group:
        group = Group(
            id=f"g_{uuid4().hex[:8]}",
            name=name.strip(),
            owner_user_id=owner_user_id,
            is_private=is_private,
            member_count=1,
        )
        with self._lock:
            self._groups[group.id] = group
            self._memberships.append(GroupJoinRecord(group_id=group.id, user_id=owner_user_id, status="member"))
        return group

    def get(self, group_id: str) -> Optional[Group]:
        with self._lock:
            return self._groups.get(group_id)

    def _membership(self, group_id: str, user_id: str) -> Optional[GroupJoinRecord]:
        return next(
            (m for m in self._memberships if m.group_id == group_id and m.user_id == user_id),
            None,
        )

    def membership_status(self, group_id: str, user_id: Optional[str]) -> str:
        if not user_id:
            return "none"
        with self._lock:
            record = self._membership(group_id, user_id)
        return record.status if record else "none"

    def has_access(self, group_id: Optional[str], user_id: Optional[str], require_membership: bool = False) -> bool:
        """Owner and members always have access; anyone can see a public group unless membership is required."""
        if not group_id:
            return True
        group = self.get(group_id)
        if not group:
            return False
        if user_id and group.owner_user_id == user_id:
            return True
        if self.membership_status(group_id, user_id) == "member":
            return True
        return not group.is_private and not require_membership

    def accessible_group_ids(self, user_id: Optional[str]) -> Set[str]:
        with self._lock:
            group_ids = list(self._groups)
        return {group_id for group_id in group_ids if self.has_access(group_id, user_id)}

    def is_admin(self, group_id: Optional[str], user_id: Optional[str]) -> bool:
        if not group_id or not user_id:
            return False
        group = self.get(group_id)
        return bool(group and group.owner_user_id == user_id)

    def join(self, group_id: str, user_id: str) -> str:
        with self._lock:
            group = self._groups.get(group_id)
            if not group:
                raise KeyError(group_id)
            existing = self._membership(group_id, user_id)
            if existing:
                return existing.status
            status = "pending" if group.is_private else "member"
            self._memberships.append(GroupJoinRecord(group_id=group_id, user_id=user_id, status=status))
            if status == "member":
                group.member_count += 1
            return status

    def add_member(self, group_id: str, user_id: str) -> None:
        with self._lock:
            group = self._groups.get(group_id)
            if not group:
                raise KeyError(group_id)
            existing = self._membership(group_id, user_id)
            if existing and existing.status == "member":
                return
            if existing:
                existing.status = "member"
            else:
                self._memberships.append(GroupJoinRecord(group_id=group_id, user_id=user_id, status="member"))
            group.member_count += 1

    def view(self, group: Group, user_id: Optional[str]) -> GroupView:
        return GroupView(
            **group.model_dump(),
            membership_status=self.membership_status(group.id, user_id),
            is_admin=self.is_admin(group.id, user_id),
        )

    def list_visible(self, user_id: Optional[str]) -> List[GroupView]:
        with self._lock:
            groups = list(self._groups.values())
        visible = [g for g in groups if self.has_access(g.id, user_id)]
        views = [self.view(g, user_id) for g in visible]
        views.sort(key=lambda g: (g.membership_status == "member", g.member_count), reverse=True)
        return views


group_directory = GroupDirectory()
