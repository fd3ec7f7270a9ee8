from __future__ import annotations

import logging
import uuid

from familycal.errors import NotFound, ValidationError
from familycal.models import Family, FamilyMember, Role
from familycal.state_store import StateStore

logger = logging.getLogger(__name__)


class FamilyDirectory:
    """Families and their members, as seen by the calendar."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def create_family(self, name: str) -> Family:
        name = str(name or "").strip()
        if not name:
            raise ValidationError("family name is required")
        family = Family(id=str(uuid.uuid4()), name=name)
        self.state_store.insert_family(family)
        logger.info("Created family %s", family.id)
        return family

    def add_member(self, family_id: str, name: str, role: Role | str = Role.CHILD) -> FamilyMember:
        if self.state_store.get_family(family_id) is None:
            raise NotFound(f"Family not found: {family_id}")
        name = str(name or "").strip()
        if not name:
            raise ValidationError("member name is required")
        member = FamilyMember(id=str(uuid.uuid4()), family_id=family_id, name=name, role=Role.parse(role))
        self.state_store.insert_member(member)
        logger.info("Added %s member %s to family %s", member.role.value, member.id, family_id)
        return member

    def get_family(self, family_id: str) -> Family:
        family = self.state_store.get_family(family_id)
        if family is None:
            raise NotFound(f"Family not found: {family_id}")
        return family

    def get_member(self, member_id: str) -> FamilyMember:
        member = self.state_store.get_member(member_id)
        if member is None:
            raise NotFound(f"Member not found: {member_id}")
        return member

    def members_of(self, family_id: str) -> list[FamilyMember]:
        return self.state_store.list_members(family_id)

    def belongs_to(self, member_id: str, family_id: str) -> bool:
        member = self.state_store.get_member(member_id)
        return member is not None and member.family_id == family_id

    def first_with_role(self, family_id: str, role: Role) -> FamilyMember | None:
        return next((member for member in self.members_of(family_id) if member.role is role), None)


class XpLedger:
    """XP awards and revocations, one history row per call."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def award(self, member_id: str, points: int, *, event_id: str | None = None) -> None:
        self.state_store.record_xp(member_id=member_id, delta=int(points), reason="task_completed", event_id=event_id)

    def revoke(self, member_id: str, points: int, *, event_id: str | None = None) -> None:
        self.state_store.record_xp(member_id=member_id, delta=-int(points), reason="task_uncompleted", event_id=event_id)

    def total(self, member_id: str) -> int:
        return self.state_store.xp_total(member_id)
