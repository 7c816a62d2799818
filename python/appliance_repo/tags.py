"""
Tag association index.

Maintains the many-to-many relation between tags and devices/domains in
both directions, so that "members of a tag" and "tags of a member" always
agree. Add and remove are idempotent set operations.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from appliance_repo.logging import get_logger
from appliance_repo.models import Device, Domain, Tag

if TYPE_CHECKING:
    from appliance_repo.models import TagMember

logger = get_logger(__name__)

MemberKey = tuple[str, str]


def member_key(member: TagMember) -> MemberKey:
    """Devices and domains share one index; qualify keys by kind."""
    if isinstance(member, Device):
        return ("device", member.primary_key)
    if isinstance(member, Domain):
        return ("domain", member.primary_key)
    msg = f"Only devices and domains can be tagged, got {type(member).__name__}"
    raise TypeError(msg)


class TagIndex:
    """Symmetric tag membership for devices and domains."""

    def __init__(self) -> None:
        self._members: dict[str, dict[MemberKey, TagMember]] = {}
        self._tags: dict[MemberKey, dict[str, Tag]] = {}

    def add(self, tag: Tag, member: TagMember) -> bool:
        """
        Associate a member with a tag.

        Returns:
            True if the association is new, False if it was already present.
        """
        key = member_key(member)
        members = self._members.setdefault(tag.primary_key, {})
        if key in members:
            return False
        members[key] = member
        self._tags.setdefault(key, {})[tag.primary_key] = tag
        logger.debug("tag_member_added", tag=tag.primary_key, member=key[1], kind=key[0])
        return True

    def remove(self, tag: Tag, member: TagMember) -> bool:
        """
        Dissociate a member from a tag. Removing an absent member is a no-op.

        Returns:
            True if an association was removed.
        """
        key = member_key(member)
        members = self._members.get(tag.primary_key)
        if not members or key not in members:
            return False
        del members[key]
        if not members:
            del self._members[tag.primary_key]
        tags = self._tags.get(key, {})
        tags.pop(tag.primary_key, None)
        if not tags:
            self._tags.pop(key, None)
        logger.debug("tag_member_removed", tag=tag.primary_key, member=key[1], kind=key[0])
        return True

    def remove_member(self, member: TagMember) -> int:
        """Drop every tag association of a member. Returns the number removed."""
        removed = 0
        for tag in self.tags_of(member):
            if self.remove(tag, member):
                removed += 1
        return removed

    def forget_tag(self, tag: Tag) -> None:
        """Drop a tag and all of its associations."""
        for member in list(self._members.get(tag.primary_key, {}).values()):
            self.remove(tag, member)

    def tags_of(self, member: TagMember) -> list[Tag]:
        return list(self._tags.get(member_key(member), {}).values())

    def device_members(self, tag: Tag) -> list[Device]:
        return [m for m in self._members.get(tag.primary_key, {}).values() if isinstance(m, Device)]

    def domain_members(self, tag: Tag) -> list[Domain]:
        return [m for m in self._members.get(tag.primary_key, {}).values() if isinstance(m, Domain)]

    def is_tagged(self, tag: Tag) -> bool:
        return bool(self._members.get(tag.primary_key))

    def has(self, tag: Tag, member: TagMember) -> bool:
        return member_key(member) in self._members.get(tag.primary_key, {})

    def rekey_member(self, old_key: MemberKey, member: TagMember) -> None:
        """Move associations after a member's primary key changed."""
        tags = self._tags.pop(old_key, None)
        if not tags:
            return
        new_key = member_key(member)
        self._tags[new_key] = tags
        for tag in tags.values():
            members = self._members[tag.primary_key]
            members.pop(old_key, None)
            members[new_key] = member

    def __len__(self) -> int:
        return sum(len(m) for m in self._members.values())
