"""Group membership resolution and mutation."""
from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Iterable, List, Optional

from ldap3 import BASE, MODIFY_ADD, MODIFY_DELETE, SUBTREE

from .config import DirectoryConfig
from .errors import (
    DirectoryError,
    Intent,
    NotFoundError,
    OrgDirectoryError,
    Outcome,
    ValidationError,
    classify,
)
from .models import (
    GroupMemberships,
    GroupPage,
    GroupRef,
    MembershipChange,
    MembershipResult,
    unique_values,
)
from .naming import escape_filter_value, normalize_dn
from .session import LDAPSession

logger = logging.getLogger(__name__)

GROUP_ATTRIBUTES = [
    "cn",
    "description",
    "member",
    "memberOf",
    "objectClass",
    "distinguishedName",
    "sAMAccountName",
]


class GroupMembershipResolver:
    def __init__(self, session: LDAPSession, config: DirectoryConfig):
        self.session = session
        self.config = config

    # Lookups -------------------------------------------------------------
    def resolve_user_dn(self, login: str) -> str:
        login = (login or "").strip()
        if not login:
            raise ValidationError("A login name is required.")
        search_filter = (
            f"(&(objectClass=person)({self.config.login_attribute}={escape_filter_value(login)}))"
        )
        entries = self.session.search(self.config.base_dn, search_filter, scope=SUBTREE)
        if not entries:
            raise NotFoundError(f"User not found: {login}")
        return entries[0].dn

    def groups_with_member(self, member_dn: str) -> List[GroupRef]:
        """Groups whose ``member`` attribute contains ``member_dn``."""

        entries = self.session.search(
            self.config.groups_base,
            self._group_filter(f"(member={escape_filter_value(member_dn)})"),
            scope=SUBTREE,
            attributes=GROUP_ATTRIBUTES,
        )
        return [GroupRef.from_entry(entry) for entry in entries]

    def list_direct_groups(self, login: str) -> List[GroupRef]:
        return self.groups_with_member(self.resolve_user_dn(login))

    def list_all_groups(self, login: str) -> GroupMemberships:
        """Direct groups plus every group inherited through nesting.

        Each group DN is expanded at most once, so membership cycles terminate.
        """

        direct = self.list_direct_groups(login)
        visited = {normalize_dn(group.dn) for group in direct}
        pending: Deque[str] = deque(group.dn for group in direct)
        nested: List[GroupRef] = []

        while pending:
            group_dn = pending.popleft()
            for parent in self.groups_with_member(group_dn):
                key = normalize_dn(parent.dn)
                if key in visited:
                    continue
                visited.add(key)
                nested.append(parent)
                pending.append(parent.dn)

        return GroupMemberships(direct=direct, nested=nested)

    def is_member(self, login: str, group_dn: str) -> bool:
        """A user that cannot be resolved is a member of nothing."""

        try:
            groups = self.list_direct_groups(login)
        except OrgDirectoryError as exc:
            logger.warning("Membership check for %s in %s failed: %s", login, group_dn, exc)
            return False
        target = normalize_dn(group_dn)
        return any(normalize_dn(group.dn) == target for group in groups)

    def get_group(self, group_dn: str) -> Optional[GroupRef]:
        try:
            entries = self.session.search(
                group_dn, self._group_filter(), scope=BASE, attributes=GROUP_ATTRIBUTES
            )
        except DirectoryError as exc:
            if classify(exc, Intent.LOOKUP) is Outcome.NOT_SATISFIABLE:
                return None
            raise
        return GroupRef.from_entry(entries[0]) if entries else None

    # Search --------------------------------------------------------------
    def search_groups(self, term: str, limit: int = 50) -> List[GroupRef]:
        limit = self._clamp(limit, 50)
        term = (term or "").strip()
        if term:
            escaped = escape_filter_value(term)
            search_filter = self._group_filter(
                f"(|(cn=*{escaped}*)(description=*{escaped}*)"
                f"({self.config.login_attribute}=*{escaped}*))"
            )
        else:
            search_filter = self._group_filter()
        entries = self.session.search(
            self.config.groups_base,
            search_filter,
            scope=SUBTREE,
            attributes=GROUP_ATTRIBUTES,
            size_limit=limit,
            time_limit=10,
        )
        return [GroupRef.from_entry(entry) for entry in entries[:limit]]

    def list_groups(self, page: int = 1, page_size: int = 100, term: str = "") -> GroupPage:
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive.")
        term = (term or "").strip()
        if term:
            escaped = escape_filter_value(term)
            search_filter = self._group_filter(f"(|(cn=*{escaped}*)(description=*{escaped}*))")
        else:
            search_filter = self._group_filter()

        start = (page - 1) * page_size
        entries = self.session.search(
            self.config.groups_base,
            search_filter,
            scope=SUBTREE,
            attributes=GROUP_ATTRIBUTES,
            paged=True,
        )
        total = len(entries)
        groups = [GroupRef.from_entry(entry) for entry in entries[start : start + page_size]]
        return GroupPage(groups=groups, total=total, page=page, page_size=page_size)

    # Mutations -----------------------------------------------------------
    def add_member(self, login: str, group_dns: Iterable[str]) -> MembershipResult:
        user_dn = self.resolve_user_dn(login)
        return self.apply(user_dn, group_dns, Intent.ADD)

    def remove_member(self, login: str, group_dns: Iterable[str]) -> MembershipResult:
        user_dn = self.resolve_user_dn(login)
        return self.apply(user_dn, group_dns, Intent.REMOVE)

    def enroll(self, user_dn: str, group_dns: Iterable[str]) -> MembershipResult:
        """Add ``user_dn`` to every group, stopping at the first hard failure."""

        return self.apply(user_dn, group_dns, Intent.ADD, stop_on_error=True)

    def apply(
        self,
        user_dn: str,
        group_dns: Iterable[str],
        intent: Intent,
        stop_on_error: bool = False,
    ) -> MembershipResult:
        """Run one add-member or delete-member request per group.

        Already-member on add and not-a-member on delete count as success.
        Changes already applied are never rolled back.
        """

        operation = MODIFY_ADD if intent is Intent.ADD else MODIFY_DELETE
        result = MembershipResult(user_dn=user_dn)
        for group_dn in unique_values(group_dns):
            change = MembershipChange(group_dn=group_dn)
            result.changes.append(change)
            try:
                self.session.modify(group_dn, "member", [user_dn], operation)
            except DirectoryError as exc:
                if classify(exc, intent) is Outcome.ALREADY_SATISFIED:
                    change.unchanged = True
                    if intent is Intent.ADD:
                        logger.warning("%s is already a member of %s", user_dn, group_dn)
                    else:
                        logger.warning("%s is not a member of %s", user_dn, group_dn)
                    continue
                change.error = str(exc)
                logger.error("Membership %s of %s in %s failed: %s", intent.value, user_dn, group_dn, exc)
                if stop_on_error:
                    raise
                continue
            change.applied = True
            logger.info("Membership %s: %s in %s", intent.value, user_dn, group_dn)
        return result

    # Utilities -----------------------------------------------------------
    def _group_filter(self, extra: str = "") -> str:
        base = f"(objectClass={self.config.group_object_class})"
        return f"(&{base}{extra})" if extra else base

    @staticmethod
    def _clamp(value: int, default: int, maximum: int = 1000) -> int:
        try:
            numeric = int(value)
        except (TypeError, ValueError):
            numeric = default
        return max(1, min(numeric, maximum))


__all__ = ["GROUP_ATTRIBUTES", "GroupMembershipResolver"]
