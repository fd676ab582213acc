"""Data models shared by the provisioning components."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ldap3.utils.ciDict import CaseInsensitiveDict

from .errors import PartialBatchError


def unique_values(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        cleaned = str(value or "").strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return result


def normalize_person_name(raw: Optional[str]) -> str:
    stripped = (raw or "").strip()
    if not stripped:
        return ""

    def _capitalize_segment(segment: str) -> str:
        return "-".join(part.capitalize() for part in segment.split("-"))

    return " ".join(_capitalize_segment(part) for part in stripped.split())


def normalize_department_id(raw: Any) -> str:
    """Department ids are compared trimmed and uppercased."""

    return str(raw or "").strip().upper()


@dataclass(frozen=True)
class DepartmentNode:
    """A department as mirrored into the asset OU tree."""

    id: str
    display_name: str
    level: int = 0
    employee_ids: tuple[str, ...] = ()
    children: tuple["DepartmentNode", ...] = ()


@dataclass
class EmployeeRecord:
    """An employee row from the relational store."""

    id: str
    department_id: str
    first_name: str
    last_name: str
    second_last_name: Optional[str] = None
    employee_number: Optional[str] = None
    teaches: bool = False
    researches: bool = False

    def __post_init__(self) -> None:
        self.id = str(self.id or "").strip()
        self.department_id = normalize_department_id(self.department_id)
        self.first_name = normalize_person_name(self.first_name)
        self.last_name = normalize_person_name(self.last_name)
        self.second_last_name = normalize_person_name(self.second_last_name) or None

    @property
    def surnames(self) -> str:
        return " ".join(part for part in (self.last_name, self.second_last_name) if part)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.surnames}".strip()


class DirectoryEntry:
    """A directory entry read back through a search."""

    def __init__(self, dn: str, attributes: Optional[Mapping[str, Any]] = None):
        self.dn = dn
        self.attributes: CaseInsensitiveDict = CaseInsensitiveDict()
        for name, value in (attributes or {}).items():
            if value is None:
                continue
            if isinstance(value, (list, tuple, set)):
                values = [str(item) for item in value if item is not None]
            else:
                values = [str(value)]
            self.attributes[name] = values

    def values(self, name: str) -> List[str]:
        return list(self.attributes.get(name, []))

    def first(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.attributes.get(name)
        return values[0] if values else default

    def __repr__(self) -> str:
        return f"DirectoryEntry(dn={self.dn!r})"


@dataclass
class GroupRef:
    """A group as returned by the membership resolver."""

    dn: str
    common_name: str
    description: Optional[str] = None
    account_name: Optional[str] = None
    members: List[str] = field(default_factory=list)
    member_of: List[str] = field(default_factory=list)

    @classmethod
    def from_entry(cls, entry: DirectoryEntry) -> "GroupRef":
        return cls(
            dn=entry.dn,
            common_name=entry.first("cn") or entry.dn,
            description=entry.first("description"),
            account_name=entry.first("sAMAccountName"),
            members=entry.values("member"),
            member_of=entry.values("memberOf"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distinguishedName": self.dn,
            "name": self.common_name,
            "description": self.description,
            "sAMAccountName": self.account_name,
            "member": list(self.members),
            "memberOf": list(self.member_of),
        }


@dataclass
class GroupPage:
    groups: List[GroupRef]
    total: int
    page: int
    page_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groups": [group.to_dict() for group in self.groups],
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
        }


@dataclass
class GroupMemberships:
    """Direct and inherited group memberships of one account."""

    direct: List[GroupRef] = field(default_factory=list)
    nested: List[GroupRef] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "directGroups": [group.to_dict() for group in self.direct],
            "nestedGroups": [group.to_dict() for group in self.nested],
        }


@dataclass
class MembershipChange:
    """Outcome of a single add-member/delete-member request."""

    group_dn: str
    applied: bool = False
    unchanged: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class MembershipResult:
    """Outcome of a batch of membership changes for one account."""

    user_dn: str
    changes: List[MembershipChange] = field(default_factory=list)

    @property
    def failures(self) -> List[MembershipChange]:
        return [change for change in self.changes if not change.ok]

    @property
    def success(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialBatchError(self.failures, len(self.changes))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "userDN": self.user_dn,
            "applied": [change.group_dn for change in self.changes if change.applied],
            "unchanged": [change.group_dn for change in self.changes if change.unchanged],
            "failed": [
                {"group": change.group_dn, "error": change.error} for change in self.failures
            ],
        }


class ProvisionStatus(str, Enum):
    CREATED = "created"
    EXISTS = "exists"
    MISSING = "missing"


@dataclass
class ProvisionResult:
    status: ProvisionStatus
    login: str
    dn: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "login": self.login, "distinguished_name": self.dn}


@dataclass
class BulkProvisionSummary:
    """Counters for a bulk provisioning run."""

    created: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def record(self, result: ProvisionResult) -> None:
        bucket = {
            ProvisionStatus.CREATED: self.created,
            ProvisionStatus.EXISTS: self.existing,
            ProvisionStatus.MISSING: self.missing,
        }[result.status]
        bucket.append(result.login)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": len(self.created),
            "existing": len(self.existing),
            "missing": len(self.missing),
            "failed": dict(self.failed),
        }


@dataclass
class GuestRequest:
    """Represents an invited (guest) account being created."""

    username: str
    email: str
    first_name: str
    last_name: str
    password: Optional[str] = None
    identity_card: Optional[str] = None
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        self.first_name = normalize_person_name(self.first_name)
        self.last_name = normalize_person_name(self.last_name)
        self.email = (self.email or "").strip()

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


__all__ = [
    "BulkProvisionSummary",
    "DepartmentNode",
    "DirectoryEntry",
    "EmployeeRecord",
    "GroupMemberships",
    "GroupPage",
    "GroupRef",
    "GuestRequest",
    "MembershipChange",
    "MembershipResult",
    "ProvisionResult",
    "ProvisionStatus",
    "normalize_department_id",
    "unique_values",
    "normalize_person_name",
]
