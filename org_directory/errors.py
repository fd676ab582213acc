"""Error taxonomy and the translation of raw directory result codes."""
from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from ldap3.core.results import (
    RESULT_ADMIN_LIMIT_EXCEEDED,
    RESULT_ATTRIBUTE_OR_VALUE_EXISTS,
    RESULT_BUSY,
    RESULT_CONSTRAINT_VIOLATION,
    RESULT_ENTRY_ALREADY_EXISTS,
    RESULT_NO_SUCH_ATTRIBUTE,
    RESULT_NO_SUCH_OBJECT,
    RESULT_TIME_LIMIT_EXCEEDED,
    RESULT_UNAVAILABLE,
)

if TYPE_CHECKING:  # pragma: no cover
    from .models import MembershipChange


class OrgDirectoryError(RuntimeError):
    """Base class for every error raised by the provisioning engine."""


class ValidationError(OrgDirectoryError):
    """Raised when an input does not have the expected shape."""


class AmbiguousMatchError(ValidationError):
    """Raised when an identifier matches more than one directory entry."""


class NotFoundError(OrgDirectoryError):
    """Raised when no matching source record or directory entry exists."""


class ConflictError(OrgDirectoryError):
    """Raised when the target of a create operation already exists."""


class RecordStoreError(OrgDirectoryError):
    """Raised when the relational store cannot be queried."""


class DirectoryError(OrgDirectoryError):
    """Session level failure: bind, network or an unexpected result code."""

    transient = False


class DirectoryConnectionError(DirectoryError):
    """The directory server could not be reached or the connection dropped."""

    transient = True


class DirectoryOperationError(DirectoryError):
    """A directory request completed with a non-success result code."""

    def __init__(
        self,
        operation: str,
        result_code: Optional[int],
        description: str = "",
        message: str = "",
        dn: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.result_code = result_code
        self.description = description or "unknown error"
        self.message = message or ""
        self.dn = dn
        text = f"Directory {operation} failed ({self.description}, code {result_code})"
        if dn:
            text += f" on '{dn}'"
        if self.message:
            text += f": {self.message}"
        super().__init__(text)

    @property
    def transient(self) -> bool:  # type: ignore[override]
        return self.result_code in _TRANSIENT_CODES


class PartialBatchError(OrgDirectoryError):
    """Some targets of a multi-target membership change failed."""

    def __init__(self, failures: List["MembershipChange"], total: int) -> None:
        self.failures = list(failures)
        self.total = total
        details = "; ".join(f"{change.group_dn}: {change.error}" for change in self.failures)
        super().__init__(f"{len(self.failures)} of {total} group operations failed ({details})")


class Intent(Enum):
    """What a directory mutation is trying to achieve."""

    CREATE = "create"
    ADD = "add"
    REMOVE = "remove"
    LOOKUP = "lookup"


class Outcome(Enum):
    """Semantic meaning of a failed directory request."""

    ALREADY_SATISFIED = "already_satisfied"
    NOT_SATISFIABLE = "not_satisfiable"
    TRANSIENT_FAILURE = "transient_failure"
    FATAL_FAILURE = "fatal_failure"


_ALREADY_PRESENT_CODES = frozenset(
    {RESULT_ATTRIBUTE_OR_VALUE_EXISTS, RESULT_CONSTRAINT_VIOLATION, RESULT_ENTRY_ALREADY_EXISTS}
)
_ALREADY_ABSENT_CODES = frozenset({RESULT_NO_SUCH_ATTRIBUTE, RESULT_NO_SUCH_OBJECT})
_TRANSIENT_CODES = frozenset(
    {RESULT_BUSY, RESULT_UNAVAILABLE, RESULT_TIME_LIMIT_EXCEEDED, RESULT_ADMIN_LIMIT_EXCEEDED}
)


def classify(error: DirectoryError, intent: Intent) -> Outcome:
    """Translate a directory error into the outcome the engine branches on."""

    if not isinstance(error, DirectoryOperationError):
        return Outcome.TRANSIENT_FAILURE if error.transient else Outcome.FATAL_FAILURE

    code = error.result_code
    if intent is Intent.CREATE and code == RESULT_ENTRY_ALREADY_EXISTS:
        return Outcome.ALREADY_SATISFIED
    if intent is Intent.ADD and code in _ALREADY_PRESENT_CODES:
        return Outcome.ALREADY_SATISFIED
    if intent is Intent.REMOVE and code in _ALREADY_ABSENT_CODES:
        return Outcome.ALREADY_SATISFIED
    if intent is Intent.LOOKUP and code == RESULT_NO_SUCH_OBJECT:
        return Outcome.NOT_SATISFIABLE
    if code in _TRANSIENT_CODES:
        return Outcome.TRANSIENT_FAILURE
    return Outcome.FATAL_FAILURE


__all__ = [
    "AmbiguousMatchError",
    "ConflictError",
    "DirectoryConnectionError",
    "DirectoryError",
    "DirectoryOperationError",
    "Intent",
    "NotFoundError",
    "OrgDirectoryError",
    "Outcome",
    "PartialBatchError",
    "RecordStoreError",
    "ValidationError",
    "classify",
]
