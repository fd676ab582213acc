import pytest
from ldap3.core.results import (
    RESULT_ATTRIBUTE_OR_VALUE_EXISTS,
    RESULT_BUSY,
    RESULT_CONSTRAINT_VIOLATION,
    RESULT_ENTRY_ALREADY_EXISTS,
    RESULT_INSUFFICIENT_ACCESS_RIGHTS,
    RESULT_NO_SUCH_ATTRIBUTE,
    RESULT_NO_SUCH_OBJECT,
    RESULT_UNAVAILABLE,
)

from org_directory.errors import (
    DirectoryConnectionError,
    DirectoryError,
    DirectoryOperationError,
    Intent,
    Outcome,
    PartialBatchError,
    classify,
)
from org_directory.models import MembershipChange


def _error(code):
    return DirectoryOperationError("modify", code, description="test", dn="CN=G1,DC=x")


@pytest.mark.parametrize(
    "code, intent, expected",
    [
        (RESULT_ATTRIBUTE_OR_VALUE_EXISTS, Intent.ADD, Outcome.ALREADY_SATISFIED),
        (RESULT_CONSTRAINT_VIOLATION, Intent.ADD, Outcome.ALREADY_SATISFIED),
        (RESULT_ENTRY_ALREADY_EXISTS, Intent.ADD, Outcome.ALREADY_SATISFIED),
        (RESULT_ENTRY_ALREADY_EXISTS, Intent.CREATE, Outcome.ALREADY_SATISFIED),
        (RESULT_CONSTRAINT_VIOLATION, Intent.CREATE, Outcome.FATAL_FAILURE),
        (RESULT_ATTRIBUTE_OR_VALUE_EXISTS, Intent.CREATE, Outcome.FATAL_FAILURE),
        (RESULT_NO_SUCH_ATTRIBUTE, Intent.REMOVE, Outcome.ALREADY_SATISFIED),
        (RESULT_NO_SUCH_OBJECT, Intent.REMOVE, Outcome.ALREADY_SATISFIED),
        (RESULT_NO_SUCH_OBJECT, Intent.LOOKUP, Outcome.NOT_SATISFIABLE),
        (RESULT_NO_SUCH_OBJECT, Intent.ADD, Outcome.FATAL_FAILURE),
        (RESULT_ATTRIBUTE_OR_VALUE_EXISTS, Intent.REMOVE, Outcome.FATAL_FAILURE),
        (RESULT_BUSY, Intent.ADD, Outcome.TRANSIENT_FAILURE),
        (RESULT_UNAVAILABLE, Intent.LOOKUP, Outcome.TRANSIENT_FAILURE),
        (RESULT_INSUFFICIENT_ACCESS_RIGHTS, Intent.ADD, Outcome.FATAL_FAILURE),
    ],
)
def test_classify_result_codes(code, intent, expected):
    assert classify(_error(code), intent) is expected


def test_classify_session_errors():
    assert classify(DirectoryConnectionError("down"), Intent.ADD) is Outcome.TRANSIENT_FAILURE
    assert classify(DirectoryError("bind refused"), Intent.LOOKUP) is Outcome.FATAL_FAILURE


def test_operation_error_message():
    error = _error(RESULT_INSUFFICIENT_ACCESS_RIGHTS)
    assert error.result_code == RESULT_INSUFFICIENT_ACCESS_RIGHTS
    assert "code 50" in str(error)
    assert "CN=G1,DC=x" in str(error)
    assert not error.transient


def test_partial_batch_error_lists_failures():
    failure = MembershipChange(group_dn="CN=G2,DC=x", error="denied")
    error = PartialBatchError([failure], total=3)
    assert error.failures == [failure]
    assert "1 of 3" in str(error)
    assert "CN=G2,DC=x: denied" in str(error)
