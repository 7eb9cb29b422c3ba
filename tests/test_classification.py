"""Tests for remote exception classification."""

import pytest

from rmiguess.classification import CLASSIFICATION_RULES
from rmiguess.classification import PROBE_CLASS_NAME
from rmiguess.classification import Classification
from rmiguess.classification import ClassificationRule
from rmiguess.classification import ExceptionRecord
from rmiguess.classification import classify
from rmiguess.envelope import CallOutcome
from rmiguess.envelope import decode_reply
from rmiguess.serialization import NewObject
from tests.fixtures.jrmp_stub import exception_reply
from tests.fixtures.jrmp_stub import throwable
from tests.fixtures.jrmp_stub import unmarshal_error

UNMARSHAL: str = "java.rmi.UnmarshalException"


def _wrapped(type_name: str, message: str | None = None) -> ExceptionRecord:
    """Wrap a cause the way the server reports argument errors.

    :param type_name: Cause type.
    :param message: Cause message.
    :returns: Outer record.
    """
    return ExceptionRecord(UNMARSHAL, "error unmarshalling arguments", ExceptionRecord(type_name, message))


@pytest.mark.parametrize(
    ("record", "expected"),
    [
        (ExceptionRecord(UNMARSHAL, "unrecognized method hash: method not supported by remote object"), Classification.METHOD_NOT_FOUND),
        (ExceptionRecord(UNMARSHAL, "invalid method number: 9"), Classification.METHOD_NOT_FOUND),
        (ExceptionRecord(UNMARSHAL, "skeleton class not found but required for client version"), Classification.DISPATCH_MISMATCH),
        (ExceptionRecord("java.rmi.server.SkeletonMismatchException", "interface hash mismatch"), Classification.LEGACY_DISPATCH),
        (ExceptionRecord("java.rmi.server.SkeletonNotFoundException", "Skeleton class not found"), Classification.DISPATCH_MISMATCH),
        (ExceptionRecord("java.rmi.NoSuchObjectException", "no such object in table"), Classification.NO_SUCH_OBJECT),
        (ExceptionRecord("java.rmi.NotBoundException", "missing"), Classification.NOT_BOUND),
        (ExceptionRecord("java.rmi.AlreadyBoundException", "taken"), Classification.ALREADY_BOUND),
        (_wrapped("java.io.InvalidClassException", "filter status: REJECTED"), Classification.FILTER_REJECTED),
        (_wrapped("java.lang.ClassNotFoundException", PROBE_CLASS_NAME), Classification.DESERIALIZATION_TRIGGERED),
        (_wrapped("java.net.MalformedURLException", "no protocol: rmiguess-invalid-url"), Classification.CODEBASE_ENABLED),
        (_wrapped("java.lang.ClassFormatError", "Incompatible magic value"), Classification.CODEBASE_ENABLED),
        (_wrapped("java.lang.UnsupportedClassVersionError", "class file version 99.0"), Classification.CODEBASE_ENABLED),
        (ExceptionRecord("java.rmi.AccessException", "Registry.bind disallowed"), Classification.ACCESS_DENIED),
        (_wrapped("java.security.AccessControlException", "access denied"), Classification.ACCESS_DENIED),
        (ExceptionRecord("java.lang.SecurityException", "Authentication failed"), Classification.ACCESS_DENIED),
        (_wrapped("java.lang.ClassCastException", "cannot be cast to java.lang.String"), Classification.DESERIALIZATION_TRIGGERED),
        (_wrapped("java.lang.ClassNotFoundException", "org.example.Gadget"), Classification.CLASS_NOT_FOUND),
        (_wrapped("java.io.InvalidClassException", "local class incompatible"), Classification.CLASS_NOT_FOUND),
        (_wrapped("java.io.OptionalDataException"), Classification.UNMARSHAL_ERROR),
        (_wrapped("java.io.StreamCorruptedException", "invalid type code: 00"), Classification.UNMARSHAL_ERROR),
        (_wrapped("java.io.EOFException"), Classification.UNMARSHAL_ERROR),
        (ExceptionRecord(UNMARSHAL, "error unmarshalling arguments"), Classification.UNMARSHAL_ERROR),
        (ExceptionRecord("java.lang.IllegalStateException", "boom"), Classification.OTHER),
    ],
)
def test_each_rule_classifies_its_exception(record: ExceptionRecord, expected: Classification) -> None:
    """Verify every rule of the table is reachable.

    :param record: Remote exception.
    :param expected: Expected classification.
    """
    classification, _ = classify(record)
    assert classification is expected


def test_first_matching_rule_wins_across_the_chain() -> None:
    """Verify rule order beats chain depth: a deep marker class wins over an outer unmarshal error."""
    record: ExceptionRecord = _wrapped("java.lang.ClassNotFoundException", f"{PROBE_CLASS_NAME} (no security manager)")
    classification, rule = classify(record)
    assert classification is Classification.DESERIALIZATION_TRIGGERED
    assert rule is not None
    assert rule.message_substring == PROBE_CLASS_NAME


def test_custom_rule_table_is_honored() -> None:
    rules: tuple[ClassificationRule, ...] = (ClassificationRule("IllegalState", Classification.ACCESS_DENIED),)
    classification, rule = classify(ExceptionRecord("java.lang.IllegalStateException"), rules)
    assert classification is Classification.ACCESS_DENIED
    assert rule is rules[0]


def test_unmatched_exception_has_no_rule() -> None:
    classification, rule = classify(ExceptionRecord("java.lang.Error"))
    assert classification is Classification.OTHER
    assert rule is None


def test_rule_table_is_ordered_and_complete() -> None:
    """Verify every outcome except the fallback has at least one rule."""
    covered: set[Classification] = {item.outcome for item in CLASSIFICATION_RULES}
    missing: set[Classification] = set(Classification) - covered - {Classification.OTHER}
    assert missing == set()


def test_decoded_reply_carries_cause_chain() -> None:
    """Verify exception replies decode into a record with the remote cause chain."""
    cause: NewObject = throwable("java.lang.ClassCastException", "java.util.HashMap cannot be cast to java.lang.String")
    outcome: CallOutcome = decode_reply(unmarshal_error("error unmarshalling arguments", cause))
    assert outcome.is_exception is True
    assert outcome.exception is not None
    chain: list[ExceptionRecord] = outcome.exception.chain()
    assert [item.type_name for item in chain] == [UNMARSHAL, "java.lang.ClassCastException"]
    assert outcome.exception.root_cause.message == "java.util.HashMap cannot be cast to java.lang.String"
    assert outcome.classification is Classification.DESERIALIZATION_TRIGGERED


def test_decoded_reply_without_cause() -> None:
    outcome: CallOutcome = decode_reply(exception_reply(throwable("java.rmi.NotBoundException", "missing")))
    assert outcome.exception is not None
    assert outcome.exception.cause is None
    assert outcome.classification is Classification.NOT_BOUND
    assert str(outcome) == "not-bound: java.rmi.NotBoundException: missing"
