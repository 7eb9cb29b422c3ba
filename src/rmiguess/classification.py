"""Ordered classification of remote exceptions."""

import enum
from dataclasses import dataclass

from rmiguess.serialization import JavaObject

PROBE_CLASS_NAME: str = "rmiguess.DefinitelyNonExistingClass"


class Classification(enum.Enum):
    """What a remote exception tells about the call that caused it."""

    METHOD_NOT_FOUND = "method-not-found"
    DISPATCH_MISMATCH = "dispatch-mismatch"
    LEGACY_DISPATCH = "legacy-dispatch"
    NO_SUCH_OBJECT = "no-such-object"
    NOT_BOUND = "not-bound"
    ALREADY_BOUND = "already-bound"
    FILTER_REJECTED = "filter-rejected"
    CODEBASE_ENABLED = "codebase-enabled"
    DESERIALIZATION_TRIGGERED = "deserialization-triggered"
    ACCESS_DENIED = "access-denied"
    CLASS_NOT_FOUND = "class-not-found"
    UNMARSHAL_ERROR = "unmarshal-error"
    OTHER = "other"


@dataclass(frozen=True)
class ExceptionRecord:
    """Type name, message and cause chain of a remote exception."""

    type_name: str
    message: str | None = None
    cause: "ExceptionRecord | None" = None

    def chain(self) -> list["ExceptionRecord"]:
        """Return this record followed by all of its causes."""
        records: list[ExceptionRecord] = []
        current: ExceptionRecord | None = self
        while current is not None:
            records.append(current)
            current = current.cause
        return records

    @property
    def root_cause(self) -> "ExceptionRecord":
        return self.chain()[-1]

    def __str__(self) -> str:
        if self.message is None:
            return self.type_name
        return f"{self.type_name}: {self.message}"


@dataclass(frozen=True)
class ClassificationRule:
    """Match when an exception type name (and optionally its message) contains the given text."""

    type_substring: str
    outcome: Classification
    message_substring: str | None = None

    def matches(self, record: ExceptionRecord) -> bool:
        if self.type_substring not in record.type_name:
            return False
        if self.message_substring is None:
            return True
        return record.message is not None and self.message_substring in record.message


# Checked top to bottom; the first rule matching any level of the cause chain wins.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("java.rmi.UnmarshalException", Classification.METHOD_NOT_FOUND, "unrecognized method hash"),
    ClassificationRule("java.rmi.UnmarshalException", Classification.METHOD_NOT_FOUND, "invalid method number"),
    ClassificationRule(
        "java.rmi.UnmarshalException",
        Classification.DISPATCH_MISMATCH,
        "skeleton class not found but required for client version",
    ),
    ClassificationRule("java.rmi.server.SkeletonMismatchException", Classification.LEGACY_DISPATCH),
    ClassificationRule("java.rmi.server.SkeletonNotFoundException", Classification.DISPATCH_MISMATCH),
    ClassificationRule("java.rmi.NoSuchObjectException", Classification.NO_SUCH_OBJECT),
    ClassificationRule("java.rmi.NotBoundException", Classification.NOT_BOUND),
    ClassificationRule("java.rmi.AlreadyBoundException", Classification.ALREADY_BOUND),
    ClassificationRule("java.io.InvalidClassException", Classification.FILTER_REJECTED, "filter status: REJECTED"),
    ClassificationRule("java.lang.ClassNotFoundException", Classification.DESERIALIZATION_TRIGGERED, PROBE_CLASS_NAME),
    ClassificationRule("java.net.MalformedURLException", Classification.CODEBASE_ENABLED),
    ClassificationRule("java.lang.ClassFormatError", Classification.CODEBASE_ENABLED),
    ClassificationRule("java.lang.UnsupportedClassVersionError", Classification.CODEBASE_ENABLED),
    ClassificationRule("java.rmi.AccessException", Classification.ACCESS_DENIED),
    ClassificationRule("java.security.AccessControlException", Classification.ACCESS_DENIED),
    ClassificationRule("java.lang.SecurityException", Classification.ACCESS_DENIED),
    ClassificationRule("java.lang.ClassCastException", Classification.DESERIALIZATION_TRIGGERED),
    ClassificationRule("java.lang.ClassNotFoundException", Classification.CLASS_NOT_FOUND),
    ClassificationRule("java.io.InvalidClassException", Classification.CLASS_NOT_FOUND),
    ClassificationRule("java.io.OptionalDataException", Classification.UNMARSHAL_ERROR),
    ClassificationRule("java.io.StreamCorruptedException", Classification.UNMARSHAL_ERROR),
    ClassificationRule("java.io.EOFException", Classification.UNMARSHAL_ERROR),
    ClassificationRule("java.rmi.UnmarshalException", Classification.UNMARSHAL_ERROR, "error unmarshalling arguments"),
)


def classify(
    record: ExceptionRecord,
    rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
) -> tuple[Classification, ClassificationRule | None]:
    """Classify a remote exception.

    :param record: Decoded exception with its cause chain.
    :param rules: Ordered rule table.
    :returns: Tuple of ``(classification, matching rule)``; ``(OTHER, None)`` when nothing matched.
    """
    chain: list[ExceptionRecord] = record.chain()
    for rule in rules:
        for level in chain:
            if rule.matches(level) is True:
                return rule.outcome, rule
    return Classification.OTHER, None


def record_from_throwable(value: object) -> ExceptionRecord:
    """Build an :class:`ExceptionRecord` from a decoded ``Throwable`` object.

    ``RemoteException.detail`` is preferred over ``Throwable.cause``; a cause
    that points back to the exception itself means "no cause".

    :param value: Decoded exception object.
    :returns: Exception record with its cause chain.
    """
    seen: set[int] = set()
    return _record_from(value, seen)


def _record_from(value: object, seen: set[int]) -> ExceptionRecord:
    if isinstance(value, JavaObject) is False:
        return ExceptionRecord(type(value).__name__ if value is not None else "null", str(value))
    seen.add(id(value))
    message: object = value.fields.get("detailMessage")
    cause: ExceptionRecord | None = None
    for field_name in ("detail", "cause"):
        candidate: object = value.fields.get(field_name)
        if isinstance(candidate, JavaObject) and id(candidate) not in seen:
            cause = _record_from(candidate, seen)
            break
    return ExceptionRecord(value.class_name, message if isinstance(message, str) else None, cause)
