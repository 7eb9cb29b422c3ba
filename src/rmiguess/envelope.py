"""Call and reply envelopes of the stream protocol."""

import enum
import logging
from dataclasses import dataclass
from typing import Protocol

from rmiguess.classification import Classification
from rmiguess.classification import ClassificationRule
from rmiguess.classification import ExceptionRecord
from rmiguess.classification import classify
from rmiguess.classification import record_from_throwable
from rmiguess.errors import MalformedResponseError
from rmiguess.objid import OBJID_LENGTH
from rmiguess.objid import UID
from rmiguess.objid import UID_LENGTH
from rmiguess.objid import ObjID
from rmiguess.serialization import IncompleteStreamError
from rmiguess.serialization import ObjectStreamReader
from rmiguess.serialization import ObjectStreamWriter

logger: logging.Logger = logging.getLogger(__name__)

MSG_CALL: int = 0x50
MSG_RETURN: int = 0x51
MSG_PING: int = 0x52
MSG_PING_ACK: int = 0x53
MSG_DGC_ACK: int = 0x54

RETURN_NORMAL: int = 0x01
RETURN_EXCEPTION: int = 0x02

MODERN_OPERATION: int = -1


class DispatchStyle(enum.Enum):
    UNKNOWN = "unknown"
    LEGACY = "legacy"
    MODERN = "modern"


@dataclass(frozen=True)
class Selector:
    """Operation number and hash written after the ObjID of a call."""

    operation: int
    hash: int

    @classmethod
    def legacy(cls, ordinal: int, interface_hash: int) -> "Selector":
        if ordinal < 0:
            raise ValueError("Legacy ordinals must not be negative")
        return cls(ordinal, interface_hash)

    @classmethod
    def modern(cls, method_hash: int) -> "Selector":
        return cls(MODERN_OPERATION, method_hash)

    @property
    def style(self) -> DispatchStyle:
        if self.operation < 0:
            return DispatchStyle.MODERN
        return DispatchStyle.LEGACY


class RemoteMethod(Protocol):
    """Anything that knows its parameters and its selector for a dispatch style."""

    @property
    def parameter_descriptors(self) -> tuple[str, ...]:
        ...

    @property
    def return_descriptor(self) -> str:
        ...

    def selector_for(self, style: DispatchStyle) -> Selector:
        ...


@dataclass(frozen=True)
class CallArgument:
    """One argument slot: a normally encoded value or opaque attacker bytes.

    ``descriptor`` decides the encoding: primitives go into block data,
    everything else is written as an object.
    """

    descriptor: str
    value: object = None
    payload: bytes | None = None

    @property
    def is_payload(self) -> bool:
        return self.payload is not None

    @property
    def is_primitive(self) -> bool:
        return len(self.descriptor) == 1

    @classmethod
    def attack(cls, descriptor: str, payload: bytes) -> "CallArgument":
        return cls(descriptor, None, payload)


@dataclass(frozen=True)
class RemoteCall:
    """A single remote call. Build it with :meth:`for_method` so the selector follows the style."""

    objid: ObjID
    style: DispatchStyle
    selector: Selector
    arguments: tuple[CallArgument, ...] = ()

    def __post_init__(self) -> None:
        if self.style is DispatchStyle.UNKNOWN:
            raise ValueError("Calls cannot be encoded before the dispatch style is known")
        if self.selector.style is not self.style:
            raise ValueError(f"{self.selector.style.value} selector used for a {self.style.value} call")

    @classmethod
    def for_method(
        cls,
        objid: ObjID,
        method: RemoteMethod,
        style: DispatchStyle,
        arguments: tuple[CallArgument, ...] | list[CallArgument] = (),
    ) -> "RemoteCall":
        """Create a call whose selector is derived from ``style``.

        :param objid: Target object.
        :param method: Method description providing the selector.
        :param style: Dispatch style of the target endpoint.
        :param arguments: Encoded arguments.
        :returns: Remote call.
        """
        return cls(objid, style, method.selector_for(style), tuple(arguments))


@dataclass(frozen=True)
class CallOutcome:
    """Decoded reply: either a return value or a classified remote exception."""

    uid: UID
    value: object = None
    exception: ExceptionRecord | None = None
    classification: Classification | None = None
    rule: ClassificationRule | None = None

    @property
    def is_exception(self) -> bool:
        return self.exception is not None

    def __str__(self) -> str:
        if self.exception is None:
            return "normal return"
        return f"{self.classification.value}: {self.exception}"


@dataclass(frozen=True)
class DecodedArgument:
    value: object
    raw: bytes


@dataclass(frozen=True)
class DecodedCall:
    objid: ObjID
    selector: Selector
    arguments: tuple[DecodedArgument, ...]


def encode_call(call: RemoteCall) -> bytes:
    """Encode a call message.

    Attack slots are spliced verbatim (after handle relocation) in place of a
    normally serialized value, so the rest of the envelope stays valid.

    :param call: Call to encode.
    :returns: Message bytes starting with the call message type.
    """
    writer: ObjectStreamWriter = ObjectStreamWriter()
    writer.write_block(call.objid.encode())
    writer.write_primitive("I", call.selector.operation)
    writer.write_primitive("J", call.selector.hash)
    for argument in call.arguments:
        if argument.is_payload is True:
            writer.write_raw_object(argument.payload)
        elif argument.is_primitive is True:
            writer.write_primitive(argument.descriptor, argument.value)
        else:
            writer.write_value(argument.value)
    return bytes([MSG_CALL]) + writer.getvalue()


def decode_call(data: bytes, parameter_descriptors: tuple[str, ...] | list[str]) -> DecodedCall:
    """Decode a call message (the server side view of :func:`encode_call`).

    :param data: Message bytes.
    :param parameter_descriptors: Expected parameter descriptors.
    :returns: Decoded call with the raw bytes of each argument.
    :raises MalformedResponseError: If the message is not a call.
    """
    objid, selector, reader = read_call_header(data)
    arguments: list[DecodedArgument] = []
    for descriptor in parameter_descriptors:
        start: int = reader.position
        value: object
        if len(descriptor) == 1:
            value = reader.read_primitive(descriptor)
        else:
            value = reader.read_object()
        arguments.append(DecodedArgument(value, data[start:reader.position]))
    return DecodedCall(objid, selector, tuple(arguments))


def read_call_header(data: bytes) -> tuple[ObjID, Selector, ObjectStreamReader]:
    """Decode only the ObjID and selector of a call, leaving the reader at the arguments."""
    if len(data) == 0 or data[0] != MSG_CALL:
        raise MalformedResponseError("Message is not a call")
    reader: ObjectStreamReader = ObjectStreamReader(data, offset=1)
    objid: ObjID = ObjID.decode(reader.read_block_bytes(OBJID_LENGTH))
    operation: int = reader.read_primitive("I")
    method_hash: int = reader.read_primitive("J")
    return objid, Selector(operation, method_hash), reader


def _parse_reply(data: bytes, return_descriptor: str | None) -> tuple[UID, object, bool]:
    if len(data) == 0:
        raise IncompleteStreamError("Empty reply")
    if data[0] != MSG_RETURN:
        raise MalformedResponseError(f"Unexpected message type {data[0]:#04x} (expected return data)")

    reader: ObjectStreamReader = ObjectStreamReader(data, offset=1)
    return_type: int = reader.read_primitive("B")
    uid: UID = UID.decode(reader.read_block_bytes(UID_LENGTH))

    if return_type == RETURN_EXCEPTION:
        return uid, reader.read_object(), True
    if return_type != RETURN_NORMAL:
        raise MalformedResponseError(f"Unknown return type {return_type:#04x}")

    if return_descriptor == "V":
        return uid, None, False
    if return_descriptor is not None and len(return_descriptor) == 1:
        return uid, reader.read_primitive(return_descriptor), False
    if return_descriptor is not None:
        return uid, reader.read_object(), False
    # return type unknown: consume whatever follows and drop it
    reader.skip_block_data()
    if reader.at_end() is False:
        reader.read_object()
    return uid, None, False


def decode_reply(data: bytes, return_descriptor: str | None = None) -> CallOutcome:
    """Decode a reply message.

    :param data: Message bytes starting with the return message type.
    :param return_descriptor: Expected return descriptor; ``None`` discards the value.
    :returns: Decoded outcome.
    :raises IncompleteStreamError: If ``data`` ends early.
    :raises MalformedResponseError: If ``data`` is not a reply.
    """
    uid, value, is_exception = _parse_reply(data, return_descriptor)
    if is_exception is False:
        return CallOutcome(uid, value)
    record: ExceptionRecord = record_from_throwable(value)
    classification, rule = classify(record)
    if classification is Classification.OTHER:
        logger.warning("Unclassified remote exception: %s", " <- ".join(str(item) for item in record.chain()))
    return CallOutcome(uid, None, record, classification, rule)


def is_complete_reply(data: bytes) -> bool:
    """Report whether ``data`` holds a full reply message (used for framing).

    Only the stream structure is checked; the thrown exception, if any, is
    not classified.
    """
    try:
        _parse_reply(data, None)
    except IncompleteStreamError:
        return False
    except MalformedResponseError:
        return True
    return True
