"""Tests for call and reply envelopes."""

import logging

import pytest

from rmiguess.classification import Classification
from rmiguess.envelope import MSG_CALL
from rmiguess.envelope import CallArgument
from rmiguess.envelope import CallOutcome
from rmiguess.envelope import DecodedCall
from rmiguess.envelope import DispatchStyle
from rmiguess.envelope import RemoteCall
from rmiguess.envelope import Selector
from rmiguess.envelope import decode_call
from rmiguess.envelope import decode_reply
from rmiguess.envelope import encode_call
from rmiguess.envelope import is_complete_reply
from rmiguess.errors import MalformedResponseError
from rmiguess.objid import REGISTRY_ID
from rmiguess.objid import UID
from rmiguess.objid import ObjID
from rmiguess.serialization import IncompleteStreamError
from rmiguess.serialization import Primitive
from rmiguess.services import REGISTRY_INTERFACE_HASH
from rmiguess.services import REGISTRY_OPERATIONS
from tests.fixtures.jrmp_stub import exception_reply
from tests.fixtures.jrmp_stub import normal_reply
from tests.fixtures.jrmp_stub import throwable
from tests.fixtures.jrmp_stub import unmarshal_error


def test_registry_lookup_call_layout() -> None:
    """Verify a legacy registry call carries ObjID, ordinal, interface hash and the name."""
    call: RemoteCall = REGISTRY_OPERATIONS["lookup"].call([CallArgument("Ljava/lang/String;", "jmxrmi")])
    message: bytes = encode_call(call)
    assert message[0] == MSG_CALL
    assert message[1:5] == b"\xac\xed\x00\x05"
    decoded: DecodedCall = decode_call(message, ("Ljava/lang/String;",))
    assert decoded.objid == REGISTRY_ID
    assert decoded.selector == Selector(2, REGISTRY_INTERFACE_HASH)
    assert decoded.arguments[0].value == "jmxrmi"


def test_modern_call_with_primitives_and_objects() -> None:
    objid: ObjID = ObjID(42, UID(1, 2, 3))
    call: RemoteCall = RemoteCall(
        objid,
        DispatchStyle.MODERN,
        Selector.modern(1763858399766068019),
        (CallArgument("I", 3), CallArgument("Ljava/lang/String;", "hello"), CallArgument("J", -9)),
    )
    decoded: DecodedCall = decode_call(encode_call(call), ("I", "Ljava/lang/String;", "J"))
    assert decoded.objid == objid
    assert decoded.selector.operation == -1
    assert [item.value for item in decoded.arguments] == [3, "hello", -9]


def test_payload_argument_is_spliced_verbatim() -> None:
    """Verify opaque payload bytes appear unchanged in their slot."""
    payload: bytes = b"\xac\xed\x00\x05\x74\x00\x03pwn"
    call: RemoteCall = RemoteCall(
        ObjID(9),
        DispatchStyle.MODERN,
        Selector.modern(1),
        (CallArgument("Ljava/lang/String;", None), CallArgument.attack("Ljava/lang/Object;", payload)),
    )
    decoded: DecodedCall = decode_call(encode_call(call), ("Ljava/lang/String;", "Ljava/lang/Object;"))
    assert decoded.arguments[0].value is None
    assert decoded.arguments[1].raw == payload[4:]
    assert decoded.arguments[1].value == "pwn"


def test_call_rejects_unknown_style_and_mismatched_selector() -> None:
    with pytest.raises(ValueError):
        RemoteCall(ObjID(5), DispatchStyle.UNKNOWN, Selector.modern(1))
    with pytest.raises(ValueError):
        RemoteCall(ObjID(5), DispatchStyle.LEGACY, Selector.modern(1))
    with pytest.raises(ValueError):
        RemoteCall(ObjID(5), DispatchStyle.MODERN, Selector.legacy(0, 1))
    with pytest.raises(ValueError):
        Selector.legacy(-1, 1)


def test_primitive_argument_write_value() -> None:
    call: RemoteCall = RemoteCall(ObjID(5), DispatchStyle.MODERN, Selector.modern(1), (CallArgument("Ljava/lang/Object;", Primitive("B", 7)),))
    decoded: DecodedCall = decode_call(encode_call(call), ("B",))
    assert decoded.arguments[0].value == 7


@pytest.mark.parametrize(
    ("descriptor", "value", "expected"),
    [
        ("V", None, None),
        ("I", Primitive("I", 12), 12),
        ("Ljava/lang/String;", "motd", "motd"),
        (None, "ignored", None),
    ],
)
def test_normal_reply_decoding(descriptor: str | None, value: object, expected: object) -> None:
    """Verify return values are decoded according to the return descriptor.

    :param descriptor: Return descriptor given to the decoder.
    :param value: Value written by the server.
    :param expected: Decoded value.
    """
    reply: bytes = normal_reply(void=True) if descriptor == "V" else normal_reply(value)
    outcome: CallOutcome = decode_reply(reply, descriptor)
    assert outcome.is_exception is False
    assert outcome.value == expected


def test_exception_reply_is_classified() -> None:
    outcome: CallOutcome = decode_reply(unmarshal_error("unrecognized method hash: method not supported by remote object"))
    assert outcome.classification is Classification.METHOD_NOT_FOUND
    assert outcome.rule is not None


def test_reply_framing() -> None:
    """Verify partial replies are detected so the transport keeps reading."""
    reply: bytes = normal_reply("a value long enough to split")
    assert is_complete_reply(reply) is True
    assert is_complete_reply(reply[:-5]) is False
    assert is_complete_reply(reply[:1]) is False
    with pytest.raises(IncompleteStreamError):
        decode_reply(b"")


def test_non_return_message_is_rejected() -> None:
    with pytest.raises(MalformedResponseError):
        decode_reply(b"\x50\xac\xed\x00\x05")
    assert is_complete_reply(b"\x53") is True


def test_framing_leaves_classification_to_the_decoder(
    caplog: pytest.LogCaptureFixture,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Verify the framing check neither classifies nor logs, so each reply is reported once."""
    monkeypatch.setattr(logging.getLogger("rmiguess"), "propagate", True)
    reply: bytes = exception_reply(throwable("java.lang.IllegalStateException", "odd state"))
    with caplog.at_level(logging.WARNING, logger="rmiguess"):
        for end in range(1, len(reply) + 1):
            is_complete_reply(reply[:end])
        assert caplog.records == []
        outcome: CallOutcome = decode_reply(reply)
    assert outcome.classification is Classification.OTHER
    assert [record.getMessage().startswith("Unclassified remote exception") for record in caplog.records] == [True]
