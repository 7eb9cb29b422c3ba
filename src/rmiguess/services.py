"""Typed adapters for the registry, the distributed garbage collector and the activator."""

import logging
import os
import struct
from dataclasses import dataclass

from rmiguess.client import Invoker
from rmiguess.envelope import CallArgument
from rmiguess.envelope import CallOutcome
from rmiguess.envelope import DispatchStyle
from rmiguess.envelope import RemoteCall
from rmiguess.envelope import Selector
from rmiguess.errors import MalformedResponseError
from rmiguess.errors import RemoteCallError
from rmiguess.hashing import compute_method_hash
from rmiguess.objid import ACTIVATOR_ID
from rmiguess.objid import DGC_ID
from rmiguess.objid import REGISTRY_ID
from rmiguess.objid import UID
from rmiguess.objid import ObjID
from rmiguess.serialization import SC_SERIALIZABLE
from rmiguess.serialization import ClassDesc
from rmiguess.serialization import FieldDesc
from rmiguess.serialization import JavaArray
from rmiguess.serialization import JavaObject
from rmiguess.serialization import NewArray
from rmiguess.serialization import NewObject
from rmiguess.stubs import BoundObject
from rmiguess.stubs import parse_bound_object
from rmiguess.transport import Endpoint

logger: logging.Logger = logging.getLogger(__name__)

REGISTRY_INTERFACE_HASH: int = 4905912898345647071
DGC_INTERFACE_HASH: int = -669196253586618813


@dataclass(frozen=True)
class WellKnownOperation:
    """A fixed operation of a well-known remote object.

    The selector does not depend on the detected dispatch style: registry and
    DGC operations are always ordinal addressed, the activator is always hash
    addressed. ``modern_selector`` is used for the registry localhost bypass.
    """

    service: str
    name: str
    objid: ObjID
    descriptor: str
    ordinal: int | None
    interface_hash: int | None = None

    @property
    def method_hash(self) -> int:
        return compute_method_hash(self.name + self.descriptor)

    @property
    def parameter_descriptors(self) -> tuple[str, ...]:
        return _split_descriptor(self.descriptor)

    @property
    def return_descriptor(self) -> str:
        return self.descriptor[self.descriptor.index(")") + 1:]

    @property
    def style(self) -> DispatchStyle:
        if self.ordinal is None:
            return DispatchStyle.MODERN
        return DispatchStyle.LEGACY

    @property
    def selector(self) -> Selector:
        if self.ordinal is None or self.interface_hash is None:
            return Selector.modern(self.method_hash)
        return Selector.legacy(self.ordinal, self.interface_hash)

    @property
    def modern_selector(self) -> Selector:
        return Selector.modern(self.method_hash)

    def call(self, arguments: list[CallArgument], modern: bool = False) -> RemoteCall:
        """Build a call of this operation.

        :param arguments: Encoded arguments.
        :param modern: Address the operation by method hash even if it is ordinal addressed.
        :returns: Remote call.
        """
        if modern is True:
            return RemoteCall(self.objid, DispatchStyle.MODERN, self.modern_selector, tuple(arguments))
        return RemoteCall(self.objid, self.style, self.selector, tuple(arguments))

    def __str__(self) -> str:
        return f"{self.service}.{self.name}"


def _split_descriptor(descriptor: str) -> tuple[str, ...]:
    """Split the parameter part of a method descriptor into field descriptors."""
    body: str = descriptor[descriptor.index("(") + 1:descriptor.index(")")]
    params: list[str] = []
    index: int = 0
    while index < len(body):
        start: int = index
        while body[index] == "[":
            index += 1
        if body[index] == "L":
            index = body.index(";", index)
        index += 1
        params.append(body[start:index])
    return tuple(params)


REGISTRY_OPERATIONS: dict[str, WellKnownOperation] = {
    "bind": WellKnownOperation(
        "registry", "bind", REGISTRY_ID, "(Ljava/lang/String;Ljava/rmi/Remote;)V", 0, REGISTRY_INTERFACE_HASH
    ),
    "list": WellKnownOperation(
        "registry", "list", REGISTRY_ID, "()[Ljava/lang/String;", 1, REGISTRY_INTERFACE_HASH
    ),
    "lookup": WellKnownOperation(
        "registry", "lookup", REGISTRY_ID, "(Ljava/lang/String;)Ljava/rmi/Remote;", 2, REGISTRY_INTERFACE_HASH
    ),
    "rebind": WellKnownOperation(
        "registry", "rebind", REGISTRY_ID, "(Ljava/lang/String;Ljava/rmi/Remote;)V", 3, REGISTRY_INTERFACE_HASH
    ),
    "unbind": WellKnownOperation(
        "registry", "unbind", REGISTRY_ID, "(Ljava/lang/String;)V", 4, REGISTRY_INTERFACE_HASH
    ),
}

DGC_OPERATIONS: dict[str, WellKnownOperation] = {
    "clean": WellKnownOperation(
        "dgc", "clean", DGC_ID, "([Ljava/rmi/server/ObjID;JLjava/rmi/dgc/VMID;Z)V", 0, DGC_INTERFACE_HASH
    ),
    "dirty": WellKnownOperation(
        "dgc", "dirty", DGC_ID, "([Ljava/rmi/server/ObjID;JLjava/rmi/dgc/Lease;)Ljava/rmi/dgc/Lease;", 1, DGC_INTERFACE_HASH
    ),
}

ACTIVATOR_OPERATIONS: dict[str, WellKnownOperation] = {
    "activate": WellKnownOperation(
        "activator", "activate", ACTIVATOR_ID, "(Ljava/rmi/activation/ActivationID;Z)Ljava/rmi/MarshalledObject;", None
    ),
}


# ----------------------------------------------------------------------------
# Argument objects
# ----------------------------------------------------------------------------

_UID_DESC: ClassDesc = ClassDesc(
    "java.rmi.server.UID",
    1086053664494604050,
    SC_SERIALIZABLE,
    (FieldDesc("S", "count"), FieldDesc("J", "time"), FieldDesc("I", "unique")),
)
_OBJID_DESC: ClassDesc = ClassDesc(
    "java.rmi.server.ObjID",
    -6386392263968365220,
    SC_SERIALIZABLE,
    (FieldDesc("J", "objNum"), FieldDesc("L", "space", "Ljava/rmi/server/UID;")),
)
_OBJID_ARRAY_DESC: ClassDesc = ClassDesc("[Ljava.rmi.server.ObjID;", -8713620060742318195, SC_SERIALIZABLE)
_BYTE_ARRAY_DESC: ClassDesc = ClassDesc("[B", -5984413125824719648, SC_SERIALIZABLE)
_VMID_DESC: ClassDesc = ClassDesc(
    "java.rmi.dgc.VMID",
    -538642295484486218,
    SC_SERIALIZABLE,
    (FieldDesc("[", "addr", "[B"), FieldDesc("L", "uid", "Ljava/rmi/server/UID;")),
)
_LEASE_DESC: ClassDesc = ClassDesc(
    "java.rmi.dgc.Lease",
    -5713411624328831948,
    SC_SERIALIZABLE,
    (FieldDesc("J", "value"), FieldDesc("L", "vmid", "Ljava/rmi/dgc/VMID;")),
)


def uid_value(uid: UID) -> NewObject:
    return NewObject(_UID_DESC, {"count": uid.count, "time": uid.time, "unique": uid.unique})


def objid_array_value(objids: list[ObjID]) -> NewArray:
    """Serializable ``ObjID[]`` as expected by DGC operations."""
    items: list[object] = [
        NewObject(_OBJID_DESC, {"objNum": item.object_number, "space": uid_value(item.uid)}) for item in objids
    ]
    return NewArray(_OBJID_ARRAY_DESC, "L", items)


def vmid_value(uid: UID | None = None) -> NewObject:
    """Serializable ``VMID`` with a random address part."""
    if uid is None:
        uid = UID.random()
    address: NewArray = NewArray(_BYTE_ARRAY_DESC, "B", list(struct.unpack(">8b", os.urandom(8))))
    return NewObject(_VMID_DESC, {"addr": address, "uid": uid_value(uid)})


def lease_value(duration: int, vmid: NewObject | None = None) -> NewObject:
    return NewObject(_LEASE_DESC, {"value": duration, "vmid": vmid if vmid is not None else vmid_value()})


# ----------------------------------------------------------------------------
# Adapters
# ----------------------------------------------------------------------------


def _expect_success(operation: WellKnownOperation, outcome: CallOutcome) -> CallOutcome:
    if outcome.is_exception is True:
        logger.debug("%s failed: %s", operation, outcome)
        raise RemoteCallError(outcome)
    return outcome


class RegistryClient:
    """Typed registry operations on one endpoint."""

    _invoker: Invoker
    _endpoint: Endpoint
    _localhost_bypass: bool

    def __init__(self, invoker: Invoker, endpoint: Endpoint, localhost_bypass: bool = False) -> None:
        """Initialize a registry adapter.

        :param invoker: Call invoker.
        :param endpoint: Registry endpoint.
        :param localhost_bypass: Send bind, rebind and unbind hash addressed instead of ordinal addressed.
        """
        self._invoker = invoker
        self._endpoint = endpoint
        self._localhost_bypass = localhost_bypass

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    def _invoke(self, name: str, arguments: list[CallArgument]) -> CallOutcome:
        operation: WellKnownOperation = REGISTRY_OPERATIONS[name]
        modern: bool = self._localhost_bypass is True and name in ("bind", "rebind", "unbind")
        call: RemoteCall = operation.call(arguments, modern=modern)
        outcome: CallOutcome = self._invoker.invoke(self._endpoint, call, operation.return_descriptor)
        return _expect_success(operation, outcome)

    def lookup(self, name: str) -> BoundObject:
        """Resolve a bound name.

        :param name: Bound name.
        :returns: Class names and remote reference of the bound object.
        :raises RemoteCallError: If the registry answers with an exception (e.g. not bound).
        :raises MalformedResponseError: If the returned value is not a remote object.
        """
        outcome: CallOutcome = self._invoke("lookup", [CallArgument("Ljava/lang/String;", name)])
        return parse_bound_object(name, outcome.value)

    def list(self) -> list[str]:
        """Return all bound names.

        :raises RemoteCallError: If the registry answers with an exception.
        :raises MalformedResponseError: If the returned value is not a string array.
        """
        outcome: CallOutcome = self._invoke("list", [])
        if isinstance(outcome.value, JavaArray) is False:
            raise MalformedResponseError("Registry list() did not return an array")
        names: list[str] = []
        for item in outcome.value.items:
            if isinstance(item, str) is False:
                raise MalformedResponseError("Registry list() returned a non-string element")
            names.append(item)
        return names

    def bind(self, name: str, stub: NewObject) -> None:
        self._invoke("bind", [CallArgument("Ljava/lang/String;", name), CallArgument("Ljava/rmi/Remote;", stub)])

    def rebind(self, name: str, stub: NewObject) -> None:
        self._invoke("rebind", [CallArgument("Ljava/lang/String;", name), CallArgument("Ljava/rmi/Remote;", stub)])

    def unbind(self, name: str) -> None:
        self._invoke("unbind", [CallArgument("Ljava/lang/String;", name)])


class DgcClient:
    """Typed distributed garbage collector operations on one endpoint."""

    _invoker: Invoker
    _endpoint: Endpoint

    def __init__(self, invoker: Invoker, endpoint: Endpoint) -> None:
        self._invoker = invoker
        self._endpoint = endpoint

    def dirty(self, objids: list[ObjID], sequence_number: int, lease_duration: int) -> int | None:
        """Request a lease for ``objids``.

        :param objids: Objects to lease.
        :param sequence_number: Call sequence number.
        :param lease_duration: Requested lease duration in milliseconds.
        :returns: Granted duration, ``None`` if the server returned no lease.
        :raises RemoteCallError: If the DGC answers with an exception.
        """
        operation: WellKnownOperation = DGC_OPERATIONS["dirty"]
        arguments: list[CallArgument] = [
            CallArgument("[Ljava/rmi/server/ObjID;", objid_array_value(objids)),
            CallArgument("J", sequence_number),
            CallArgument("Ljava/rmi/dgc/Lease;", lease_value(lease_duration)),
        ]
        outcome: CallOutcome = self._invoker.invoke(
            self._endpoint, operation.call(arguments), operation.return_descriptor
        )
        _expect_success(operation, outcome)
        if isinstance(outcome.value, JavaObject) is False:
            return None
        granted: object = outcome.value.fields.get("value")
        if isinstance(granted, int) is False:
            return None
        return granted

    def clean(self, objids: list[ObjID], sequence_number: int, strong: bool = True) -> None:
        """Release references to ``objids``.

        :param objids: Objects to release.
        :param sequence_number: Call sequence number.
        :param strong: Whether the release is a strong clean.
        :raises RemoteCallError: If the DGC answers with an exception.
        """
        operation: WellKnownOperation = DGC_OPERATIONS["clean"]
        arguments: list[CallArgument] = [
            CallArgument("[Ljava/rmi/server/ObjID;", objid_array_value(objids)),
            CallArgument("J", sequence_number),
            CallArgument("Ljava/rmi/dgc/VMID;", vmid_value()),
            CallArgument("Z", strong),
        ]
        outcome: CallOutcome = self._invoker.invoke(
            self._endpoint, operation.call(arguments), operation.return_descriptor
        )
        _expect_success(operation, outcome)


class ActivatorClient:
    """The activator's single operation."""

    _invoker: Invoker
    _endpoint: Endpoint

    def __init__(self, invoker: Invoker, endpoint: Endpoint) -> None:
        self._invoker = invoker
        self._endpoint = endpoint

    def activate(self, activation_id: object = None, force: bool = False) -> object:
        """Ask the activator to activate an object.

        :param activation_id: Serializable activation identifier, ``None`` sends null.
        :param force: Whether to force a fresh activation.
        :returns: Returned ``MarshalledObject``.
        :raises RemoteCallError: If the activator answers with an exception.
        """
        operation: WellKnownOperation = ACTIVATOR_OPERATIONS["activate"]
        arguments: list[CallArgument] = [
            CallArgument("Ljava/rmi/activation/ActivationID;", activation_id),
            CallArgument("Z", force),
        ]
        outcome: CallOutcome = self._invoker.invoke(
            self._endpoint, operation.call(arguments), operation.return_descriptor
        )
        return _expect_success(operation, outcome).value


def find_operation(service: str, name: str) -> WellKnownOperation:
    """Look up a well-known operation by service (``reg``, ``dgc``, ``act``) and name.

    :param service: Service short name.
    :param name: Operation name.
    :returns: Operation description.
    :raises KeyError: If the operation does not exist.
    """
    tables: dict[str, dict[str, WellKnownOperation]] = {
        "reg": REGISTRY_OPERATIONS,
        "dgc": DGC_OPERATIONS,
        "act": ACTIVATOR_OPERATIONS,
    }
    return tables[service][name]
