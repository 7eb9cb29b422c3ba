"""Remote references carried inside stubs returned by (or sent to) a registry."""

import struct
from dataclasses import dataclass

from rmiguess.errors import MalformedResponseError
from rmiguess.objid import OBJID_LENGTH
from rmiguess.objid import ObjID
from rmiguess.serialization import SC_SERIALIZABLE
from rmiguess.serialization import SC_WRITE_METHOD
from rmiguess.serialization import ClassDesc
from rmiguess.serialization import JavaObject
from rmiguess.serialization import NewObject
from rmiguess.serialization import encode_utf

REMOTE_OBJECT_CLASS: str = "java.rmi.server.RemoteObject"
FORMAT_HOST_PORT: int = 0
FORMAT_HOST_PORT_FACTORY: int = 1

KNOWN_REMOTE_CLASSES: frozenset[str] = frozenset({
    "javax.management.remote.rmi.RMIServer",
    "javax.management.remote.rmi.RMIServerImpl_Stub",
    "java.rmi.registry.Registry",
    "sun.rmi.registry.RegistryImpl_Stub",
    "java.rmi.activation.ActivationSystem",
    "java.rmi.activation.Activator",
    "java.rmi.dgc.DGC",
})

_REMOTE_OBJECT_DESC: ClassDesc = ClassDesc(REMOTE_OBJECT_CLASS, -3215090123894869218, SC_SERIALIZABLE | SC_WRITE_METHOD)
_REMOTE_STUB_DESC: ClassDesc = ClassDesc("java.rmi.server.RemoteStub", -1585587260594494182, super_desc=_REMOTE_OBJECT_DESC)
_JMX_STUB_DESC: ClassDesc = ClassDesc("javax.management.remote.rmi.RMIServerImpl_Stub", 2, super_desc=_REMOTE_STUB_DESC)


@dataclass(frozen=True)
class RemoteReference:
    """Endpoint and ObjID a stub points to."""

    host: str
    port: int
    objid: ObjID
    ref_type: str = "UnicastRef"
    socket_factory: str | None = None

    @property
    def uses_tls(self) -> bool:
        if self.socket_factory is None:
            return False
        return "ssl" in self.socket_factory.lower()


@dataclass(frozen=True)
class BoundObject:
    """A registry entry resolved by ``lookup``."""

    name: str
    class_names: tuple[str, ...]
    reference: RemoteReference | None

    @property
    def is_legacy_stub(self) -> bool:
        """Report whether the entry uses a pre-generated ``_Stub`` class."""
        return any(item.endswith("_Stub") for item in self.class_names)

    @property
    def is_known(self) -> bool:
        return any(item in KNOWN_REMOTE_CLASSES for item in self.class_names)

    @property
    def objid(self) -> ObjID | None:
        if self.reference is None:
            return None
        return self.reference.objid


class _CustomDataCursor:
    """Sequential reader over the block data and objects a class wrote itself."""

    _items: list[object]
    _buffer: bytes

    def __init__(self, items: list[object]) -> None:
        self._items = list(items)
        self._buffer = b""

    def read(self, count: int) -> bytes:
        while len(self._buffer) < count:
            if len(self._items) == 0 or isinstance(self._items[0], bytes) is False:
                raise MalformedResponseError("Remote reference data ended early")
            self._buffer += self._items.pop(0)
        chunk: bytes = self._buffer[:count]
        self._buffer = self._buffer[count:]
        return chunk

    def read_utf(self) -> str:
        length: int = struct.unpack(">H", self.read(2))[0]
        return self.read(length).decode("utf-8", "replace")

    def read_object(self) -> object:
        if len(self._buffer) > 0 or len(self._items) == 0 or isinstance(self._items[0], bytes):
            raise MalformedResponseError("Expected an object inside remote reference data")
        return self._items.pop(0)


def _parse_reference(items: list[object]) -> RemoteReference | None:
    cursor: _CustomDataCursor = _CustomDataCursor(items)
    ref_type: str = cursor.read_utf()
    if ref_type not in ("UnicastRef", "UnicastRef2"):
        return None

    socket_factory: str | None = None
    endpoint_format: int = FORMAT_HOST_PORT
    if ref_type == "UnicastRef2":
        endpoint_format = cursor.read(1)[0]
    host: str = cursor.read_utf()
    port: int = struct.unpack(">i", cursor.read(4))[0]
    if endpoint_format == FORMAT_HOST_PORT_FACTORY:
        factory: object = cursor.read_object()
        if isinstance(factory, JavaObject):
            socket_factory = factory.class_name
    objid: ObjID = ObjID.decode(cursor.read(OBJID_LENGTH))
    return RemoteReference(host, port, objid, ref_type, socket_factory)


def parse_bound_object(name: str, value: object) -> BoundObject:
    """Extract class names and the remote reference from a lookup result.

    :param name: Bound name the value was returned for.
    :param value: Decoded return value (stub object or dynamic proxy).
    :returns: Bound object description.
    :raises MalformedResponseError: If the value is not a remote object.
    """
    if isinstance(value, JavaObject) is False:
        raise MalformedResponseError(f"Lookup of {name!r} did not return an object")

    holder: JavaObject = value
    class_names: list[str]
    if value.desc.is_proxy is True:
        class_names = list(value.desc.interfaces)
        handler: object = value.fields.get("h")
        if isinstance(handler, JavaObject) is False:
            raise MalformedResponseError(f"Proxy for {name!r} has no invocation handler")
        holder = handler
    else:
        class_names = [item for item in value.desc.class_names() if item != REMOTE_OBJECT_CLASS]

    items: list[object] | None = holder.annotations.get(REMOTE_OBJECT_CLASS)
    if items is None:
        return BoundObject(name, tuple(class_names), None)
    return BoundObject(name, tuple(class_names), _parse_reference(items))


def build_remote_stub(host: str, port: int, objid: ObjID) -> NewObject:
    """Build a JMX server stub pointing to ``host:port`` (used for bind and rebind).

    :param host: Listener host the registry entry should point to.
    :param port: Listener port.
    :param objid: ObjID exported by the listener.
    :returns: Serializable stub object.
    """
    ref_data: bytes = (
        encode_utf("UnicastRef")
        + encode_utf(host)
        + struct.pack(">i", port)
        + objid.encode()
        + b"\x00"
    )
    return NewObject(_JMX_STUB_DESC, custom_data={REMOTE_OBJECT_CLASS: [ref_data]})
