"""Threaded JRMP endpoint answering calls the way a JDK server would."""

import socket
import socketserver
import struct
import threading
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field

from rmiguess.classification import PROBE_CLASS_NAME
from rmiguess.envelope import MSG_PING
from rmiguess.envelope import MSG_PING_ACK
from rmiguess.envelope import MSG_RETURN
from rmiguess.envelope import RETURN_EXCEPTION
from rmiguess.envelope import RETURN_NORMAL
from rmiguess.envelope import Selector
from rmiguess.envelope import read_call_header
from rmiguess.objid import UID
from rmiguess.objid import ObjID
from rmiguess.serialization import SC_SERIALIZABLE
from rmiguess.serialization import SC_WRITE_METHOD
from rmiguess.serialization import ClassDesc
from rmiguess.serialization import FieldDesc
from rmiguess.serialization import IncompleteStreamError
from rmiguess.serialization import JavaObject
from rmiguess.serialization import NewArray
from rmiguess.serialization import NewObject
from rmiguess.serialization import ObjectStreamReader
from rmiguess.serialization import ObjectStreamWriter
from rmiguess.serialization import encode_utf
from rmiguess.stubs import REMOTE_OBJECT_CLASS
from rmiguess.transport import HANDSHAKE
from rmiguess.transport import PROTOCOL_ACK
from rmiguess.transport import Endpoint

STUB_HOST: str = "127.0.0.1"
UNRECOGNIZED_HASH: str = "unrecognized method hash: method not supported by remote object"
SKELETON_MISSING: str = "skeleton class not found but required for client version"
ARGUMENT_ERROR: str = "error unmarshalling arguments"

_THROWABLE_DESC: ClassDesc = ClassDesc(
    "java.lang.Throwable",
    -3042686055658047285,
    SC_SERIALIZABLE | SC_WRITE_METHOD,
    (FieldDesc("L", "cause", "Ljava/lang/Throwable;"), FieldDesc("L", "detailMessage", "Ljava/lang/String;")),
)
_EXCEPTION_DESC: ClassDesc = ClassDesc("java.lang.Exception", -3387516993124229948, super_desc=_THROWABLE_DESC)
_IO_EXCEPTION_DESC: ClassDesc = ClassDesc("java.io.IOException", 7818375828146090155, super_desc=_EXCEPTION_DESC)
_REMOTE_EXCEPTION_DESC: ClassDesc = ClassDesc(
    "java.rmi.RemoteException",
    -5148567311918794206,
    fields=(FieldDesc("L", "detail", "Ljava/lang/Throwable;"),),
    super_desc=_IO_EXCEPTION_DESC,
)
_STRING_ARRAY_DESC: ClassDesc = ClassDesc("[Ljava.lang.String;", -5921575005990323385)
_PROXY_DESC: ClassDesc = ClassDesc(
    "java.lang.reflect.Proxy",
    -2222568056686623797,
    fields=(FieldDesc("L", "h", "Ljava/lang/reflect/InvocationHandler;"),),
)
_REMOTE_OBJECT_DESC: ClassDesc = ClassDesc(REMOTE_OBJECT_CLASS, -3215090123894869218, SC_SERIALIZABLE | SC_WRITE_METHOD)
_HANDLER_DESC: ClassDesc = ClassDesc("java.rmi.server.RemoteObjectInvocationHandler", 2, super_desc=_REMOTE_OBJECT_DESC)

CallHandler = Callable[[ObjID, Selector, ObjectStreamReader], bytes | None]


def throwable(type_name: str, message: str | None = None, cause: NewObject | None = None, remote: bool = False) -> NewObject:
    """Build a serializable exception.

    :param type_name: Exception class name.
    :param message: Detail message.
    :param cause: Wrapped exception (``detail`` for remote exceptions, ``cause`` otherwise).
    :param remote: Whether the class extends ``java.rmi.RemoteException``.
    :returns: Exception object.
    """
    parent: ClassDesc = _REMOTE_EXCEPTION_DESC if remote is True else _EXCEPTION_DESC
    values: dict[str, object] = {"detailMessage": message}
    if remote is True:
        values["detail"] = cause
    else:
        values["cause"] = cause
    return NewObject(ClassDesc(type_name, 1, super_desc=parent), values)


def exception_reply(exception: NewObject) -> bytes:
    writer: ObjectStreamWriter = ObjectStreamWriter()
    writer.write_primitive("B", RETURN_EXCEPTION)
    writer.write_block(UID.random().encode())
    writer.write_value(exception)
    return bytes([MSG_RETURN]) + writer.getvalue()


def normal_reply(value: object = None, void: bool = False) -> bytes:
    """Build a normal return; ``void`` omits the value entirely."""
    writer: ObjectStreamWriter = ObjectStreamWriter()
    writer.write_primitive("B", RETURN_NORMAL)
    writer.write_block(UID.random().encode())
    if void is False:
        writer.write_value(value)
    return bytes([MSG_RETURN]) + writer.getvalue()


def string_array(items: list[str]) -> NewArray:
    return NewArray(_STRING_ARRAY_DESC, "Ljava/lang/String;", list(items))


def remote_proxy(interface: str, host: str, port: int, objid: ObjID) -> NewObject:
    """Build the dynamic proxy a registry returns for an exported object."""
    ref_data: bytes = encode_utf("UnicastRef") + encode_utf(host) + struct.pack(">i", port) + objid.encode() + b"\x00"
    handler: NewObject = NewObject(_HANDLER_DESC, custom_data={REMOTE_OBJECT_CLASS: [ref_data]})
    desc: ClassDesc = ClassDesc(
        "",
        0,
        interfaces=("java.rmi.Remote", interface),
        is_proxy=True,
        super_desc=_PROXY_DESC,
    )
    return NewObject(desc, {"h": handler})


def unmarshal_error(message: str, cause: NewObject | None = None) -> bytes:
    return exception_reply(throwable("java.rmi.UnmarshalException", message, cause, remote=True))


@dataclass
class RecordedCall:
    objid: ObjID
    selector: Selector
    message: bytes


def _read_exact(sock: socket.socket, count: int) -> bytes:
    data: bytes = b""
    while len(data) < count:
        chunk: bytes = sock.recv(count - len(data))
        if len(chunk) == 0:
            raise ConnectionResetError("client went away")
        data += chunk
    return data


class _StubRequestHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        stub: StubJrmpServer = self.server.stub
        sock: socket.socket = self.request
        try:
            self._serve(stub, sock)
        except OSError:
            return

    def _serve(self, stub: "StubJrmpServer", sock: socket.socket) -> None:
        if _read_exact(sock, len(HANDSHAKE)) != HANDSHAKE:
            return
        client_host: str = self.client_address[0]
        sock.sendall(bytes([PROTOCOL_ACK]) + encode_utf(client_host) + struct.pack(">i", self.client_address[1]))
        host_length: int = struct.unpack(">H", _read_exact(sock, 2))[0]
        _read_exact(sock, host_length + 4)

        buffer: bytes = b""
        answered: bool = False
        while True:
            chunk: bytes = sock.recv(4096)
            if len(chunk) == 0:
                return
            if answered is True:
                continue
            buffer += chunk
            if buffer[:1] == bytes([MSG_PING]):
                sock.sendall(bytes([MSG_PING_ACK]))
                answered = True
                continue
            try:
                objid, selector, reader = read_call_header(buffer)
                reply: bytes | None = stub.handler(objid, selector, reader)
            except IncompleteStreamError:
                continue
            stub.record(RecordedCall(objid, selector, buffer))
            if reply is None:
                return
            sock.sendall(reply)
            answered = True


class _ThreadingServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True
    stub: "StubJrmpServer"


class StubJrmpServer:
    """Accept JRMP connections on a local port and answer each call through ``handler``.

    ``handler`` returns the reply bytes, or ``None`` to drop the connection.
    """

    handler: CallHandler
    calls: list[RecordedCall]
    _lock: threading.Lock
    _server: _ThreadingServer
    _thread: threading.Thread

    def __init__(self, handler: CallHandler) -> None:
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()
        self._server = _ThreadingServer((STUB_HOST, 0), _StubRequestHandler)
        self._server.stub = self
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(STUB_HOST, self.port)

    def record(self, call: RecordedCall) -> None:
        with self._lock:
            self.calls.append(call)

    def recorded(self) -> list[RecordedCall]:
        with self._lock:
            return list(self.calls)

    def start(self) -> "StubJrmpServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)

    def __enter__(self) -> "StubJrmpServer":
        return self.start()

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.stop()


@dataclass
class ScriptedRemote:
    """Call handler behaving like a registry plus modern remote objects in one JVM.

    ``replies`` maps ``(object number, method hash)`` to canned replies; any
    other hash addressed call gets an unrecognized method hash error. Objects
    in ``legacy_objects`` have a skeleton: ordinal calls are looked up in
    ``replies`` by interface hash and anything unknown is a skeleton mismatch.
    """

    port: int = 0
    bound: dict[str, tuple[str, ObjID]] = field(default_factory=dict)
    replies: dict[tuple[int, int], bytes] = field(default_factory=dict)
    legacy_objects: set[int] = field(default_factory=set)
    filter_enabled: bool = False
    codebase_enabled: bool = False
    activator_available: bool = False

    def bind(self, name: str, interface: str, objid: ObjID) -> None:
        self.bound[name] = (interface, objid)

    def answer(self, object_number: int, method_hash: int, reply: bytes) -> None:
        self.replies[(object_number, method_hash)] = reply

    def __call__(self, objid: ObjID, selector: Selector, reader: ObjectStreamReader) -> bytes | None:
        if objid.object_number == 0:
            return self._registry(selector, reader)
        if objid.object_number == 2:
            return self._argument_check(reader.read_object())
        if objid.object_number == 1:
            if self.activator_available is False:
                return exception_reply(throwable("java.rmi.NoSuchObjectException", "no such object in table", remote=True))
            return self._argument_check(reader.read_object())
        if selector.operation >= 0:
            if objid.object_number in self.legacy_objects:
                return self._skeleton(objid, selector)
            return unmarshal_error(SKELETON_MISSING)
        reply: bytes | None = self.replies.get((objid.object_number, selector.hash))
        if reply is None:
            return unmarshal_error(UNRECOGNIZED_HASH)
        return reply

    def _skeleton(self, objid: ObjID, selector: Selector) -> bytes:
        reply: bytes | None = self.replies.get((objid.object_number, selector.hash))
        if reply is None:
            return exception_reply(
                throwable("java.rmi.server.SkeletonMismatchException", "interface hash mismatch", remote=True)
            )
        return reply

    def _argument_check(self, argument: object) -> bytes:
        if isinstance(argument, JavaObject) is False:
            return normal_reply(void=True)
        if argument.class_name == PROBE_CLASS_NAME:
            if self.codebase_enabled is True:
                cause: NewObject = throwable("java.net.MalformedURLException", "no protocol: rmiguess-invalid-url")
                return unmarshal_error(ARGUMENT_ERROR, cause)
            cause = throwable("java.lang.ClassNotFoundException", PROBE_CLASS_NAME)
            return unmarshal_error(ARGUMENT_ERROR, cause)
        if self.filter_enabled is True:
            cause = throwable("java.io.InvalidClassException", "filter status: REJECTED")
            return unmarshal_error(ARGUMENT_ERROR, cause)
        cause = throwable("java.lang.ClassCastException", f"{argument.class_name} cannot be cast to java.lang.String")
        return unmarshal_error(ARGUMENT_ERROR, cause)

    def _registry(self, selector: Selector, reader: ObjectStreamReader) -> bytes:
        if selector.operation == 1:
            return normal_reply(string_array(list(self.bound)))
        if selector.operation == 2:
            name: object = reader.read_object()
            if isinstance(name, str) is False:
                return self._argument_check(name)
            entry: tuple[str, ObjID] | None = self.bound.get(name)
            if entry is None:
                return exception_reply(throwable("java.rmi.NotBoundException", name))
            return normal_reply(remote_proxy(entry[0], STUB_HOST, self.port, entry[1]))
        origin: str = f"Registry.{'bind' if selector.operation == 0 else 'rebind'} disallowed; origin /10.0.0.1 is non-local host"
        return exception_reply(throwable("java.rmi.AccessException", origin, remote=True))
