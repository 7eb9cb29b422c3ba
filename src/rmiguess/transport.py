"""Endpoint connections: socket setup, optional TLS and the stream protocol handshake."""

import contextlib
import logging
import socket
import ssl
import struct
import threading
from collections.abc import Callable
from collections.abc import Iterator
from dataclasses import dataclass

from rmiguess.errors import ProtocolConnectionError
from rmiguess.serialization import encode_utf

logger: logging.Logger = logging.getLogger(__name__)

TRANSPORT_MAGIC: bytes = b"JRMI"
TRANSPORT_VERSION: int = 2
STREAM_PROTOCOL: int = 0x4B
PROTOCOL_ACK: int = 0x4E
PROTOCOL_NOT_SUPPORTED: int = 0x4F
HANDSHAKE: bytes = TRANSPORT_MAGIC + struct.pack(">HB", TRANSPORT_VERSION, STREAM_PROTOCOL)
_RECEIVE_SIZE: int = 4096


@dataclass(frozen=True)
class Endpoint:
    """Network address of a service, optionally reached through TLS."""

    host: str
    port: int
    ssl: bool = False

    def __str__(self) -> str:
        if self.ssl is True:
            return f"{self.host}:{self.port} (tls)"
        return f"{self.host}:{self.port}"


def _connection_error(endpoint: Endpoint, exc: BaseException) -> ProtocolConnectionError:
    """Map a socket level exception to a :class:`ProtocolConnectionError`.

    :param endpoint: Endpoint the failure occurred on.
    :param exc: Original exception.
    :returns: Transport error carrying the failure kind.
    """
    kind: str = "other"
    if isinstance(exc, ssl.SSLError):
        kind = "tls"
    elif isinstance(exc, (socket.timeout, TimeoutError)):
        kind = "timeout"
    elif isinstance(exc, ConnectionRefusedError):
        kind = "refused"
    elif isinstance(exc, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
        kind = "reset"
    return ProtocolConnectionError(endpoint.host, endpoint.port, f"{kind}: {exc}", kind)


class Connection:
    """One handshaken stream connection to an endpoint."""

    _endpoint: Endpoint
    _sock: socket.socket | None

    def __init__(self, endpoint: Endpoint, sock: socket.socket) -> None:
        """Initialize a connection wrapper.

        :param endpoint: Connected endpoint.
        :param sock: Socket that already completed the handshake.
        """
        self._endpoint = endpoint
        self._sock = sock

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    def _socket(self) -> socket.socket:
        if self._sock is None:
            raise ProtocolConnectionError(self._endpoint.host, self._endpoint.port, "connection is closed", "closed")
        return self._sock

    def send(self, data: bytes) -> None:
        """Send one message.

        :param data: Encoded message.
        :raises ProtocolConnectionError: If the socket fails.
        """
        try:
            self._socket().sendall(data)
        except OSError as exc:
            raise _connection_error(self._endpoint, exc) from exc

    def receive(self, is_complete: Callable[[bytes], bool]) -> bytes:
        """Read until ``is_complete`` accepts the buffer or the peer closes the stream.

        :param is_complete: Framing predicate applied to the bytes received so far.
        :returns: Received bytes.
        :raises ProtocolConnectionError: If the socket fails or closes before sending anything.
        """
        buffer: bytes = b""
        while True:
            try:
                chunk: bytes = self._socket().recv(_RECEIVE_SIZE)
            except OSError as exc:
                raise _connection_error(self._endpoint, exc) from exc
            if len(chunk) == 0:
                if len(buffer) == 0:
                    raise ProtocolConnectionError(
                        self._endpoint.host,
                        self._endpoint.port,
                        "connection closed without a reply",
                        "closed",
                    )
                return buffer
            buffer += chunk
            if is_complete(buffer) is True:
                return buffer

    def close(self) -> None:
        if self._sock is None:
            return
        sock: socket.socket = self._sock
        self._sock = None
        try:
            sock.close()
        except OSError:
            logger.debug("Ignoring error while closing connection to %s", self._endpoint)

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()


def _read_exact(sock: socket.socket, count: int) -> bytes:
    data: bytes = b""
    while len(data) < count:
        chunk: bytes = sock.recv(count - len(data))
        if len(chunk) == 0:
            raise ConnectionResetError("peer closed the connection during the handshake")
        data += chunk
    return data


def handshake(sock: socket.socket, endpoint: Endpoint) -> str:
    """Perform the stream protocol handshake on a connected socket.

    :param sock: Connected socket.
    :param endpoint: Endpoint used for error reporting.
    :returns: Client host name as seen by the server.
    :raises ProtocolConnectionError: If the server does not acknowledge the stream protocol.
    """
    sock.sendall(HANDSHAKE)
    ack: int = _read_exact(sock, 1)[0]
    if ack == PROTOCOL_NOT_SUPPORTED:
        raise ProtocolConnectionError(endpoint.host, endpoint.port, "server does not support the stream protocol")
    if ack != PROTOCOL_ACK:
        raise ProtocolConnectionError(endpoint.host, endpoint.port, f"unexpected handshake reply {ack:#04x}")
    host_length: int = struct.unpack(">H", _read_exact(sock, 2))[0]
    client_host: str = _read_exact(sock, host_length).decode("utf-8", "replace")
    _read_exact(sock, 4)
    sock.sendall(encode_utf(client_host) + struct.pack(">i", 0))
    return client_host


def _tls_context() -> ssl.SSLContext:
    # assessment targets typically use self-signed certificates
    context: ssl.SSLContext = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def open_connection(endpoint: Endpoint, timeout: float) -> Connection:
    """Open a socket (TLS wrapped if requested) and perform the handshake.

    :param endpoint: Target endpoint.
    :param timeout: Connect and read timeout in seconds.
    :returns: Ready connection. The caller owns it and must close it.
    :raises ProtocolConnectionError: On refused, reset, timeout or TLS failures.
    """
    sock: socket.socket | None = None
    try:
        sock = socket.create_connection((endpoint.host, endpoint.port), timeout=timeout)
        if endpoint.ssl is True:
            sock = _tls_context().wrap_socket(sock, server_hostname=endpoint.host)
        handshake(sock, endpoint)
    except ProtocolConnectionError:
        if sock is not None:
            sock.close()
        raise
    except OSError as exc:
        if sock is not None:
            sock.close()
        raise _connection_error(endpoint, exc) from exc
    logger.debug("Connected to %s", endpoint)
    return Connection(endpoint, sock)


class Transport:
    """Hand out connections while bounding how many are open at once."""

    _timeout: float
    _slots: threading.BoundedSemaphore

    def __init__(self, timeout: float = 5.0, max_connections: int = 5) -> None:
        """Initialize a transport.

        :param timeout: Socket timeout in seconds.
        :param max_connections: Maximum number of simultaneously open connections.
        :raises ValueError: If ``max_connections`` is not positive.
        """
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self._timeout = timeout
        self._slots = threading.BoundedSemaphore(max_connections)

    @property
    def timeout(self) -> float:
        return self._timeout

    @contextlib.contextmanager
    def connect(self, endpoint: Endpoint) -> Iterator[Connection]:
        """Yield a fresh connection that is closed on every exit path.

        :param endpoint: Target endpoint.
        :returns: Context manager yielding a :class:`Connection`.
        :raises ProtocolConnectionError: If the connection cannot be established.
        """
        with self._slots:
            connection: Connection = open_connection(endpoint, self._timeout)
            try:
                yield connection
            finally:
                connection.close()
