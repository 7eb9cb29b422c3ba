"""Send encoded calls over a transport and decode the replies."""

import logging
from typing import Protocol

from rmiguess.envelope import MSG_PING
from rmiguess.envelope import MSG_PING_ACK
from rmiguess.envelope import CallOutcome
from rmiguess.envelope import RemoteCall
from rmiguess.envelope import decode_reply
from rmiguess.envelope import encode_call
from rmiguess.envelope import is_complete_reply
from rmiguess.transport import Endpoint
from rmiguess.transport import Transport

logger: logging.Logger = logging.getLogger(__name__)


class Invoker(Protocol):
    """Anything able to perform one remote call."""

    def invoke(self, endpoint: Endpoint, call: RemoteCall, return_descriptor: str | None = None) -> CallOutcome:
        ...


class RmiClient:
    """Issue calls, one connection per call."""

    _transport: Transport

    def __init__(self, timeout: float = 5.0, max_connections: int = 5, transport: Transport | None = None) -> None:
        """Initialize a client.

        :param timeout: Socket timeout in seconds.
        :param max_connections: Upper bound of concurrently open connections.
        :param transport: Optional preconfigured transport (overrides the other arguments).
        """
        if transport is None:
            transport = Transport(timeout, max_connections)
        self._transport = transport

    @property
    def transport(self) -> Transport:
        return self._transport

    def invoke(self, endpoint: Endpoint, call: RemoteCall, return_descriptor: str | None = None) -> CallOutcome:
        """Send one call and decode its reply.

        :param endpoint: Target endpoint.
        :param call: Call to send.
        :param return_descriptor: Expected return descriptor, ``None`` to discard the value.
        :returns: Decoded outcome; remote exceptions are classified, not raised.
        :raises ProtocolConnectionError: On transport failures.
        :raises MalformedResponseError: If the reply cannot be decoded.
        """
        message: bytes = encode_call(call)
        logger.debug(
            "Calling %s on %s (op=%d hash=%d, %d bytes)",
            call.objid,
            endpoint,
            call.selector.operation,
            call.selector.hash,
            len(message),
        )
        with self._transport.connect(endpoint) as connection:
            connection.send(message)
            reply: bytes = connection.receive(is_complete_reply)
        return decode_reply(reply, return_descriptor)

    def ping(self, endpoint: Endpoint) -> bool:
        """Send a transport level ping.

        :param endpoint: Target endpoint.
        :returns: ``True`` when the endpoint answered with a ping acknowledgement.
        :raises ProtocolConnectionError: On transport failures.
        """
        with self._transport.connect(endpoint) as connection:
            connection.send(bytes([MSG_PING]))
            reply: bytes = connection.receive(lambda data: len(data) >= 1)
        return reply[0] == MSG_PING_ACK
