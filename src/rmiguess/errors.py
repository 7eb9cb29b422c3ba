"""Custom error types for rmiguess."""


class RmiGuessError(Exception):
    """Base class for all rmiguess errors."""


class MalformedObjIdError(RmiGuessError):
    """Raised when an ObjID byte sequence has the wrong length."""


class MalformedSignatureError(RmiGuessError):
    """Raised when a method signature cannot be parsed."""


class MalformedResponseError(RmiGuessError):
    """Raised when a reply does not parse as a valid envelope."""


class ProtocolConnectionError(RmiGuessError, ConnectionError):
    """Raised for transport-level failures (refused, reset, timeout, TLS)."""

    host: str
    port: int
    kind: str

    def __init__(self, host: str, port: int, message: str, kind: str = "other") -> None:
        """Initialize a transport failure.

        :param host: Target host.
        :param port: Target port.
        :param message: Human readable failure description.
        :param kind: One of ``refused``, ``reset``, ``timeout``, ``tls``, ``closed`` or ``other``.
        """
        self.host = host
        self.port = port
        self.kind = kind
        super().__init__(f"{host}:{port}: {message}")

    @property
    def is_transient(self) -> bool:
        """Report whether retrying the same call once may succeed."""
        return self.kind in ("reset", "closed")


class InvalidArgumentPositionError(RmiGuessError):
    """Raised when an attack argument position is outside the call's arguments."""


class InvalidPayloadError(RmiGuessError):
    """Raised when spliced payload bytes are not a usable object stream."""


class GadgetGenerationError(RmiGuessError):
    """Raised when the external gadget generator fails."""


class ConfigurationError(RmiGuessError):
    """Raised for invalid command line or configuration input."""


class RemoteCallError(RmiGuessError):
    """Raised when a well-known service call ends with a classified remote exception."""

    outcome: object

    def __init__(self, outcome: object) -> None:
        """Initialize a remote call failure.

        :param outcome: Decoded ``CallOutcome`` of the failed call.
        """
        self.outcome = outcome
        super().__init__(str(outcome))
