"""In-process invokers for tests that do not need sockets."""

import threading
import time
from collections.abc import Callable

from rmiguess.classification import Classification
from rmiguess.classification import ExceptionRecord
from rmiguess.envelope import CallOutcome
from rmiguess.envelope import RemoteCall
from rmiguess.objid import UID
from rmiguess.transport import Endpoint

Responder = Callable[[Endpoint, RemoteCall], CallOutcome]


def returned(value: object = None) -> CallOutcome:
    return CallOutcome(UID(), value)


def raised(classification: Classification, type_name: str = "java.lang.Exception", message: str | None = None) -> CallOutcome:
    """Build an exceptional outcome with a given classification.

    :param classification: Classification to report.
    :param type_name: Exception type name.
    :param message: Exception message.
    :returns: Call outcome.
    """
    return CallOutcome(UID(), None, ExceptionRecord(type_name, message), classification)


class RecordingInvoker:
    """Answer calls through ``responder`` and remember every call made."""

    calls: list[tuple[Endpoint, RemoteCall]]
    _responder: Responder
    _delay: float
    _lock: threading.Lock

    def __init__(self, responder: Responder, delay: float = 0.0) -> None:
        """Initialize the invoker.

        :param responder: Produces the outcome (or raises) for each call.
        :param delay: Seconds to sleep per call, to widen race windows.
        """
        self.calls = []
        self._responder = responder
        self._delay = delay
        self._lock = threading.Lock()

    def invoke(self, endpoint: Endpoint, call: RemoteCall, return_descriptor: str | None = None) -> CallOutcome:
        with self._lock:
            self.calls.append((endpoint, call))
        if self._delay > 0:
            time.sleep(self._delay)
        return self._responder(endpoint, call)
