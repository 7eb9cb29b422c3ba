"""Per-endpoint detection of the call encoding a remote object understands."""

import enum
import logging
import threading

from rmiguess.classification import Classification
from rmiguess.client import Invoker
from rmiguess.envelope import CallOutcome
from rmiguess.envelope import DispatchStyle
from rmiguess.envelope import RemoteCall
from rmiguess.envelope import Selector
from rmiguess.objid import REGISTRY_ID
from rmiguess.objid import ObjID
from rmiguess.transport import Endpoint

logger: logging.Logger = logging.getLogger(__name__)

# No real interface hashes to this value, so a skeleton always rejects the probe
# before reading any arguments.
PROBE_INTERFACE_HASH: int = 0x726D6967756573
_LEGACY_SIGNALS: frozenset[Classification] = frozenset({
    Classification.LEGACY_DISPATCH,
    Classification.METHOD_NOT_FOUND,
})


class LegacyMode(enum.Enum):
    """User override of dispatch style detection."""

    AUTO = "auto"
    FORCE_LEGACY = "force-legacy"
    NEVER_LEGACY = "never-legacy"


def style_from_probe(outcome: CallOutcome) -> DispatchStyle:
    """Interpret the reply to an ordinal-addressed probe call.

    A remote object without a skeleton refuses ordinal addressing outright;
    one with a skeleton gets as far as checking the interface hash.

    :param outcome: Reply to the probe.
    :returns: Detected dispatch style.
    """
    if outcome.is_exception is False:
        return DispatchStyle.LEGACY
    if outcome.classification is Classification.DISPATCH_MISMATCH:
        return DispatchStyle.MODERN
    if outcome.classification in _LEGACY_SIGNALS:
        return DispatchStyle.LEGACY
    return DispatchStyle.MODERN


class DispatchStyleResolver:
    """Resolve and cache the dispatch style of each remote object.

    Cache entries are keyed by endpoint and ObjID because skeletons exist per
    exported object. The first resolution of a key holds the lock while
    probing, so concurrent callers never probe the same key twice.
    """

    _invoker: Invoker
    _legacy_mode: LegacyMode
    _styles: dict[tuple[Endpoint, ObjID], DispatchStyle]
    _lock: threading.Lock
    _probe_count: int

    def __init__(self, invoker: Invoker, legacy_mode: LegacyMode = LegacyMode.AUTO) -> None:
        """Initialize a resolver.

        :param invoker: Call invoker used for probing.
        :param legacy_mode: Detection override.
        """
        self._invoker = invoker
        self._legacy_mode = legacy_mode
        self._styles = {}
        self._lock = threading.Lock()
        self._probe_count = 0

    @property
    def legacy_mode(self) -> LegacyMode:
        return self._legacy_mode

    @property
    def probe_count(self) -> int:
        """Number of probe calls sent so far."""
        with self._lock:
            return self._probe_count

    def cached(self, endpoint: Endpoint, objid: ObjID = REGISTRY_ID) -> DispatchStyle:
        """Return the cached style or ``UNKNOWN`` without touching the network."""
        with self._lock:
            return self._styles.get((endpoint, objid), DispatchStyle.UNKNOWN)

    def resolve(self, endpoint: Endpoint, objid: ObjID = REGISTRY_ID) -> DispatchStyle:
        """Return the dispatch style of ``objid`` on ``endpoint``, probing on first use.

        :param endpoint: Endpoint exporting the object.
        :param objid: Object to resolve the style for.
        :returns: ``LEGACY`` or ``MODERN``.
        :raises ProtocolConnectionError: If the probe cannot be delivered. Nothing is cached then.
        :raises MalformedResponseError: If the probe reply cannot be decoded.
        """
        if self._legacy_mode is LegacyMode.FORCE_LEGACY:
            return DispatchStyle.LEGACY
        if self._legacy_mode is LegacyMode.NEVER_LEGACY:
            return DispatchStyle.MODERN

        key: tuple[Endpoint, ObjID] = (endpoint, objid)
        with self._lock:
            known: DispatchStyle | None = self._styles.get(key)
            if known is not None:
                return known
            probe: RemoteCall = RemoteCall(objid, DispatchStyle.LEGACY, Selector.legacy(0, PROBE_INTERFACE_HASH))
            self._probe_count += 1
            outcome: CallOutcome = self._invoker.invoke(endpoint, probe)
            style: DispatchStyle = style_from_probe(outcome)
            self._styles[key] = style
        logger.info("Object %s on %s uses %s dispatch", objid, endpoint, style.value)
        return style
