"""Registry enumeration and misconfiguration checks."""

import logging
import struct
from dataclasses import dataclass
from dataclasses import field

from rmiguess.classification import PROBE_CLASS_NAME
from rmiguess.classification import Classification
from rmiguess.client import Invoker
from rmiguess.context import ScanContext
from rmiguess.context import filter_bound_names
from rmiguess.envelope import CallArgument
from rmiguess.envelope import CallOutcome
from rmiguess.envelope import RemoteCall
from rmiguess.errors import MalformedResponseError
from rmiguess.errors import RemoteCallError
from rmiguess.serialization import SC_SERIALIZABLE
from rmiguess.serialization import SC_WRITE_METHOD
from rmiguess.serialization import ClassDesc
from rmiguess.serialization import FieldDesc
from rmiguess.serialization import NewObject
from rmiguess.services import ACTIVATOR_OPERATIONS
from rmiguess.services import DGC_OPERATIONS
from rmiguess.services import REGISTRY_OPERATIONS
from rmiguess.services import RegistryClient
from rmiguess.services import WellKnownOperation
from rmiguess.stubs import BoundObject
from rmiguess.transport import Endpoint

logger: logging.Logger = logging.getLogger(__name__)

INVALID_CODEBASE: str = "rmiguess-invalid-url"

_HASHMAP_DESC: ClassDesc = ClassDesc(
    "java.util.HashMap",
    362498820763181265,
    SC_SERIALIZABLE | SC_WRITE_METHOD,
    (FieldDesc("F", "loadFactor"), FieldDesc("I", "threshold")),
)


def empty_hashmap() -> NewObject:
    """An empty ``HashMap``: outside every built-in allow list, harmless when deserialized."""
    return NewObject(
        _HASHMAP_DESC,
        {"loadFactor": 0.75, "threshold": 12},
        {"java.util.HashMap": [struct.pack(">ii", 16, 0)]},
    )


def codebase_probe() -> NewObject:
    """Instance of a class nobody has, annotated with an unparsable codebase."""
    return NewObject(ClassDesc(PROBE_CLASS_NAME, 2, SC_SERIALIZABLE, annotation=INVALID_CODEBASE))


@dataclass(frozen=True)
class CheckResult:
    """Result of one misconfiguration check; ``vulnerable`` is ``None`` when undecided."""

    name: str
    vulnerable: bool | None
    verdict: str
    outcome: CallOutcome | None = None


@dataclass
class EnumerationReport:
    endpoint: Endpoint
    bound_names: list[str] = field(default_factory=list)
    bound_objects: list[BoundObject] = field(default_factory=list)
    lookup_errors: dict[str, str] = field(default_factory=dict)
    checks: list[CheckResult] = field(default_factory=list)


def interpret_filter_check(name: str, outcome: CallOutcome) -> CheckResult:
    """Interpret the reply to a call carrying an empty ``HashMap``."""
    if outcome.classification is Classification.DESERIALIZATION_TRIGGERED:
        return CheckResult(name, True, "arbitrary objects are deserialized (no deserialization filter)", outcome)
    if outcome.classification is Classification.FILTER_REJECTED:
        return CheckResult(name, False, "a deserialization filter rejected the probe object", outcome)
    if outcome.classification is Classification.UNMARSHAL_ERROR:
        return CheckResult(name, False, "argument is read as a plain string, objects are not accepted", outcome)
    if outcome.classification is Classification.ACCESS_DENIED:
        return CheckResult(name, None, "call was rejected before the argument was read", outcome)
    if outcome.classification is Classification.NO_SUCH_OBJECT:
        return CheckResult(name, None, "object is not exported on this endpoint", outcome)
    return CheckResult(name, None, f"unexpected reply: {outcome}", outcome)


def interpret_codebase_check(outcome: CallOutcome) -> CheckResult:
    """Interpret the reply to a call carrying an object annotated with an invalid codebase."""
    name: str = "codebase"
    if outcome.classification is Classification.CODEBASE_ENABLED:
        return CheckResult(name, True, "server tried to load classes from the supplied codebase", outcome)
    if outcome.classification in (Classification.DESERIALIZATION_TRIGGERED, Classification.CLASS_NOT_FOUND):
        return CheckResult(name, False, "remote class loading is disabled", outcome)
    if outcome.classification is Classification.FILTER_REJECTED:
        return CheckResult(name, False, "a deserialization filter rejected the probe class", outcome)
    return CheckResult(name, None, f"unexpected reply: {outcome}", outcome)


def interpret_activator_check(outcome: CallOutcome) -> CheckResult:
    name: str = "activator"
    if outcome.classification is Classification.NO_SUCH_OBJECT:
        return CheckResult(name, False, "activator is not available", outcome)
    return CheckResult(name, True, "activator is available", outcome)


class Enumerator:
    """Collect bound names, their classes and the result of passive misconfiguration checks."""

    _invoker: Invoker
    _endpoint: Endpoint
    _context: ScanContext
    _registry: RegistryClient

    def __init__(self, invoker: Invoker, endpoint: Endpoint, context: ScanContext) -> None:
        self._invoker = invoker
        self._endpoint = endpoint
        self._context = context
        self._registry = RegistryClient(invoker, endpoint)

    @property
    def registry(self) -> RegistryClient:
        return self._registry

    def _send(self, operation: WellKnownOperation, slot: int, value: NewObject) -> CallOutcome:
        arguments: list[CallArgument] = []
        for index, descriptor in enumerate(operation.parameter_descriptors):
            if index == slot:
                arguments.append(CallArgument("Ljava/lang/Object;", value))
            elif len(descriptor) == 1:
                arguments.append(CallArgument(descriptor, False if descriptor == "Z" else 0))
            else:
                arguments.append(CallArgument(descriptor, None))
        call: RemoteCall = operation.call(arguments)
        return self._invoker.invoke(self._endpoint, call)

    def list_bound_objects(self, report: EnumerationReport) -> None:
        """Fill ``report`` with bound names and lookup results.

        :raises RemoteCallError: If ``list()`` itself fails.
        """
        names: list[str] = filter_bound_names(self._registry.list(), self._context)
        report.bound_names.extend(names)
        for name in names:
            try:
                report.bound_objects.append(self._registry.lookup(name))
            except (RemoteCallError, MalformedResponseError) as exc:
                report.lookup_errors[name] = str(exc)

    def check_registry_filter(self) -> CheckResult:
        return interpret_filter_check("registry-filter", self._send(REGISTRY_OPERATIONS["lookup"], 0, empty_hashmap()))

    def check_dgc_filter(self) -> CheckResult:
        return interpret_filter_check("dgc-filter", self._send(DGC_OPERATIONS["clean"], 0, empty_hashmap()))

    def check_codebase(self) -> CheckResult:
        return interpret_codebase_check(self._send(REGISTRY_OPERATIONS["lookup"], 0, codebase_probe()))

    def check_activator(self) -> CheckResult:
        outcome: CallOutcome = self._send(ACTIVATOR_OPERATIONS["activate"], 0, empty_hashmap())
        return interpret_activator_check(outcome)

    def run(self) -> EnumerationReport:
        """Run the listing and every check.

        :returns: Enumeration report.
        :raises ProtocolConnectionError: If the endpoint becomes unreachable.
        """
        report: EnumerationReport = EnumerationReport(self._endpoint)
        try:
            self.list_bound_objects(report)
        except RemoteCallError as exc:
            logger.warning("Listing bound names failed: %s", exc)
        for check in (self.check_registry_filter, self.check_dgc_filter, self.check_codebase, self.check_activator):
            result: CheckResult = check()
            report.checks.append(result)
            if self._context.stack_trace is True and result.outcome is not None and result.outcome.exception is not None:
                logger.info("%s cause chain: %s", result.name, " <- ".join(str(item) for item in result.outcome.exception.chain()))
        return report
