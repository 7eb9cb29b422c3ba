"""Concurrent method guessing against bound remote objects."""

import enum
import logging
import threading
from concurrent.futures import Future
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import as_completed
from dataclasses import dataclass
from dataclasses import field

from rmiguess.candidates import CandidateRepository
from rmiguess.candidates import MethodCandidate
from rmiguess.classification import Classification
from rmiguess.client import Invoker
from rmiguess.dispatch import DispatchStyleResolver
from rmiguess.envelope import CallArgument
from rmiguess.envelope import CallOutcome
from rmiguess.envelope import DispatchStyle
from rmiguess.envelope import RemoteCall
from rmiguess.errors import MalformedResponseError
from rmiguess.errors import ProtocolConnectionError
from rmiguess.errors import RemoteCallError
from rmiguess.objid import ObjID
from rmiguess.serialization import TC_NULL
from rmiguess.services import RegistryClient
from rmiguess.stubs import BoundObject
from rmiguess.stubs import RemoteReference
from rmiguess.transport import Endpoint

logger: logging.Logger = logging.getLogger(__name__)

_EXISTS_SIGNALS: frozenset[Classification] = frozenset({
    Classification.UNMARSHAL_ERROR,
    Classification.CLASS_NOT_FOUND,
    Classification.FILTER_REJECTED,
    Classification.DESERIALIZATION_TRIGGERED,
})
_MISSING_SIGNALS: frozenset[Classification] = frozenset({
    Classification.METHOD_NOT_FOUND,
    Classification.LEGACY_DISPATCH,
})


class GuessOutcome(enum.Enum):
    EXISTS = "exists"
    DOES_NOT_EXIST = "does-not-exist"
    ACCESS_DENIED = "access-denied"
    ERROR = "error"

    @property
    def is_hit(self) -> bool:
        return self in (GuessOutcome.EXISTS, GuessOutcome.ACCESS_DENIED)


@dataclass(frozen=True)
class GuessTarget:
    """A remote object to guess on."""

    bound_name: str
    endpoint: Endpoint
    objid: ObjID


@dataclass(frozen=True)
class GuessResult:
    bound_name: str
    candidate: MethodCandidate
    outcome: GuessOutcome
    detail: str | None = None


@dataclass
class GuessReport:
    """Collected results of one guessing run.

    ``results`` are in completion order; use :meth:`by_name` for presentation.
    """

    target_names: list[str] = field(default_factory=list)
    results: list[GuessResult] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    unreachable: dict[str, str] = field(default_factory=dict)

    def by_name(self) -> dict[str, list[GuessResult]]:
        """Group results by bound name, in target order, each sorted by signature."""
        grouped: dict[str, list[GuessResult]] = {name: [] for name in self.target_names}
        for result in self.results:
            grouped.setdefault(result.bound_name, []).append(result)
        for items in grouped.values():
            items.sort(key=lambda item: item.candidate.signature_text)
        return grouped

    def hits(self) -> dict[str, list[GuessResult]]:
        """Return only existing and access-denied methods per bound name."""
        return {name: [item for item in items if item.outcome.is_hit is True] for name, items in self.by_name().items()}

    def errors(self) -> list[GuessResult]:
        return [item for item in self.results if item.outcome is GuessOutcome.ERROR]

    def outcome_map(self) -> dict[tuple[str, str], GuessOutcome]:
        return {(item.bound_name, item.candidate.signature_text): item.outcome for item in self.results}


def placeholder_arguments(candidate: MethodCandidate) -> list[CallArgument]:
    """Build arguments that make the server fail while reading the first parameter.

    The server only starts reading arguments after it found the method, so
    any unmarshalling failure proves the method exists without running it.
    Object parameters get a primitive (the server expects an object) and
    primitive parameters get a null object (the server expects block data).

    :param candidate: Candidate with at least one parameter.
    :returns: Argument list for the probe call.
    """
    first: str = candidate.parameter_descriptors[0]
    if len(first) == 1:
        return [CallArgument(first, None, bytes([TC_NULL]))]
    return [CallArgument("B", 0)]


def classify_guess(candidate: MethodCandidate, outcome: CallOutcome) -> GuessOutcome:
    """Map a call outcome to a guess outcome.

    :param candidate: Guessed candidate.
    :param outcome: Decoded reply of the probe call.
    :returns: Guess outcome.
    """
    if outcome.is_exception is False:
        return GuessOutcome.EXISTS
    if outcome.classification in _MISSING_SIGNALS:
        return GuessOutcome.DOES_NOT_EXIST
    if outcome.classification is Classification.ACCESS_DENIED:
        return GuessOutcome.ACCESS_DENIED
    if outcome.classification in _EXISTS_SIGNALS:
        return GuessOutcome.EXISTS
    if candidate.is_zero_arg is True:
        # the method ran and threw on its own
        return GuessOutcome.EXISTS
    return GuessOutcome.ERROR


class _TargetHealth:
    """Consecutive connection failures per bound name."""

    _limit: int
    _failures: dict[str, int]
    _reasons: dict[str, str]
    _lock: threading.Lock

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._failures = {}
        self._reasons = {}
        self._lock = threading.Lock()

    def is_dead(self, name: str) -> bool:
        with self._lock:
            return self._failures.get(name, 0) >= self._limit

    def record_failure(self, name: str, error: ProtocolConnectionError) -> None:
        with self._lock:
            self._failures[name] = self._failures.get(name, 0) + 1
            self._reasons[name] = str(error)
            if self._failures[name] == self._limit:
                logger.error("Giving up on %s after %d connection failures: %s", name, self._limit, error)

    def record_success(self, name: str) -> None:
        with self._lock:
            if self._failures.get(name, 0) < self._limit:
                self._failures[name] = 0

    def dead_targets(self) -> dict[str, str]:
        with self._lock:
            return {name: self._reasons[name] for name, count in self._failures.items() if count >= self._limit}


class GuessingEngine:
    """Issue speculative calls for every (bound name, candidate) pair."""

    _invoker: Invoker
    _resolver: DispatchStyleResolver
    _threads: int
    _max_target_failures: int
    _follow: bool
    _force_guessing: bool
    _lookups: dict[str, BoundObject]
    _lookup_lock: threading.Lock

    def __init__(
        self,
        invoker: Invoker,
        resolver: DispatchStyleResolver,
        threads: int = 5,
        max_target_failures: int = 3,
        follow: bool = False,
        force_guessing: bool = False,
    ) -> None:
        """Initialize an engine.

        :param invoker: Call invoker.
        :param resolver: Dispatch style resolver shared with other operations.
        :param threads: Worker pool size.
        :param max_target_failures: Consecutive connection failures after which a target is abandoned.
        :param follow: Connect to the host announced in lookup results instead of the registry host.
        :param force_guessing: Also guess on well-known remote classes.
        :raises ValueError: If ``threads`` or ``max_target_failures`` is not positive.
        """
        if threads < 1:
            raise ValueError("threads must be at least 1")
        if max_target_failures < 1:
            raise ValueError("max_target_failures must be at least 1")
        self._invoker = invoker
        self._resolver = resolver
        self._threads = threads
        self._max_target_failures = max_target_failures
        self._follow = follow
        self._force_guessing = force_guessing
        self._lookups = {}
        self._lookup_lock = threading.Lock()

    def lookup(self, registry: RegistryClient, name: str) -> BoundObject:
        """Resolve ``name`` through ``registry``, cached for the lifetime of the engine.

        :raises RemoteCallError: If the name is not bound.
        :raises ProtocolConnectionError: If the registry is unreachable.
        """
        with self._lookup_lock:
            cached: BoundObject | None = self._lookups.get(name)
        if cached is not None:
            return cached
        bound: BoundObject = registry.lookup(name)
        with self._lookup_lock:
            self._lookups.setdefault(name, bound)
            return self._lookups[name]

    def target_for(self, registry: RegistryClient, bound: BoundObject) -> GuessTarget | None:
        """Derive the endpoint and ObjID of a bound object.

        :returns: Target or ``None`` when the entry carries no usable reference.
        """
        reference: RemoteReference | None = bound.reference
        if reference is None:
            return None
        host: str = reference.host if self._follow is True else registry.endpoint.host
        endpoint: Endpoint = Endpoint(host, reference.port, reference.uses_tls)
        return GuessTarget(bound.name, endpoint, reference.objid)

    def resolve_targets(self, registry: RegistryClient, names: list[str], report: GuessReport) -> list[GuessTarget]:
        """Look up ``names`` and turn them into targets, noting skipped names in ``report``."""
        targets: list[GuessTarget] = []
        for name in names:
            try:
                bound: BoundObject = self.lookup(registry, name)
            except RemoteCallError as exc:
                report.skipped[name] = f"lookup failed: {exc}"
                continue
            except MalformedResponseError as exc:
                report.skipped[name] = f"unexpected lookup result: {exc}"
                continue
            if bound.is_known is True and self._force_guessing is False:
                report.skipped[name] = f"well-known class {', '.join(bound.class_names)}"
                continue
            target: GuessTarget | None = self.target_for(registry, bound)
            if target is None:
                report.skipped[name] = "no remote reference"
                continue
            targets.append(target)
        return targets

    def guess_names(self, registry: RegistryClient, names: list[str], repository: CandidateRepository) -> GuessReport:
        """Look up bound names and guess on each of them.

        :param registry: Registry to resolve names with.
        :param names: Bound names.
        :param repository: Candidates to try.
        :returns: Report grouped by bound name.
        """
        report: GuessReport = GuessReport(target_names=list(names))
        targets: list[GuessTarget] = self.resolve_targets(registry, names, report)
        return self.guess(targets, repository, report)

    def guess(
        self,
        targets: list[GuessTarget],
        repository: CandidateRepository,
        report: GuessReport | None = None,
    ) -> GuessReport:
        """Guess every candidate on every target.

        Dispatch styles are resolved before the pool starts. A target that
        keeps failing at the connection level is abandoned; its queued probes
        return without network traffic while in-flight ones drain.

        :param targets: Resolved targets.
        :param repository: Candidates to try.
        :param report: Report to extend.
        :returns: Report with one result per probed pair.
        """
        if report is None:
            report = GuessReport(target_names=[item.bound_name for item in targets])
        styles: dict[GuessTarget, DispatchStyle] = {}
        for target in targets:
            try:
                styles[target] = self._resolver.resolve(target.endpoint, target.objid)
            except ProtocolConnectionError as exc:
                report.unreachable[target.bound_name] = str(exc)
            except MalformedResponseError as exc:
                report.skipped[target.bound_name] = f"dispatch probe failed: {exc}"

        health: _TargetHealth = _TargetHealth(self._max_target_failures)
        candidates: list[MethodCandidate] = list(repository)
        logger.info("Guessing %d candidates on %d targets with %d threads", len(candidates), len(styles), self._threads)
        with ThreadPoolExecutor(max_workers=self._threads) as executor:
            futures: list[Future[GuessResult | None]] = [
                executor.submit(self._probe, target, style, candidate, health)
                for target, style in styles.items()
                for candidate in candidates
            ]
            for future in as_completed(futures):
                result: GuessResult | None = future.result()
                if result is None:
                    continue
                report.results.append(result)
                if result.outcome.is_hit is True:
                    logger.info("%s: %s (%s)", result.bound_name, result.candidate, result.outcome.value)
                elif result.outcome is GuessOutcome.ERROR:
                    logger.warning("%s: %s failed: %s", result.bound_name, result.candidate, result.detail)
        report.unreachable.update(health.dead_targets())
        return report

    def _invoke_with_retry(self, target: GuessTarget, call: RemoteCall, health: _TargetHealth) -> CallOutcome:
        try:
            return self._invoker.invoke(target.endpoint, call)
        except ProtocolConnectionError as exc:
            if exc.is_transient is False or health.is_dead(target.bound_name) is True:
                raise
            logger.debug("Retrying %s after %s", target.bound_name, exc)
        return self._invoker.invoke(target.endpoint, call)

    def _probe(
        self,
        target: GuessTarget,
        style: DispatchStyle,
        candidate: MethodCandidate,
        health: _TargetHealth,
    ) -> GuessResult | None:
        if health.is_dead(target.bound_name) is True:
            return None
        arguments: list[CallArgument] = []
        if candidate.is_zero_arg is False:
            arguments = placeholder_arguments(candidate)
        call: RemoteCall = RemoteCall.for_method(target.objid, candidate, style, arguments)
        try:
            outcome: CallOutcome = self._invoke_with_retry(target, call, health)
        except ProtocolConnectionError as exc:
            health.record_failure(target.bound_name, exc)
            return GuessResult(target.bound_name, candidate, GuessOutcome.ERROR, str(exc))
        except MalformedResponseError as exc:
            health.record_success(target.bound_name)
            return GuessResult(target.bound_name, candidate, GuessOutcome.ERROR, f"malformed reply: {exc}")
        health.record_success(target.bound_name)
        detail: str | None = None if outcome.exception is None else str(outcome.exception)
        return GuessResult(target.bound_name, candidate, classify_guess(candidate, outcome), detail)
