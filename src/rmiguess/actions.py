"""Actions and the arguments each of them needs."""

import enum
from collections.abc import Mapping
from dataclasses import dataclass

from rmiguess.errors import ConfigurationError


class Action(enum.Enum):
    ENUM = "enum"
    GUESS = "guess"
    BIND = "bind"
    REBIND = "rebind"
    UNBIND = "unbind"
    DGC = "dgc"
    REG = "reg"
    ACT = "act"
    METHOD = "method"
    CODEBASE = "codebase"
    LISTEN = "listen"


@dataclass(frozen=True)
class ActionRequirements:
    """Positional arguments after ``host port action`` and required option groups.

    Each entry of ``required_options`` lists alternatives; one of them must be set.
    """

    arguments: tuple[str, ...] = ()
    required_options: tuple[tuple[str, ...], ...] = ()
    description: str = ""

    @property
    def min_positionals(self) -> int:
        return len(self.arguments)


ACTION_REQUIREMENTS: dict[Action, ActionRequirements] = {
    Action.ENUM: ActionRequirements((), (), "enumerate bound names, classes and common misconfigurations"),
    Action.GUESS: ActionRequirements((), (), "guess methods on bound names"),
    Action.BIND: ActionRequirements(("bound-name", "listener"), (), "bind a stub pointing to listener (host:port)"),
    Action.REBIND: ActionRequirements(("bound-name", "listener"), (), "rebind a name to a stub pointing to listener"),
    Action.UNBIND: ActionRequirements(("bound-name",), (), "remove a bound name from the registry"),
    Action.DGC: ActionRequirements(("gadget", "command"), (), "deserialization attack on the DGC"),
    Action.REG: ActionRequirements(("gadget", "command"), (), "deserialization attack on the registry"),
    Action.ACT: ActionRequirements(("gadget", "command"), (), "deserialization attack on the activator"),
    Action.METHOD: ActionRequirements(
        ("gadget", "command"),
        (("signature",), ("bound_name", "objid")),
        "deserialization attack on a remote method",
    ),
    Action.CODEBASE: ActionRequirements(
        ("classname", "url"),
        (("signature",),),
        "codebase attack on a method or on dgc|reg|act",
    ),
    Action.LISTEN: ActionRequirements(("gadget", "command"), (), "serve a gadget from a JRMP listener on host:port"),
}

WELL_KNOWN_SIGNATURES: frozenset[str] = frozenset({"dgc", "reg", "act"})


def validate_action(action: Action, positionals: list[str], options: Mapping[str, object]) -> None:
    """Check that ``action`` got everything it needs.

    :param action: Requested action.
    :param positionals: Positional arguments after host, port and action.
    :param options: Option values by name, ``None`` meaning not given.
    :raises ConfigurationError: If arguments or options are missing.
    """
    requirements: ActionRequirements = ACTION_REQUIREMENTS[action]
    if len(positionals) < requirements.min_positionals:
        expected: str = " ".join(f"<{item}>" for item in requirements.arguments)
        raise ConfigurationError(f"{action.value} requires the arguments {expected}")

    for alternatives in requirements.required_options:
        if any(options.get(name) is not None for name in alternatives) is False:
            names: str = " or ".join("--" + item.replace("_", "-") for item in alternatives)
            raise ConfigurationError(f"The {names} option is required for the {action.value} action")

    if action is Action.CODEBASE and options.get("signature") not in WELL_KNOWN_SIGNATURES:
        if options.get("bound_name") is None and options.get("objid") is None:
            raise ConfigurationError("Codebase attacks on a method require --bound-name or --objid")
