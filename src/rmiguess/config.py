"""Scan configuration: bundled defaults, optional user file, command line overrides."""

import configparser
import dataclasses
import importlib.resources
import pathlib
from dataclasses import dataclass

from rmiguess.dispatch import LegacyMode
from rmiguess.errors import ConfigurationError

REG_METHODS: tuple[str, ...] = ("lookup", "bind", "unbind", "rebind")
DGC_METHODS: tuple[str, ...] = ("clean", "dirty")
_SECTION: str = "rmiguess"


def _parse_properties(text: str, source: str) -> dict[str, str]:
    parser: configparser.ConfigParser = configparser.ConfigParser(
        delimiters=("=",),
        comment_prefixes=("#", "!"),
        interpolation=None,
    )
    parser.optionxform = str
    try:
        parser.read_string(f"[{_SECTION}]\n{text}", source=source)
    except configparser.Error as exc:
        raise ConfigurationError(f"Invalid configuration file {source}: {exc}") from exc
    return dict(parser[_SECTION])


def load_properties(path: str | pathlib.Path | None = None) -> dict[str, str]:
    """Load the bundled defaults, overlaid with ``path`` when given.

    :param path: Optional user configuration file.
    :returns: Merged ``key -> value`` mapping.
    :raises ConfigurationError: If the user file cannot be read or parsed.
    """
    bundled: str = importlib.resources.files("rmiguess").joinpath("resources/config.properties").read_text("utf-8")
    properties: dict[str, str] = _parse_properties(bundled, "config.properties")
    if path is None:
        return properties
    file_path: pathlib.Path = pathlib.Path(path)
    try:
        text: str = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Unable to read configuration file {file_path}: {exc}") from exc
    properties.update(_parse_properties(text, str(file_path)))
    return properties


def bundled_wordlist_folder() -> pathlib.Path:
    """Folder of the wordlists shipped with the package, used when none is configured."""
    return pathlib.Path(str(importlib.resources.files("rmiguess").joinpath("resources/wordlists")))


def _optional(value: str | None) -> str | None:
    if value is None or len(value.strip()) == 0:
        return None
    return value.strip()


@dataclass(frozen=True)
class ScanConfig:
    """Validated settings of one run."""

    threads: int = 5
    timeout: float = 5.0
    reg_method: str = "lookup"
    dgc_method: str = "clean"
    ssl: bool = False
    follow: bool = False
    legacy_mode: LegacyMode = LegacyMode.AUTO
    argument_position: int | None = None
    signature: str | None = None
    bound_name: str | None = None
    objid: int | None = None
    wordlist_file: str | None = None
    wordlist_folder: str | None = None
    generator_path: str | None = None
    java: str = "java"
    zero_arg: bool = False
    force_guessing: bool = False
    localhost_bypass: bool = False
    update: bool = False

    def __post_init__(self) -> None:
        if self.threads < 1:
            raise ConfigurationError(f"threads must be at least 1, got {self.threads}")
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")
        if self.reg_method not in REG_METHODS:
            raise ConfigurationError(f"Unsupported registry method {self.reg_method!r} (use {'|'.join(REG_METHODS)})")
        if self.dgc_method not in DGC_METHODS:
            raise ConfigurationError(f"Unsupported DGC method {self.dgc_method!r} (use {'|'.join(DGC_METHODS)})")
        if self.argument_position is not None and self.argument_position < 0:
            raise ConfigurationError("argument position must not be negative")

    @classmethod
    def from_properties(cls, properties: dict[str, str], **overrides: object) -> "ScanConfig":
        """Build a configuration from properties, then apply ``overrides`` that are not ``None``.

        :param properties: Loaded properties.
        :param overrides: Field values taking precedence (``None`` means "not given").
        :returns: Validated configuration.
        :raises ConfigurationError: If a value is invalid.
        """
        try:
            values: dict[str, object] = {
                "threads": int(properties.get("threads", "5")),
                "timeout": float(properties.get("timeout", "5.0")),
                "reg_method": properties.get("reg-method", "lookup"),
                "dgc_method": properties.get("dgc-method", "clean"),
                "wordlist_file": _optional(properties.get("wordlist-file")),
                "wordlist_folder": _optional(properties.get("wordlist-folder")),
                "generator_path": _optional(properties.get("ysoserial-path")),
                "java": properties.get("java", "java"),
            }
        except ValueError as exc:
            raise ConfigurationError(f"Invalid numeric configuration value: {exc}") from exc
        field_names: set[str] = {item.name for item in dataclasses.fields(cls)}
        for name, value in overrides.items():
            if name not in field_names:
                raise ConfigurationError(f"Unknown configuration field {name!r}")
            if value is not None:
                values[name] = value
        return cls(**values)
