"""Wordlist backed repository of method candidates."""

import logging
import pathlib
from collections.abc import Iterable
from collections.abc import Iterator
from dataclasses import dataclass

from rmiguess.envelope import DispatchStyle
from rmiguess.envelope import Selector
from rmiguess.errors import ConfigurationError
from rmiguess.errors import MalformedSignatureError
from rmiguess.hashing import REMOTE_EXCEPTION
from rmiguess.hashing import MethodSignature
from rmiguess.hashing import compute_interface_hash
from rmiguess.hashing import compute_legacy_hash
from rmiguess.hashing import compute_method_hash

logger: logging.Logger = logging.getLogger(__name__)

WORDLIST_SUFFIX: str = ".txt"
_COMMENT_PREFIX: str = "#"
_FIELD_SEPARATOR: str = ";"


@dataclass(frozen=True)
class MethodCandidate:
    """One guessable method with both of its selectors precomputed."""

    signature_text: str
    signature: MethodSignature
    method_hash: int
    legacy_hash: int
    ordinal: int = 0

    @classmethod
    def from_signature(cls, text: str) -> "MethodCandidate":
        """Parse ``text`` and compute its hashes as a one-method legacy interface.

        :param text: Signature text.
        :returns: Candidate.
        :raises MalformedSignatureError: If the signature does not parse.
        """
        signature: MethodSignature = MethodSignature.parse(text)
        return cls(
            signature.canonical,
            signature,
            compute_method_hash(signature.name_and_descriptor),
            compute_legacy_hash(signature),
        )

    @property
    def name(self) -> str:
        return self.signature.name

    @property
    def parameter_descriptors(self) -> tuple[str, ...]:
        return self.signature.parameter_descriptors

    @property
    def return_descriptor(self) -> str:
        return self.signature.return_descriptor

    @property
    def is_zero_arg(self) -> bool:
        return len(self.signature.parameter_types) == 0

    def selector_for(self, style: DispatchStyle) -> Selector:
        """Return the selector matching ``style``.

        :param style: Resolved dispatch style.
        :returns: Ordinal/interface hash pair for legacy, method hash for modern.
        :raises ValueError: If ``style`` is unknown.
        """
        if style is DispatchStyle.LEGACY:
            return Selector.legacy(self.ordinal, self.legacy_hash)
        if style is DispatchStyle.MODERN:
            return Selector.modern(self.method_hash)
        raise ValueError("Dispatch style must be resolved before building a selector")

    def wordlist_line(self) -> str:
        """Render the annotated wordlist form ``signature; method hash; legacy hash``."""
        return f"{self.signature_text}; {self.method_hash}; {self.legacy_hash}"

    def __str__(self) -> str:
        return self.signature_text


def parse_wordlist_line(line: str) -> MethodCandidate | None:
    """Parse one wordlist line.

    Plain lines hold a signature. Annotated lines carry precomputed hashes
    after the signature, separated by ``;``.

    :param line: Raw line.
    :returns: Candidate or ``None`` for blank and comment lines.
    :raises MalformedSignatureError: If the signature or the annotations are invalid.
    """
    stripped: str = line.strip()
    if len(stripped) == 0 or stripped.startswith(_COMMENT_PREFIX) is True:
        return None

    parts: list[str] = [item.strip() for item in stripped.split(_FIELD_SEPARATOR)]
    signature: MethodSignature = MethodSignature.parse(parts[0])
    if len(parts) == 1:
        return MethodCandidate.from_signature(parts[0])
    if len(parts) != 3:
        raise MalformedSignatureError(f"Annotated wordlist lines need two hashes: {stripped!r}")
    try:
        method_hash: int = int(parts[1])
        legacy_hash: int = int(parts[2])
    except ValueError as exc:
        raise MalformedSignatureError(f"Invalid hash annotation in {stripped!r}") from exc
    return MethodCandidate(signature.canonical, signature, method_hash, legacy_hash)


class CandidateRepository:
    """Immutable, deduplicated set of candidates keyed by canonical signature."""

    _candidates: dict[str, MethodCandidate]
    _skipped_zero_arg: int

    def __init__(self, candidates: Iterable[MethodCandidate] = (), include_zero_arg: bool = False) -> None:
        """Initialize a repository.

        :param candidates: Candidates in load order; later duplicates are dropped.
        :param include_zero_arg: Keep candidates without parameters.
        """
        self._candidates = {}
        self._skipped_zero_arg = 0
        for candidate in candidates:
            if candidate.is_zero_arg is True and include_zero_arg is False:
                self._skipped_zero_arg += 1
                continue
            if candidate.signature_text in self._candidates:
                continue
            self._candidates[candidate.signature_text] = candidate

    @classmethod
    def from_lines(
        cls,
        lines: Iterable[str],
        include_zero_arg: bool = False,
        source: str = "<wordlist>",
    ) -> "CandidateRepository":
        """Build a repository from wordlist lines, skipping malformed ones with a warning.

        :param lines: Wordlist lines.
        :param include_zero_arg: Keep candidates without parameters.
        :param source: Name used in log messages.
        :returns: Repository.
        """
        return cls(_parse_lines(lines, source), include_zero_arg)

    @classmethod
    def from_file(cls, path: str | pathlib.Path, include_zero_arg: bool = False) -> "CandidateRepository":
        """Load one wordlist file.

        :raises ConfigurationError: If the file cannot be read.
        """
        file_path: pathlib.Path = pathlib.Path(path)
        return cls(_parse_lines(_read_lines(file_path), str(file_path)), include_zero_arg)

    @classmethod
    def from_folder(cls, folder: str | pathlib.Path, include_zero_arg: bool = False) -> "CandidateRepository":
        """Load every ``*.txt`` wordlist in ``folder`` (sorted by file name).

        :raises ConfigurationError: If the folder does not exist or a file cannot be read.
        """
        folder_path: pathlib.Path = pathlib.Path(folder)
        if folder_path.is_dir() is False:
            raise ConfigurationError(f"Wordlist folder {folder_path} does not exist")
        candidates: list[MethodCandidate] = []
        for file_path in sorted(folder_path.glob(f"*{WORDLIST_SUFFIX}")):
            candidates.extend(_parse_lines(_read_lines(file_path), str(file_path)))
        return cls(candidates, include_zero_arg)

    @property
    def skipped_zero_arg(self) -> int:
        """Number of zero-argument candidates left out."""
        return self._skipped_zero_arg

    def get(self, signature_text: str) -> MethodCandidate | None:
        return self._candidates.get(signature_text)

    def __contains__(self, signature_text: object) -> bool:
        return signature_text in self._candidates

    def __iter__(self) -> Iterator[MethodCandidate]:
        return iter(self._candidates.values())

    def __len__(self) -> int:
        return len(self._candidates)

    def wordlist_lines(self) -> list[str]:
        return [candidate.wordlist_line() for candidate in self._candidates.values()]


def _read_lines(path: pathlib.Path) -> list[str]:
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise ConfigurationError(f"Unable to read wordlist {path}: {exc}") from exc


def _parse_lines(lines: Iterable[str], source: str) -> list[MethodCandidate]:
    candidates: list[MethodCandidate] = []
    for number, line in enumerate(lines, start=1):
        try:
            candidate: MethodCandidate | None = parse_wordlist_line(line)
        except MalformedSignatureError as exc:
            logger.warning("%s:%d: skipping line: %s", source, number, exc)
            continue
        if candidate is not None:
            candidates.append(candidate)
    logger.debug("Loaded %d candidates from %s", len(candidates), source)
    return candidates


def write_wordlist(path: str | pathlib.Path, repository: CandidateRepository) -> None:
    """Rewrite a wordlist with hash annotations so later loads skip hashing.

    :param path: Destination file.
    :param repository: Candidates to write.
    :raises ConfigurationError: If the file cannot be written.
    """
    file_path: pathlib.Path = pathlib.Path(path)
    content: str = "\n".join(repository.wordlist_lines()) + "\n"
    try:
        file_path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Unable to write wordlist {file_path}: {exc}") from exc


def declare_interface(signatures: Iterable[str]) -> list[MethodCandidate]:
    """Describe a known legacy remote interface.

    Ordinals are positions in the table sorted by name and descriptor; every
    method shares the interface hash of the whole table.

    :param signatures: Signature texts of all interface methods.
    :returns: Candidates in ordinal order.
    :raises MalformedSignatureError: If a signature does not parse.
    """
    parsed: list[MethodSignature] = [MethodSignature.parse(text) for text in signatures]
    unique: dict[str, MethodSignature] = {item.name_and_descriptor: item for item in parsed}
    ordered: list[MethodSignature] = [unique[key] for key in sorted(unique)]
    interface_hash: int = compute_interface_hash(
        (item.name, item.descriptor, (REMOTE_EXCEPTION,)) for item in ordered
    )
    return [
        MethodCandidate(
            item.canonical,
            item,
            compute_method_hash(item.name_and_descriptor),
            interface_hash,
            ordinal,
        )
        for ordinal, item in enumerate(ordered)
    ]
