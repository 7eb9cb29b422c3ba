"""Method signature parsing and the two selector hash algorithms."""

import hashlib
import re
import struct
from collections.abc import Iterable
from dataclasses import dataclass

from rmiguess.errors import MalformedSignatureError
from rmiguess.serialization import encode_utf

INTERFACE_HASH_STUB_VERSION: int = 1
REMOTE_EXCEPTION: str = "java.rmi.RemoteException"

PRIMITIVE_DESCRIPTORS: dict[str, str] = {
    "boolean": "Z",
    "byte": "B",
    "char": "C",
    "short": "S",
    "int": "I",
    "long": "J",
    "float": "F",
    "double": "D",
    "void": "V",
}

_JAVA_LANG_TYPES: frozenset[str] = frozenset({
    "Boolean", "Byte", "Character", "Class", "Double", "Enum", "Exception",
    "Float", "Integer", "Long", "Number", "Object", "Short", "String",
    "StringBuffer", "StringBuilder", "Throwable", "Void",
})
_JAVA_UTIL_TYPES: frozenset[str] = frozenset({
    "ArrayList", "Collection", "Date", "HashMap", "HashSet", "Hashtable",
    "LinkedList", "List", "Map", "Properties", "Set", "TreeMap", "Vector",
})
_SIGNATURE_PATTERN: re.Pattern[str] = re.compile(
    r"^\s*(?:(?P<return>[\w.$\[\]]+)\s+)?(?P<name>[\w$]+)\s*\((?P<params>[^)]*)\)"
    + r"(?:\s*throws\s+[\w.$,\s]+)?\s*;?\s*$"
)
_GENERICS_PATTERN: re.Pattern[str] = re.compile(r"<[^<>]*>")


def _digest_to_long(digest: bytes) -> int:
    """Reduce a SHA-1 digest to a signed 64 bit value (little-endian, first 8 bytes)."""
    return struct.unpack("<q", digest[:8])[0]


def java_type_to_descriptor(type_name: str) -> str:
    """Convert a Java source type name into a field descriptor.

    :param type_name: Type such as ``int``, ``String[]`` or ``java.util.HashMap``.
    :returns: Field descriptor such as ``[Ljava/lang/String;``.
    :raises MalformedSignatureError: If the type name is empty or invalid.
    """
    stripped: str = _strip_generics(type_name).replace(" ", "")
    dimensions: int = 0
    while stripped.endswith("[]"):
        dimensions += 1
        stripped = stripped[:-2]
    if stripped.endswith("..."):
        dimensions += 1
        stripped = stripped[:-3]

    if len(stripped) == 0 or re.fullmatch(r"[\w.$]+", stripped) is None:
        raise MalformedSignatureError(f"Invalid type name: {type_name!r}")

    primitive: str | None = PRIMITIVE_DESCRIPTORS.get(stripped)
    if primitive is not None:
        if primitive == "V" and dimensions > 0:
            raise MalformedSignatureError("void cannot be an array component")
        return "[" * dimensions + primitive
    return "[" * dimensions + "L" + qualify_class_name(stripped).replace(".", "/") + ";"


def qualify_class_name(class_name: str) -> str:
    """Resolve well-known short class names to their fully qualified form."""
    if "." in class_name:
        return class_name
    if class_name in _JAVA_LANG_TYPES:
        return f"java.lang.{class_name}"
    if class_name in _JAVA_UTIL_TYPES:
        return f"java.util.{class_name}"
    return class_name


def _strip_generics(text: str) -> str:
    previous: str | None = None
    while previous != text:
        previous = text
        text = _GENERICS_PATTERN.sub("", text)
    return text


def _split_parameters(raw_params: str) -> list[str]:
    """Split the parameter list and drop parameter names.

    :param raw_params: Text between the parentheses of a signature.
    :returns: Parameter type names.
    """
    params: list[str] = []
    cleaned: str = _strip_generics(raw_params).strip()
    if len(cleaned) == 0:
        return params
    for part in cleaned.split(","):
        tokens: list[str] = part.replace("...", "[] ").split()
        tokens = [token for token in tokens if token != "final"]
        if len(tokens) == 0:
            raise MalformedSignatureError(f"Empty parameter in {raw_params!r}")
        type_name: str = tokens[0]
        # "String [] values" and "String values[]" are both valid Java
        for token in tokens[1:]:
            if token == "[]":
                type_name += "[]"
            elif token.endswith("[]"):
                type_name += "[]" * token.count("[]")
        params.append(type_name)
    return params


@dataclass(frozen=True)
class MethodSignature:
    """A parsed remote method signature."""

    name: str
    parameter_types: tuple[str, ...]
    return_type: str = "void"

    @classmethod
    def parse(cls, text: str) -> "MethodSignature":
        """Parse signatures like ``String login(java.util.HashMap creds)`` or ``login(String)``.

        A missing return type is treated as ``void``.

        :param text: Signature text.
        :returns: Parsed signature.
        :raises MalformedSignatureError: If the text is not a method signature.
        """
        match: re.Match[str] | None = _SIGNATURE_PATTERN.match(_strip_generics(text))
        if match is None:
            raise MalformedSignatureError(f"Unable to parse method signature: {text!r}")
        return_type: str = match.group("return") or "void"
        if return_type in ("public", "static", "abstract"):
            raise MalformedSignatureError(f"Modifiers are not supported: {text!r}")
        signature = cls(match.group("name"), tuple(_split_parameters(match.group("params"))), return_type)
        # validate every type eagerly so broken wordlist lines fail at load time
        if "V" in signature.parameter_descriptors:
            raise MalformedSignatureError(f"void is not a parameter type: {text!r}")
        _ = signature.descriptor
        return signature

    @property
    def parameter_descriptors(self) -> tuple[str, ...]:
        return tuple(java_type_to_descriptor(item) for item in self.parameter_types)

    @property
    def return_descriptor(self) -> str:
        return java_type_to_descriptor(self.return_type)

    @property
    def descriptor(self) -> str:
        """Return the JVM method descriptor, e.g. ``(Ljava/lang/String;)V``."""
        return "(" + "".join(self.parameter_descriptors) + ")" + self.return_descriptor

    @property
    def name_and_descriptor(self) -> str:
        return self.name + self.descriptor

    @property
    def canonical(self) -> str:
        """Return the canonical textual form used as the repository key."""
        params: str = ", ".join(qualify_class_name(item) for item in self.parameter_types)
        return f"{qualify_class_name(self.return_type)} {self.name}({params})"

    def __str__(self) -> str:
        return self.canonical


def compute_method_hash(name_and_descriptor: str) -> int:
    """Compute the modern (hash-addressed) selector of one method.

    :param name_and_descriptor: Method name directly followed by its descriptor.
    :returns: Signed 64 bit method hash.
    """
    digest: bytes = hashlib.sha1(encode_utf(name_and_descriptor)).digest()
    return _digest_to_long(digest)


def compute_interface_hash(methods: Iterable[tuple[str, str, Iterable[str]]]) -> int:
    """Compute the legacy stub interface hash over a method table.

    :param methods: ``(name, descriptor, declared exception class names)`` triples in any order.
    :returns: Signed 64 bit interface hash.
    """
    ordered: list[tuple[str, str, Iterable[str]]] = sorted(methods, key=lambda item: item[0] + item[1])
    stream: bytearray = bytearray(struct.pack(">i", INTERFACE_HASH_STUB_VERSION))
    for name, descriptor, exceptions in ordered:
        stream.extend(encode_utf(name))
        stream.extend(encode_utf(descriptor))
        for exception_name in sorted(exceptions):
            stream.extend(encode_utf(exception_name))
    digest: bytes = hashlib.sha1(bytes(stream)).digest()
    return _digest_to_long(digest)


def compute_legacy_hash(signature: MethodSignature) -> int:
    """Compute the legacy interface hash of a one-method table holding ``signature``."""
    return compute_interface_hash([(signature.name, signature.descriptor, (REMOTE_EXCEPTION,))])
