"""Minimal Java object stream reader and writer for call envelopes."""

import struct
from dataclasses import dataclass
from dataclasses import field

from rmiguess.errors import InvalidPayloadError
from rmiguess.errors import MalformedResponseError

STREAM_MAGIC: int = 0xACED
STREAM_VERSION: int = 5
STREAM_HEADER: bytes = struct.pack(">HH", STREAM_MAGIC, STREAM_VERSION)
BASE_WIRE_HANDLE: int = 0x7E0000
MAX_BLOCK_SIZE: int = 1024

TC_NULL: int = 0x70
TC_REFERENCE: int = 0x71
TC_CLASSDESC: int = 0x72
TC_OBJECT: int = 0x73
TC_STRING: int = 0x74
TC_ARRAY: int = 0x75
TC_CLASS: int = 0x76
TC_BLOCKDATA: int = 0x77
TC_ENDBLOCKDATA: int = 0x78
TC_RESET: int = 0x79
TC_BLOCKDATALONG: int = 0x7A
TC_EXCEPTION: int = 0x7B
TC_LONGSTRING: int = 0x7C
TC_PROXYCLASSDESC: int = 0x7D
TC_ENUM: int = 0x7E

SC_WRITE_METHOD: int = 0x01
SC_SERIALIZABLE: int = 0x02
SC_EXTERNALIZABLE: int = 0x04
SC_BLOCK_DATA: int = 0x08

_PRIMITIVE_FORMATS: dict[str, str] = {
    "B": ">b",
    "C": ">H",
    "D": ">d",
    "F": ">f",
    "I": ">i",
    "J": ">q",
    "S": ">h",
    "Z": ">?",
}

_DECODE_FAILURES: tuple[type[Exception], ...] = (IndexError, struct.error, UnicodeDecodeError, RecursionError)


class IncompleteStreamError(MalformedResponseError):
    """Raised when the input ends before the current structure is complete."""


def encode_utf(value: str) -> bytes:
    """Encode ``value`` like ``DataOutput.writeUTF`` (length prefixed modified UTF-8).

    :param value: Text to encode.
    :returns: Encoded bytes.
    """
    body: bytes = _encode_modified_utf8(value)
    if len(body) > 0xFFFF:
        raise ValueError("UTF string too long for a short length prefix")
    return struct.pack(">H", len(body)) + body


def _encode_modified_utf8(value: str) -> bytes:
    units: bytes = value.encode("utf-16-be", "surrogatepass")
    encoded: bytearray = bytearray()
    for index in range(0, len(units), 2):
        unit: int = int.from_bytes(units[index:index + 2], "big")
        if 0 < unit < 0x80:
            encoded.append(unit)
        elif unit < 0x800:
            encoded.extend((0xC0 | (unit >> 6), 0x80 | (unit & 0x3F)))
        else:
            encoded.extend((0xE0 | (unit >> 12), 0x80 | ((unit >> 6) & 0x3F), 0x80 | (unit & 0x3F)))
    return bytes(encoded)


def _decode_modified_utf8(data: bytes) -> str:
    normalized: bytes = data.replace(b"\xc0\x80", b"\x00")
    try:
        text: str = normalized.decode("utf-8", "surrogatepass")
        return text.encode("utf-16-be", "surrogatepass").decode("utf-16-be")
    except UnicodeError as exc:
        raise MalformedResponseError("Invalid modified UTF-8 string in stream") from exc


# ----------------------------------------------------------------------------
# Decoded stream model
# ----------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldDesc:
    """One serializable field of a class descriptor."""

    type_code: str
    name: str
    class_name: str | None = None

    @property
    def is_primitive(self) -> bool:
        return self.type_code not in ("L", "[")


@dataclass(eq=False)
class ClassDesc:
    """Class descriptor as found in (or written to) an object stream."""

    name: str
    suid: int = 0
    flags: int = SC_SERIALIZABLE
    fields: tuple[FieldDesc, ...] = ()
    annotation: str | None = None
    super_desc: "ClassDesc | None" = None
    interfaces: tuple[str, ...] = ()
    is_proxy: bool = False
    annotations: list[object] = field(default_factory=list)

    def hierarchy(self) -> list["ClassDesc"]:
        """Return the descriptor chain from the top-most superclass down to this class."""
        chain: list[ClassDesc] = []
        current: ClassDesc | None = self
        while current is not None:
            chain.append(current)
            current = current.super_desc
        chain.reverse()
        return chain

    def class_names(self) -> list[str]:
        """Return this class name followed by all superclass names."""
        return [item.name for item in reversed(self.hierarchy())]


@dataclass(eq=False)
class JavaObject:
    """A decoded object: field values merged across the hierarchy, custom data per class."""

    desc: ClassDesc
    fields: dict[str, object] = field(default_factory=dict)
    annotations: dict[str, list[object]] = field(default_factory=dict)

    @property
    def class_name(self) -> str:
        return self.desc.name

    def custom_data(self, class_name: str) -> bytes:
        """Concatenate the block data a class wrote from its ``writeObject`` method."""
        chunks: list[bytes] = [item for item in self.annotations.get(class_name, []) if isinstance(item, bytes)]
        return b"".join(chunks)


@dataclass(eq=False)
class JavaArray:
    desc: ClassDesc
    items: list[object] = field(default_factory=list)


@dataclass(eq=False)
class JavaEnum:
    desc: ClassDesc
    constant: str


@dataclass(eq=False)
class JavaClass:
    desc: ClassDesc


# ----------------------------------------------------------------------------
# Writer side value model
# ----------------------------------------------------------------------------


@dataclass(frozen=True)
class Primitive:
    """A primitive value written in block data mode, e.g. ``Primitive("J", 0)``."""

    type_code: str
    value: object


@dataclass(eq=False)
class NewObject:
    """An object to serialize.

    ``values`` holds field values keyed by field name. ``custom_data`` maps a
    class name to the items that class writes from ``writeObject`` (bytes for
    block data, anything else is written as an object).
    """

    desc: ClassDesc
    values: dict[str, object] = field(default_factory=dict)
    custom_data: dict[str, list[object]] = field(default_factory=dict)


@dataclass(eq=False)
class NewArray:
    desc: ClassDesc
    component_type: str
    items: list[object] = field(default_factory=list)


@dataclass(frozen=True)
class RawObject:
    """Pre-serialized object bytes spliced into the stream (e.g. a gadget)."""

    payload: bytes


# ----------------------------------------------------------------------------
# Reader
# ----------------------------------------------------------------------------


class ObjectStreamReader:
    """Read the subset of the object stream protocol used by call envelopes.

    The reader also records the offsets of back references and of empty
    class annotations, which :func:`transcode_payload` rewrites.
    """

    _data: bytes
    _pos: int
    _handles: list[object]
    _block_remaining: int
    _reset_seen: bool
    reference_offsets: list[int]
    empty_annotation_offsets: list[int]
    handle_count: int

    def __init__(self, data: bytes, offset: int = 0, expect_header: bool = True) -> None:
        """Initialize a reader.

        :param data: Stream bytes.
        :param offset: Offset where the stream (or its header) starts.
        :param expect_header: Whether the stream begins with magic and version.
        :raises MalformedResponseError: If the stream header is invalid.
        """
        self._data = data
        self._pos = offset
        self._handles = []
        self._block_remaining = 0
        self._reset_seen = False
        self.reference_offsets = []
        self.empty_annotation_offsets = []
        self.handle_count = 0
        if expect_header is True:
            magic: int = self._read_struct(">H")
            version: int = self._read_struct(">H")
            if magic != STREAM_MAGIC or version != STREAM_VERSION:
                raise MalformedResponseError(f"Invalid object stream header {magic:#06x}/{version}")

    @property
    def position(self) -> int:
        return self._pos

    def at_end(self) -> bool:
        return self._block_remaining == 0 and self._pos >= len(self._data)

    def skip_block_data(self) -> int:
        """Discard the rest of the current block and any block records that follow.

        :returns: Number of bytes skipped.
        """
        skipped: int = self._block_remaining
        self._take(self._block_remaining)
        self._block_remaining = 0
        while self._pos < len(self._data) and self._data[self._pos] in (TC_BLOCKDATA, TC_BLOCKDATALONG):
            tag: int = self._read_u8()
            length: int = self._read_u8() if tag == TC_BLOCKDATA else self._read_length(">i")
            self._take(length)
            skipped += length
        return skipped

    def _take(self, count: int) -> bytes:
        if count < 0:
            raise MalformedResponseError(f"Negative length {count} at offset {self._pos}")
        end: int = self._pos + count
        if end > len(self._data):
            raise IncompleteStreamError(f"Stream ended while reading {count} bytes at offset {self._pos}")
        chunk: bytes = self._data[self._pos:end]
        self._pos = end
        return chunk

    def _peek(self) -> int:
        if self._pos >= len(self._data):
            raise IncompleteStreamError("Stream ended while reading a type code")
        return self._data[self._pos]

    def _read_u8(self) -> int:
        return self._take(1)[0]

    def _read_struct(self, fmt: str) -> object:
        return struct.unpack(fmt, self._take(struct.calcsize(fmt)))[0]

    def _read_length(self, fmt: str) -> int:
        offset: int = self._pos
        length: int = self._read_struct(fmt)
        if length < 0:
            raise MalformedResponseError(f"Negative length {length} at offset {offset}")
        return length

    def _read_utf(self) -> str:
        length: int = self._read_struct(">H")
        return _decode_modified_utf8(self._take(length))

    def _new_handle(self, value: object) -> int:
        self._handles.append(value)
        self.handle_count += 1
        return len(self._handles) - 1

    # block data ------------------------------------------------------------

    def read_block_bytes(self, count: int) -> bytes:
        """Read ``count`` bytes of block data, crossing block boundaries as needed.

        :param count: Number of bytes to read.
        :returns: Raw block bytes.
        :raises MalformedResponseError: If an object appears where block data is expected.
        """
        out: bytearray = bytearray()
        while len(out) < count:
            if self._block_remaining == 0:
                tag: int = self._read_u8()
                if tag == TC_BLOCKDATA:
                    self._block_remaining = self._read_u8()
                elif tag == TC_BLOCKDATALONG:
                    self._block_remaining = self._read_length(">i")
                elif tag == TC_RESET:
                    self._reset()
                else:
                    raise MalformedResponseError(f"Expected block data, found type code {tag:#04x}")
                continue
            take: int = min(self._block_remaining, count - len(out))
            out.extend(self._take(take))
            self._block_remaining -= take
        return bytes(out)

    def read_primitive(self, type_code: str) -> object:
        """Read one primitive value from block data."""
        fmt: str = _PRIMITIVE_FORMATS[type_code]
        value: object = struct.unpack(fmt, self.read_block_bytes(struct.calcsize(fmt)))[0]
        if type_code == "C":
            return chr(value)
        return value

    def read_block_utf(self) -> str:
        length: int = struct.unpack(">H", self.read_block_bytes(2))[0]
        return _decode_modified_utf8(self.read_block_bytes(length))

    # content ---------------------------------------------------------------

    def read_object(self) -> object:
        """Read the next object (not block data) from the stream.

        :returns: Decoded content (``None``, ``str``, ``JavaObject``, ``JavaArray`` ...).
        :raises MalformedResponseError: If block data is pending or the type code is unknown.
        """
        if self._block_remaining > 0:
            raise MalformedResponseError("Unread block data before object")
        offset: int = self._pos
        try:
            tag: int = self._read_u8()
            while tag == TC_RESET:
                self._reset()
                tag = self._read_u8()
            return self._read_content(tag)
        except _DECODE_FAILURES as exc:
            raise MalformedResponseError(f"Undecodable object at offset {offset}: {exc!r}") from exc

    def _reset(self) -> None:
        self._handles.clear()
        self._reset_seen = True

    def _read_content(self, tag: int) -> object:
        if tag == TC_NULL:
            return None
        if tag == TC_REFERENCE:
            return self._read_reference()
        if tag == TC_STRING:
            value: str = self._read_utf()
            self._new_handle(value)
            return value
        if tag == TC_LONGSTRING:
            length: int = self._read_length(">q")
            long_value: str = _decode_modified_utf8(self._take(length))
            self._new_handle(long_value)
            return long_value
        if tag == TC_CLASSDESC:
            return self._read_class_desc_body()
        if tag == TC_PROXYCLASSDESC:
            return self._read_proxy_desc_body()
        if tag == TC_OBJECT:
            return self._read_new_object()
        if tag == TC_ARRAY:
            return self._read_new_array()
        if tag == TC_ENUM:
            return self._read_new_enum()
        if tag == TC_CLASS:
            desc: ClassDesc | None = self._read_class_desc()
            if desc is None:
                raise MalformedResponseError("TC_CLASS without class descriptor")
            value_class: JavaClass = JavaClass(desc)
            self._new_handle(value_class)
            return value_class
        if tag == TC_EXCEPTION:
            raise MalformedResponseError("Stream contains a TC_EXCEPTION marker (writer side failure)")
        raise MalformedResponseError(f"Unknown type code {tag:#04x} at offset {self._pos - 1}")

    def _read_reference(self) -> object:
        offset: int = self._pos
        handle: int = self._read_struct(">i")
        if self._reset_seen is False:
            self.reference_offsets.append(offset)
        index: int = handle - BASE_WIRE_HANDLE
        if index < 0 or index >= len(self._handles):
            raise MalformedResponseError(f"Invalid back reference {handle:#x}")
        return self._handles[index]

    def _read_class_desc(self) -> ClassDesc | None:
        tag: int = self._read_u8()
        desc: object = self._read_content(tag)
        if desc is not None and isinstance(desc, ClassDesc) is False:
            raise MalformedResponseError("Expected a class descriptor")
        return desc

    def _read_class_annotation(self) -> list[object]:
        if self._peek() == TC_ENDBLOCKDATA:
            self.empty_annotation_offsets.append(self._pos)
        return self._read_until_end_block()

    def _read_until_end_block(self) -> list[object]:
        items: list[object] = []
        while True:
            tag: int = self._peek()
            if tag == TC_ENDBLOCKDATA:
                self._pos += 1
                return items
            if tag in (TC_BLOCKDATA, TC_BLOCKDATALONG):
                self._pos += 1
                length: int = self._read_u8() if tag == TC_BLOCKDATA else self._read_length(">i")
                items.append(self._take(length))
                continue
            items.append(self.read_object())

    def _read_class_desc_body(self) -> ClassDesc:
        name: str = self._read_utf()
        suid: int = self._read_struct(">q")
        desc: ClassDesc = ClassDesc(name, suid)
        self._new_handle(desc)
        desc.flags = self._read_u8()
        field_count: int = self._read_length(">h")
        fields: list[FieldDesc] = []
        for _ in range(field_count):
            type_code: str = chr(self._read_u8())
            field_name: str = self._read_utf()
            class_name: str | None = None
            if type_code in ("L", "["):
                class_name_obj: object = self.read_object()
                if isinstance(class_name_obj, str) is False:
                    raise MalformedResponseError("Field type name must be a string")
                class_name = class_name_obj
            elif type_code not in _PRIMITIVE_FORMATS:
                raise MalformedResponseError(f"Invalid field type code {type_code!r}")
            fields.append(FieldDesc(type_code, field_name, class_name))
        desc.fields = tuple(fields)
        desc.annotations = self._read_class_annotation()
        if len(desc.annotations) > 0 and isinstance(desc.annotations[0], str):
            desc.annotation = desc.annotations[0]
        desc.super_desc = self._read_class_desc()
        return desc

    def _read_proxy_desc_body(self) -> ClassDesc:
        desc: ClassDesc = ClassDesc("<proxy>", 0, SC_SERIALIZABLE, is_proxy=True)
        self._new_handle(desc)
        count: int = self._read_length(">i")
        desc.interfaces = tuple(self._read_utf() for _ in range(count))
        desc.annotations = self._read_class_annotation()
        if len(desc.annotations) > 0 and isinstance(desc.annotations[0], str):
            desc.annotation = desc.annotations[0]
        desc.super_desc = self._read_class_desc()
        return desc

    def _read_field_value(self, field_desc: FieldDesc) -> object:
        if field_desc.is_primitive is True:
            fmt: str = _PRIMITIVE_FORMATS[field_desc.type_code]
            value: object = struct.unpack(fmt, self._take(struct.calcsize(fmt)))[0]
            if field_desc.type_code == "C":
                return chr(value)
            return value
        return self.read_object()

    def _read_new_object(self) -> JavaObject:
        desc: ClassDesc | None = self._read_class_desc()
        if desc is None:
            raise MalformedResponseError("TC_OBJECT without class descriptor")
        obj: JavaObject = JavaObject(desc)
        self._new_handle(obj)
        for class_desc in desc.hierarchy():
            if class_desc.flags & SC_EXTERNALIZABLE:
                if class_desc.flags & SC_BLOCK_DATA == 0:
                    raise MalformedResponseError(f"Unsupported protocol 1 externalizable {class_desc.name}")
                obj.annotations[class_desc.name] = self._read_until_end_block()
                continue
            if class_desc.flags & SC_SERIALIZABLE == 0:
                continue
            for field_desc in class_desc.fields:
                obj.fields[field_desc.name] = self._read_field_value(field_desc)
            if class_desc.flags & SC_WRITE_METHOD:
                obj.annotations[class_desc.name] = self._read_until_end_block()
        return obj

    def _read_new_array(self) -> JavaArray:
        desc: ClassDesc | None = self._read_class_desc()
        if desc is None or desc.name.startswith("[") is False or len(desc.name) < 2:
            raise MalformedResponseError("TC_ARRAY without array class descriptor")
        array: JavaArray = JavaArray(desc)
        self._new_handle(array)
        length: int = self._read_length(">i")
        component: str = desc.name[1]
        for _ in range(length):
            if component in _PRIMITIVE_FORMATS:
                array.items.append(self._read_field_value(FieldDesc(component, "")))
            else:
                array.items.append(self.read_object())
        return array

    def _read_new_enum(self) -> JavaEnum:
        desc: ClassDesc | None = self._read_class_desc()
        if desc is None:
            raise MalformedResponseError("TC_ENUM without class descriptor")
        placeholder: JavaEnum = JavaEnum(desc, "")
        self._new_handle(placeholder)
        constant: object = self.read_object()
        if isinstance(constant, str) is False:
            raise MalformedResponseError("Enum constant name must be a string")
        placeholder.constant = constant
        return placeholder


# ----------------------------------------------------------------------------
# Writer
# ----------------------------------------------------------------------------


class ObjectStreamWriter:
    """Write an RMI marshal stream.

    Every class descriptor is followed by a class annotation (codebase
    location string or null) because the receiving side reads one for each
    class it resolves. No back references are ever emitted by the writer
    itself, so spliced payloads only need to be shifted by ``handle_count``.
    """

    _buffer: bytearray
    _block: bytearray
    handle_count: int

    def __init__(self) -> None:
        self._buffer = bytearray(STREAM_HEADER)
        self._block = bytearray()
        self.handle_count = 0

    def getvalue(self) -> bytes:
        """Flush pending block data and return the stream bytes."""
        self._flush_block()
        return bytes(self._buffer)

    def _flush_block(self) -> None:
        data: bytes = bytes(self._block)
        self._block.clear()
        for start in range(0, len(data), MAX_BLOCK_SIZE):
            chunk: bytes = data[start:start + MAX_BLOCK_SIZE]
            if len(chunk) <= 0xFF:
                self._buffer.extend(struct.pack(">BB", TC_BLOCKDATA, len(chunk)))
            else:
                self._buffer.extend(struct.pack(">Bi", TC_BLOCKDATALONG, len(chunk)))
            self._buffer.extend(chunk)

    def _raw(self, data: bytes) -> None:
        self._flush_block()
        self._buffer.extend(data)

    def write_block(self, data: bytes) -> None:
        """Append raw bytes to the current block data."""
        self._block.extend(data)

    def write_primitive(self, type_code: str, value: object) -> None:
        fmt: str = _PRIMITIVE_FORMATS[type_code]
        if type_code == "C" and isinstance(value, str):
            value = ord(value)
        self._block.extend(struct.pack(fmt, value))

    def write_block_utf(self, value: str) -> None:
        self._block.extend(encode_utf(value))

    def write_value(self, value: object) -> None:
        """Write any supported value: primitives go to block data, everything else is an object.

        :param value: ``None``, ``str``, ``Primitive``, ``NewObject``, ``NewArray`` or ``RawObject``.
        :raises TypeError: If the value type is not supported.
        """
        if isinstance(value, Primitive):
            self.write_primitive(value.type_code, value.value)
            return
        if value is None:
            self._raw(bytes([TC_NULL]))
            return
        if isinstance(value, str):
            self._write_string(value)
            return
        if isinstance(value, NewObject):
            self._write_object(value)
            return
        if isinstance(value, NewArray):
            self._write_array(value)
            return
        if isinstance(value, RawObject):
            self.write_raw_object(value.payload)
            return
        raise TypeError(f"Unsupported stream value: {type(value).__name__}")

    def write_raw_object(self, payload: bytes) -> None:
        """Splice a serialized object into the stream.

        :param payload: Object stream bytes, with or without the stream header.
        :raises InvalidPayloadError: If the payload is not a single parsable object.
        """
        body, allocated = transcode_payload(payload, self.handle_count)
        self._raw(body)
        self.handle_count += allocated

    def _write_string(self, value: str) -> None:
        body: bytes = _encode_modified_utf8(value)
        if len(body) <= 0xFFFF:
            self._raw(struct.pack(">BH", TC_STRING, len(body)) + body)
        else:
            self._raw(struct.pack(">Bq", TC_LONGSTRING, len(body)) + body)
        self.handle_count += 1

    def _write_class_desc(self, desc: ClassDesc | None) -> None:
        if desc is None:
            self._raw(bytes([TC_NULL]))
            return
        if desc.is_proxy is True:
            self._raw(struct.pack(">Bi", TC_PROXYCLASSDESC, len(desc.interfaces)))
            self.handle_count += 1
            for interface in desc.interfaces:
                self._raw(encode_utf(interface))
        else:
            self._raw(bytes([TC_CLASSDESC]) + encode_utf(desc.name) + struct.pack(">q", desc.suid))
            self.handle_count += 1
            self._raw(struct.pack(">Bh", desc.flags, len(desc.fields)))
            for field_desc in desc.fields:
                self._raw(field_desc.type_code.encode("ascii") + encode_utf(field_desc.name))
                if field_desc.is_primitive is False:
                    self._write_string(field_desc.class_name or "Ljava/lang/Object;")
        self.write_value(desc.annotation)
        self._raw(bytes([TC_ENDBLOCKDATA]))
        self._write_class_desc(desc.super_desc)

    def _write_object(self, obj: NewObject) -> None:
        self._raw(bytes([TC_OBJECT]))
        self._write_class_desc(obj.desc)
        self.handle_count += 1
        for class_desc in obj.desc.hierarchy():
            for field_desc in class_desc.fields:
                value: object = obj.values.get(field_desc.name)
                if field_desc.is_primitive is True:
                    fmt: str = _PRIMITIVE_FORMATS[field_desc.type_code]
                    self._raw(struct.pack(fmt, 0 if value is None else value))
                else:
                    self.write_value(value)
            if class_desc.flags & SC_WRITE_METHOD or class_desc.flags & SC_EXTERNALIZABLE:
                for item in obj.custom_data.get(class_desc.name, []):
                    if isinstance(item, bytes):
                        self.write_block(item)
                    else:
                        self.write_value(item)
                self._raw(bytes([TC_ENDBLOCKDATA]))

    def _write_array(self, array: NewArray) -> None:
        self._raw(bytes([TC_ARRAY]))
        self._write_class_desc(array.desc)
        self.handle_count += 1
        self._raw(struct.pack(">i", len(array.items)))
        for item in array.items:
            if array.component_type in _PRIMITIVE_FORMATS:
                self._raw(struct.pack(_PRIMITIVE_FORMATS[array.component_type], item))
            else:
                self.write_value(item)


def strip_stream_header(payload: bytes) -> bytes:
    """Drop a leading ``aced0005`` header if present."""
    if payload[:4] == STREAM_HEADER:
        return payload[4:]
    return payload


def transcode_payload(payload: bytes, handle_base: int) -> tuple[bytes, int]:
    """Prepare a serialized object for splicing into a marshal stream.

    Back references are shifted by ``handle_base`` (the number of handles the
    surrounding stream already allocated) and every empty class annotation
    gets a null codebase location.

    :param payload: Serialized object, with or without stream header.
    :param handle_base: Handles allocated before the splice point.
    :returns: Tuple of ``(transcoded bytes, handles allocated by the payload)``.
    :raises InvalidPayloadError: If the payload does not parse as one object.
    """
    body: bytes = strip_stream_header(payload)
    if len(body) == 0:
        raise InvalidPayloadError("Payload is empty")
    reader: ObjectStreamReader = ObjectStreamReader(body, expect_header=False)
    try:
        reader.read_object()
    except MalformedResponseError as exc:
        raise InvalidPayloadError(f"Payload is not a valid serialized object: {exc}") from exc
    if reader.position != len(body):
        raise InvalidPayloadError(f"Trailing data after serialized object ({len(body) - reader.position} bytes)")

    edits: list[tuple[int, str]] = [(offset, "ref") for offset in reader.reference_offsets]
    edits.extend((offset, "annotation") for offset in reader.empty_annotation_offsets)
    edits.sort()

    out: bytearray = bytearray()
    cursor: int = 0
    for offset, kind in edits:
        out.extend(body[cursor:offset])
        if kind == "annotation":
            out.append(TC_NULL)
            cursor = offset
        else:
            handle: int = struct.unpack(">i", body[offset:offset + 4])[0]
            out.extend(struct.pack(">i", handle + handle_base))
            cursor = offset + 4
    out.extend(body[cursor:])
    return bytes(out), reader.handle_count
