"""ObjID and UID wire codec."""

import os
import struct
import time
from dataclasses import dataclass

from rmiguess.errors import MalformedObjIdError

UID_LENGTH: int = 14
OBJID_LENGTH: int = 8 + UID_LENGTH
_UID_STRUCT: struct.Struct = struct.Struct(">iqh")
_OBJID_STRUCT: struct.Struct = struct.Struct(">qiqh")


@dataclass(frozen=True)
class UID:
    """Unique identifier of the address space that exported an object."""

    unique: int = 0
    time: int = 0
    count: int = 0

    def encode(self) -> bytes:
        """Encode the identifier in wire order (unique, time, count).

        :returns: 14 encoded bytes.
        """
        return _UID_STRUCT.pack(self.unique, self.time, self.count)

    @classmethod
    def decode(cls, data: bytes) -> "UID":
        """Decode a UID.

        :param data: Exactly 14 bytes.
        :returns: Decoded identifier.
        :raises MalformedObjIdError: If ``data`` has the wrong length.
        """
        if len(data) != UID_LENGTH:
            raise MalformedObjIdError(f"UID must be {UID_LENGTH} bytes, got {len(data)}")
        unique, created, count = _UID_STRUCT.unpack(data)
        return cls(unique, created, count)

    @classmethod
    def random(cls) -> "UID":
        """Create a fresh identifier like a newly started server would."""
        unique: int = struct.unpack(">i", os.urandom(4))[0]
        return cls(unique, int(time.time() * 1000), 0)

    def __str__(self) -> str:
        return f"{self.unique:x}:{self.time:x}:{self.count:x}"


@dataclass(frozen=True)
class ObjID:
    """Identifier addressing one exported remote object."""

    object_number: int
    uid: UID = UID()

    @property
    def is_well_known(self) -> bool:
        """Report whether this identifier is one of the reserved constants."""
        return self in WELL_KNOWN_OBJIDS.values()

    def encode(self) -> bytes:
        """Encode the identifier (object number followed by the UID).

        :returns: 22 encoded bytes.
        """
        return _OBJID_STRUCT.pack(self.object_number, self.uid.unique, self.uid.time, self.uid.count)

    @classmethod
    def decode(cls, data: bytes) -> "ObjID":
        """Decode an ObjID.

        :param data: Exactly 22 bytes.
        :returns: Decoded identifier.
        :raises MalformedObjIdError: If ``data`` has the wrong length.
        """
        if len(data) != OBJID_LENGTH:
            raise MalformedObjIdError(f"ObjID must be {OBJID_LENGTH} bytes, got {len(data)}")
        object_number, unique, created, count = _OBJID_STRUCT.unpack(data)
        return cls(object_number, UID(unique, created, count))

    def __str__(self) -> str:
        return f"[{self.uid}, {self.object_number}]"


REGISTRY_ID: ObjID = ObjID(0)
ACTIVATOR_ID: ObjID = ObjID(1)
DGC_ID: ObjID = ObjID(2)
ACTIVATION_SYSTEM_ID: ObjID = ObjID(4)

WELL_KNOWN_OBJIDS: dict[str, ObjID] = {
    "registry": REGISTRY_ID,
    "activator": ACTIVATOR_ID,
    "dgc": DGC_ID,
    "activation-system": ACTIVATION_SYSTEM_ID,
}
