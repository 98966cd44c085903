"""
Defines the type descriptors, host containers and exceptions for luacall.

A descriptor names the host-side category a stack slot is converted to (or
from). Descriptors are small frozen dataclasses so they can be compared,
hashed, and taken apart with `match` statements by the converters.
"""

import types
import typing
from dataclasses import dataclass, field
from typing import Any


# =================================================================
# Exceptions
# =================================================================

class LuaCallError(Exception):
    """Base class for every failure raised while marshalling or calling."""
    pass


def _join(*parts) -> str:
    return " ".join(p for p in parts if p)


class TypeMismatch(LuaCallError, TypeError):
    """A slot's runtime tag cannot be converted to the requested category."""
    def __init__(self, actual: str, expected: str, label: str = ""):
        super().__init__(_join("Unexpected", actual, label) + f", expected {expected}")
        self.actual = actual
        self.expected = expected
        self.label = label


class CapacityExceeded(LuaCallError, ValueError):
    """A fixed-capacity array received more elements than it can hold."""
    def __init__(self, message: str, label: str = ""):
        super().__init__(_join(message, label))
        self.label = label


class UnresolvedFunction(LuaCallError, LookupError):
    def __init__(self, name: str):
        super().__init__(f"Function '{name}' is not a valid Lua function.")
        self.name = name


class GuestExecutionFailure(LuaCallError, RuntimeError):
    """The guest function raised; `message` is the guest's own error text."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnsupportedType(LuaCallError, TypeError):
    pass


class NilKeyError(TypeError):
    """Raised when a nil BasicValue is used as a table key.

    This is a usage error in the host program, so it deliberately does not
    derive from LuaCallError.
    """
    def __init__(self, label: str = ""):
        super().__init__(_join("Cannot hash a nil BasicValue", label))
        self.label = label


# =================================================================
# Type Descriptors
# =================================================================

@dataclass(frozen=True)
class Int:
    bits: int = 64
    signed: bool = True


@dataclass(frozen=True)
class Float:
    bits: int = 64


@dataclass(frozen=True)
class Bool:
    pass


@dataclass(frozen=True)
class String:
    pass


@dataclass(frozen=True)
class Nil:
    pass


@dataclass(frozen=True)
class Basic:
    """Any basic value: nil, integer, float, bool or string."""
    pass


@dataclass(frozen=True)
class Buffer:
    """A fixed-capacity string buffer holding at most capacity - 1 bytes."""
    capacity: int

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError(f"buffer capacity must be at least 1, got {self.capacity}")


@dataclass(frozen=True)
class FlaggedBuffer:
    """A Buffer paired with a flag that is False when the read truncated."""
    capacity: int

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError(f"buffer capacity must be at least 1, got {self.capacity}")


@dataclass(frozen=True)
class Optional:
    t: Any


@dataclass(frozen=True)
class List:
    t: Any


@dataclass(frozen=True)
class Array:
    t: Any
    capacity: int

    def __post_init__(self):
        if self.capacity < 0:
            raise ValueError(f"array capacity must not be negative, got {self.capacity}")


@dataclass(frozen=True)
class Dict:
    key: Any
    value: Any


INT8, INT16, INT32, INT64 = Int(8), Int(16), Int(32), Int(64)
UINT8, UINT16, UINT32, UINT64 = Int(8, False), Int(16, False), Int(32, False), Int(64, False)
INTEGER = INT64
FLOAT32, FLOAT64 = Float(32), Float(64)
NUMBER = FLOAT64
BOOL = Bool()
STRING = String()
NIL = Nil()
BASIC = Basic()

SCALAR_TYPES = (Int, Float, Bool, String, Basic)


# =================================================================
# Host Containers
# =================================================================

@dataclass
class FixedString:
    """Host side of a Buffer: raw content bytes, never longer than capacity - 1."""
    capacity: int
    data: bytes = b""

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError(f"buffer capacity must be at least 1, got {self.capacity}")
        self.data = bytes(self.data)
        if len(self.data) > self.capacity - 1:
            raise CapacityExceeded(f"String of {len(self.data)} bytes does not fit a buffer of {self.capacity}")

    @classmethod
    def from_str(cls, text: str, capacity: int, encoding: str = "utf-8") -> 'FixedString':
        return cls(capacity, text.encode(encoding))

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    def __len__(self) -> int:
        return len(self.data)

    def __str__(self) -> str:
        return self.text


@dataclass
class FixedArray:
    """Host side of an Array: `capacity` physical slots plus an observed length.

    Slots past `length` are padding (None) and are never written to the guest.
    """
    capacity: int
    slots: list = field(default_factory=list)
    length: typing.Optional[int] = None

    def __post_init__(self):
        if len(self.slots) > self.capacity:
            raise ValueError(f"{len(self.slots)} slots given for an array of capacity {self.capacity}")
        if self.length is None:
            self.length = len(self.slots)
        if self.length < 0:
            raise ValueError(f"array length must not be negative, got {self.length}")
        self.slots = list(self.slots) + [None] * (self.capacity - len(self.slots))

    def values(self) -> list:
        return self.slots[:self.length]

    def __len__(self) -> int:
        return self.length


# =================================================================
# Annotation Normalization
# =================================================================

_PLAIN_TYPES = {
    int: INTEGER,
    float: NUMBER,
    bool: BOOL,
    str: STRING,
    bytes: STRING,
    type(None): NIL,
    typing.Any: BASIC,
}

_DESCRIPTOR_TYPES = (Int, Float, Bool, String, Nil, Basic, Buffer, FlaggedBuffer,
                     Optional, List, Array, Dict)


def is_descriptor(t) -> bool:
    return isinstance(t, _DESCRIPTOR_TYPES)


def as_type(t):
    """Normalize a Python annotation (or a descriptor) into a descriptor.

    Supports int, float, bool, str, bytes, None, typing.Any, list[T],
    dict[K, V] and Optional[T] / T | None. Descriptors pass through unchanged.
    """
    if is_descriptor(t):
        return t
    if t is None:
        return NIL
    try:
        if t in _PLAIN_TYPES:
            return _PLAIN_TYPES[t]
    except TypeError:
        # Unhashable annotation objects fall through to the generic handling.
        pass
    origin = typing.get_origin(t)
    args = typing.get_args(t)
    if origin is list and len(args) == 1:
        return List(as_type(args[0]))
    if origin is dict and len(args) == 2:
        return Dict(as_type(args[0]), as_type(args[1]))
    if origin in (typing.Union, types.UnionType):
        rest = [a for a in args if a is not type(None)]
        if len(rest) == 1 and len(args) == 2:
            return Optional(as_type(rest[0]))
    raise UnsupportedType(f"Unsupported type annotation: {t!r}")


def type_of(value):
    """Infer a descriptor for pushing an untyped host value.

    Lists and dicts infer their elements one by one, which is expressed with
    an element descriptor of None.
    """
    match value:
        case None:
            return NIL
        case bool():
            return BOOL
        case int():
            return INTEGER
        case float():
            return NUMBER
        case str() | bytes() | bytearray():
            return STRING
        case FixedString(capacity=cap):
            return Buffer(cap)
        case (FixedString(capacity=cap), bool()):
            return FlaggedBuffer(cap)
        case FixedArray(capacity=cap):
            return Array(None, cap)
        case list() | tuple():
            return List(None)
        case dict():
            return Dict(None, None)
    raise UnsupportedType(f"Unsupported Python to Lua type: {type(value).__name__}")


__all__ = [
    "LuaCallError", "TypeMismatch", "CapacityExceeded", "UnresolvedFunction",
    "GuestExecutionFailure", "UnsupportedType", "NilKeyError",
    "Int", "Float", "Bool", "String", "Nil", "Basic", "Buffer", "FlaggedBuffer",
    "Optional", "List", "Array", "Dict",
    "INT8", "INT16", "INT32", "INT64", "UINT8", "UINT16", "UINT32", "UINT64",
    "INTEGER", "FLOAT32", "FLOAT64", "NUMBER", "BOOL", "STRING", "NIL", "BASIC",
    "FixedString", "FixedArray", "as_type", "type_of", "is_descriptor",
]
