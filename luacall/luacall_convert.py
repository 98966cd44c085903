"""
The type-directed converters between stack slots and host values.

`read_from_stack` turns the slot at an index into the host value a descriptor
asks for; `push_to_stack` pushes a host value as a new slot. Both recurse
through Optional, List, Array and Dict descriptors, so any nesting of those
around the scalar categories (or around Basic, the "any basic value" union)
is supported.
"""
import math
import os
import struct
import sys
from contextlib import contextmanager
from dataclasses import dataclass

from luacall.luacall_datatypes import (
    Int, Float, Bool, String, Nil, Basic, Buffer, FlaggedBuffer,
    Optional, List, Array, Dict, FixedString, FixedArray, SCALAR_TYPES,
    TypeMismatch, CapacityExceeded, UnsupportedType, NilKeyError,
    as_type, type_of
)
from luacall.luacall_classify import classify, is_list, is_dict
from luacall.luacall_printer import Printer, describe
from luacall.luacall_state import LuaStack


@dataclass(frozen=True)
class Options:
    """How host strings map to the runtime's byte strings."""
    encoding: str = "utf-8"
    errors: str = "surrogateescape"

    def decode(self, data: bytes) -> str:
        return data.decode(self.encoding, errors=self.errors)

    def encode(self, text) -> bytes:
        if isinstance(text, (bytes, bytearray)):
            return bytes(text)
        return text.encode(self.encoding, errors=self.errors)


DEFAULT_OPTIONS = Options()


def _dbg(*parts):
    if os.environ.get("LUACALL_DEBUG"):
        try:
            print("[DBG]", *parts, file=sys.stderr)
        except Exception:
            pass


def wrap_int(value: int, bits: int, signed: bool) -> int:
    """Narrow an integer to `bits`, the way a cast to a fixed-width type does."""
    value &= (1 << bits) - 1
    if signed and value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def to_float32(value: float) -> float:
    try:
        return struct.unpack("<f", struct.pack("<f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


@contextmanager
def stack_guard(state: LuaStack):
    """Restore the stack top if the body fails, so a failed conversion
    leaves no temporaries behind."""
    top = state.gettop()
    try:
        yield
    except BaseException:
        state.settop(top)
        raise


# ===================================================================
# Stack -> Host
# ===================================================================

def read_from_stack(state: LuaStack, t, index: int = -1, label: str = "",
                    opts: Options = DEFAULT_OPTIONS):
    """Convert the slot at `index` to the host value described by `t`.

    `t` is a descriptor or a Python annotation (see `as_type`). `label`
    names the call site in error messages, e.g. "returned by f()".
    The slot itself is left on the stack.
    """
    t = as_type(t)
    match t:
        case Basic():
            return _read_basic(state, index, label, opts)
        case Optional(t=inner):
            if state.type(index) == 'nil':
                return None
            return read_from_stack(state, inner, index, label, opts)
        case Int(bits=bits, signed=signed):
            return _read_int(state, t, bits, signed, index, label)
        case Float(bits=bits):
            return _read_float(state, t, bits, index, label)
        case Bool():
            return _read_bool(state, t, index, label)
        case String():
            return opts.decode(_read_bytes(state, index, label))
        case Buffer(capacity=cap):
            return _read_buffer(state, cap, index, label)[0]
        case FlaggedBuffer(capacity=cap):
            return _read_buffer(state, cap, index, label)
        case Nil():
            tag = classify(state, index)
            if tag != 'nil':
                raise TypeMismatch(tag, "nil", label)
            return None
        case List(t=elem):
            return _read_list(state, elem, index, label, opts)
        case Array(t=elem, capacity=cap):
            return _read_array(state, elem, cap, index, label, opts)
        case Dict(key=kt, value=vt):
            return _read_dict(state, kt, vt, index, label, opts)
    raise UnsupportedType(f"Unsupported Lua to Python type: {Printer().pformat(t)}")


def _read_basic(state, index, label, opts):
    tag = classify(state, index)
    match tag:
        case 'nil':
            return None
        case 'integer':
            return state.tointeger(index)
        case 'float':
            return state.tonumber(index)
        case 'boolean':
            return state.toboolean(index)
        case 'string':
            return opts.decode(state.tobytes(index))
    raise TypeMismatch(f"non-basic type {tag}", "a basic value", label)


def _read_int(state, t, bits, signed, index, label):
    tag = classify(state, index)
    match tag:
        case 'integer':
            value = state.tointeger(index)
        case 'float':
            number = state.tonumber(index)
            if not math.isfinite(number):
                raise TypeMismatch(f"non-finite float {number}", describe(t), label)
            # Truncates toward zero, like a C cast.
            value = int(number)
        case 'boolean':
            value = 1 if state.toboolean(index) else 0
        case _:
            raise TypeMismatch(tag, describe(t), label)
    return wrap_int(value, bits, signed)


def _read_float(state, t, bits, index, label):
    tag = classify(state, index)
    match tag:
        case 'integer':
            value = float(state.tointeger(index))
        case 'float':
            value = state.tonumber(index)
        case _:
            raise TypeMismatch(tag, describe(t), label)
    return to_float32(value) if bits == 32 else value


def _read_bool(state, t, index, label):
    tag = classify(state, index)
    match tag:
        case 'integer':
            return state.tointeger(index) != 0
        case 'boolean':
            return state.toboolean(index)
    raise TypeMismatch(tag, describe(t), label)


def _read_bytes(state, index, label) -> bytes:
    tag = classify(state, index)
    if tag != 'string':
        raise TypeMismatch(tag, "a string", label)
    return state.tobytes(index)


def _read_buffer(state, capacity, index, label):
    """Copy at most capacity - 1 bytes; the flag is False when bytes were dropped."""
    data = _read_bytes(state, index, label)
    fits = len(data) < capacity
    return FixedString(capacity, data[:capacity - 1]), fits


def _require_list(state, index, label):
    if not is_list(state, index):
        raise TypeMismatch(f"non-list {classify(state, index)}", "a list", label)


def _read_list(state, elem, index, label, opts):
    _require_list(state, index, label)
    index = state.absindex(index)
    length = state.rawlen(index)
    _dbg("read list", "len", length, label)
    result = []
    with stack_guard(state):
        for i in range(1, length + 1):
            state.rawgeti(index, i)
            result.append(read_from_stack(state, elem, -1, label, opts))
            state.pop(1)
    return result


def _read_array(state, elem, capacity, index, label, opts):
    _require_list(state, index, label)
    index = state.absindex(index)
    length = state.rawlen(index)
    _dbg("read array", "len", length, "capacity", capacity, label)
    result = FixedArray(capacity)
    with stack_guard(state):
        for i in range(1, length + 1):
            if i > capacity:
                raise CapacityExceeded("Array buffer overflow", label)
            state.rawgeti(index, i)
            result.slots[i - 1] = read_from_stack(state, elem, -1, label, opts)
            state.pop(1)
    result.length = length
    return result


def _check_key_type(kt):
    if kt is not None and not isinstance(as_type(kt), SCALAR_TYPES):
        raise UnsupportedType(f"dict keys must be basic types, not {Printer().pformat(as_type(kt))}")


def resolve_type(t):
    """Normalize `t` and every descriptor nested in it, checking dict key types."""
    t = as_type(t)
    match t:
        case Optional(t=inner):
            return Optional(resolve_type(inner))
        case List(t=elem):
            return List(None if elem is None else resolve_type(elem))
        case Array(t=elem, capacity=cap):
            return Array(None if elem is None else resolve_type(elem), cap)
        case Dict(key=kt, value=vt):
            _check_key_type(kt)
            return Dict(None if kt is None else resolve_type(kt),
                        None if vt is None else resolve_type(vt))
    return t


def _read_dict(state, kt, vt, index, label, opts):
    _check_key_type(kt)
    if not is_dict(state, index):
        raise TypeMismatch(f"non-dict {classify(state, index)}", "a dict", label)
    index = state.absindex(index)
    result = {}
    with stack_guard(state):
        state.pushnil()
        while state.next(index):
            # Entries holding nil are skipped, not stored as None.
            if state.type(-1) != 'nil':
                key = read_from_stack(state, kt, -2, label, opts)
                result[key] = read_from_stack(state, vt, -1, label, opts)
            state.pop(1)
    _dbg("read dict", "entries", len(result), label)
    return result


# ===================================================================
# Host -> Stack
# ===================================================================

def _mismatch(value, t, label):
    return TypeMismatch(type(value).__name__, describe(t), label)


def push_to_stack(state: LuaStack, value, t=None, label: str = "",
                  opts: Options = DEFAULT_OPTIONS) -> None:
    """Push `value` as a new slot on top of the stack.

    With `t` omitted the descriptor is inferred from the value; lists and
    dicts then infer each element in turn.
    """
    t = type_of(value) if t is None else as_type(t)
    match t:
        case Nil():
            if value is not None:
                raise _mismatch(value, t, label)
            state.pushnil()
        case Basic():
            _push_basic(state, value, t, label, opts)
        case Optional(t=inner):
            if value is None:
                state.pushnil()
            else:
                push_to_stack(state, value, inner, label, opts)
        case Int(bits=bits, signed=signed):
            if not isinstance(value, int):
                raise _mismatch(value, t, label)
            state.pushinteger(wrap_int(value, bits, signed))
        case Float(bits=bits):
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise _mismatch(value, t, label)
            state.pushnumber(to_float32(float(value)) if bits == 32 else float(value))
        case Bool():
            if not isinstance(value, int):
                raise _mismatch(value, t, label)
            state.pushboolean(bool(value))
        case String():
            if not isinstance(value, (str, bytes, bytearray)):
                raise _mismatch(value, t, label)
            state.pushstring(opts.encode(value))
        case Buffer():
            _push_buffer(state, value, t, label, opts)
        case FlaggedBuffer():
            # The flag only reports truncation on reads; the content is what travels.
            if not isinstance(value, tuple) or len(value) != 2:
                raise _mismatch(value, t, label)
            _push_buffer(state, value[0], t, label, opts)
        case List(t=elem):
            if not isinstance(value, (list, tuple)):
                raise _mismatch(value, t, label)
            _push_sequence(state, value, elem, label, opts)
        case Array(t=elem, capacity=cap):
            if not isinstance(value, FixedArray):
                raise _mismatch(value, t, label)
            if value.length < 0:
                raise CapacityExceeded(f"Array length {value.length} is negative", label)
            if value.length > cap or value.length > value.capacity:
                raise CapacityExceeded(f"Array length {value.length} exceeds capacity {min(cap, value.capacity)}", label)
            _push_sequence(state, value.values(), elem, label, opts)
        case Dict(key=kt, value=vt):
            if not isinstance(value, dict):
                raise _mismatch(value, t, label)
            _check_key_type(kt)
            _push_dict(state, value, kt, vt, label, opts)
        case _:
            raise UnsupportedType(f"Unsupported Python to Lua type: {Printer().pformat(t)}")


def _push_basic(state, value, t, label, opts):
    match value:
        case None:
            state.pushnil()
        case bool():
            state.pushboolean(value)
        case int():
            state.pushinteger(value)
        case float():
            state.pushnumber(value)
        case str() | bytes() | bytearray():
            state.pushstring(opts.encode(value))
        case _:
            raise _mismatch(value, t, label)


def _push_buffer(state, value, t, label, opts):
    match value:
        case FixedString(data=data):
            state.pushstring(data)
        case str() | bytes() | bytearray():
            state.pushstring(opts.encode(value))
        case _:
            raise _mismatch(value, t, label)


def _push_sequence(state, values, elem, label, opts):
    with stack_guard(state):
        state.createtable(len(values), 0)
        for i, v in enumerate(values, start=1):
            push_to_stack(state, v, elem, label, opts)
            state.rawseti(-2, i)


def _push_dict(state, mapping, kt, vt, label, opts):
    with stack_guard(state):
        state.createtable(0, len(mapping))
        for k, v in mapping.items():
            if k is None:
                raise NilKeyError(label)
            push_to_stack(state, k, kt, label, opts)
            push_to_stack(state, v, vt, label, opts)
            state.settable(-3)


__all__ = [
    "Options", "DEFAULT_OPTIONS", "read_from_stack", "push_to_stack",
    "wrap_int", "to_float32", "stack_guard", "resolve_type",
]
