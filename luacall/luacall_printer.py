"""
A pretty-printer for guest values and type descriptors.
"""
import re

from luacall.luacall_datatypes import (
    Int, Float, Bool, String, Nil, Basic, Buffer, FlaggedBuffer,
    Optional, List, Array, Dict, FixedString, FixedArray
)
from luacall.luacall_state import LuaTable, LuaFunction

_IDENTIFIER = re.compile(rb"^[A-Za-z_][A-Za-z0-9_]*$")


class Printer:
    """Formats guest values in table-constructor syntax and descriptors in
    annotation syntax (the syntax `parse_type` reads back)."""

    def __init__(self, indent_width=2, width=72):
        self._indent_char = " " * indent_width
        self._width = width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, (list, tuple)): return self._pformat_sequence
        if isinstance(obj, dict): return self._pformat_mapping
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            type(None): self._pformat_nil,
            bool: self._pformat_bool,
            int: self._pformat_primitive,
            float: self._pformat_float,
            bytes: self._pformat_bytes,
            str: self._pformat_str,
            LuaTable: self._pformat_table,
            LuaFunction: self._pformat_function,
            FixedString: self._pformat_fixed_string,
            FixedArray: self._pformat_fixed_array,
            Int: self._pformat_int_type,
            Float: self._pformat_float_type,
            Bool: lambda o, l: "bool",
            String: lambda o, l: "string",
            Nil: lambda o, l: "nil",
            Basic: lambda o, l: "any",
            Buffer: lambda o, l: f"buffer[{o.capacity}]",
            FlaggedBuffer: lambda o, l: f"flagged_buffer[{o.capacity}]",
            Optional: lambda o, l: f"optional[{self._pformat_elem(o.t)}]",
            List: lambda o, l: f"list[{self._pformat_elem(o.t)}]",
            Array: lambda o, l: f"array[{self._pformat_elem(o.t)}, {o.capacity}]",
            Dict: lambda o, l: f"dict[{self._pformat_elem(o.key)}, {self._pformat_elem(o.value)}]",
        }

    # --- Scalars ---
    def _pformat_nil(self, obj, level):
        return 'nil'

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_float(self, obj, level):
        if obj != obj:
            return "nan"
        if obj in (float("inf"), float("-inf")):
            return "math.huge" if obj > 0 else "-math.huge"
        text = "%.14g" % obj
        # Keep a visible float marker so 1.0 is not mistaken for the integer 1.
        if re.fullmatch(r"-?\d+", text):
            text += ".0"
        return text

    def _pformat_bytes(self, obj, level):
        text = obj.decode("utf-8", errors="backslashreplace")
        return "'" + text.replace("\\", "\\\\").replace("'", "\\'").replace("\n", "\\n") + "'"

    def _pformat_str(self, obj, level):
        return self._pformat_bytes(obj.encode("utf-8", errors="surrogateescape"), level)

    def _pformat_function(self, obj, level):
        return f"function: {obj.name}"

    def _pformat_fixed_string(self, obj, level):
        return f"buffer[{obj.capacity}]({self._pformat_bytes(obj.data, level)})"

    def _pformat_fixed_array(self, obj, level):
        inner = self._pformat_sequence(obj.values(), level)
        return f"array[{obj.capacity}]({inner})"

    # --- Tables ---
    def _pformat_key(self, key, level):
        if isinstance(key, bytes) and _IDENTIFIER.match(key):
            return key.decode("ascii")
        return f"[{self.pformat(key, level)}]"

    def _table_parts(self, table, level, seen):
        parts = []
        n = table.length()
        for i in range(1, n + 1):
            parts.append(self._pformat_nested(table.rawget(i), level, seen))
        for key, value in table.items():
            if isinstance(key, int) and not isinstance(key, bool) and 1 <= key <= n:
                continue
            parts.append(f"{self._pformat_key(key, level)} = {self._pformat_nested(value, level, seen)}")
        return parts

    def _pformat_nested(self, value, level, seen):
        if isinstance(value, LuaTable):
            return self._pformat_table(value, level + 1, seen)
        return self.pformat(value, level + 1)

    def _pformat_table(self, obj, level, seen=None):
        seen = set() if seen is None else seen
        if id(obj) in seen:
            return "<cycle>"
        seen.add(id(obj))
        try:
            parts = self._table_parts(obj, level, seen)
        finally:
            seen.discard(id(obj))
        return self._pformat_block(parts, level)

    def _pformat_sequence(self, obj, level):
        return self._pformat_block([self.pformat(v, level + 1) for v in obj], level)

    def _pformat_mapping(self, obj, level):
        parts = [f"[{self.pformat(k, level)}] = {self.pformat(v, level + 1)}" for k, v in obj.items()]
        return self._pformat_block(parts, level)

    def _pformat_block(self, parts, level):
        if not parts:
            return "{}"
        flat = "{" + ", ".join(parts) + "}"
        if "\n" not in flat and len(flat) + len(self._indent_char) * level <= self._width:
            return flat
        outer_indent = self._indent_char * level
        inner_indent = self._indent_char * (level + 1)
        lines = [inner_indent + p + "," for p in parts]
        return "{\n" + "\n".join(lines) + f"\n{outer_indent}}}"

    # --- Descriptors ---
    def _pformat_elem(self, t):
        return "?" if t is None else self.pformat(t)

    def _pformat_int_type(self, obj, level):
        return f"{'int' if obj.signed else 'uint'}{obj.bits}"

    def _pformat_float_type(self, obj, level):
        return f"float{obj.bits}"


def describe(t) -> str:
    """The category phrase used in conversion errors ("an integer", "a list")."""
    match t:
        case Int():
            return "an integer"
        case Float():
            return "a float"
        case Bool():
            return "a bool"
        case String() | Buffer() | FlaggedBuffer():
            return "a string"
        case Nil():
            return "nil"
        case Basic():
            return "a basic value"
        case Optional(t=inner):
            return f"{describe(inner)} or nil"
        case List() | Array():
            return "a list"
        case Dict():
            return "a dict"
    return Printer().pformat(t)


__all__ = ["Printer", "describe"]
