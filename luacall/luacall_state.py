"""
The stack handle the converters operate on, and an in-memory Lua runtime.

`LuaStack` is the abstract handle: every conversion receives one explicitly
and touches the guest only through these methods, which follow the Lua C API
(`lua_gettop`, `lua_next`, `lua_rawgeti`, `lua_pcall`, ...).

`LuaState` implements the handle with plain Python objects. Guest values are
None (nil), bool, int (64-bit), float, bytes (strings), LuaTable and
LuaFunction. Guest functions are Python callables registered as globals.
"""

import math
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

MULTRET = -1

_INT_BITS = 64
_INT_MASK = (1 << _INT_BITS) - 1
_INT_SIGN = 1 << (_INT_BITS - 1)


def wrap_integer(value: int) -> int:
    """Wrap a Python int to the runtime's 64-bit two's complement integer."""
    value &= _INT_MASK
    if value & _INT_SIGN:
        value -= 1 << _INT_BITS
    return value


class LuaError(Exception):
    """Raised inside a guest function to signal a guest-side error.

    `value` is the error object, usually a message string.
    """
    def __init__(self, value: Any = None):
        super().__init__(value)
        self.value = value


# =================================================================
# Guest Values
# =================================================================

class LuaFunction:
    """A guest function backed by a Python callable."""
    def __init__(self, fn: Callable, name: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", None) or "?"

    def __call__(self, *args):
        return self.fn(*args)

    def __repr__(self) -> str:
        return f"<LuaFunction {self.name}>"


class LuaTable:
    """A guest table.

    Keys follow the runtime's rules: float keys with an integral value are
    normalized to integers, nil and NaN keys are rejected, and storing nil
    removes the entry. `narr` is the array-part size hint given at creation,
    which the length operator uses the way the runtime does.
    """

    def __init__(self, narr: int = 0, nrec: int = 0):
        self.narr = max(int(narr), 0)
        # normalized key -> (key, value)
        self._entries: Dict[Any, Tuple[Any, Any]] = {}
        self._order: Optional[List[Any]] = None
        self._pos: Dict[Any, int] = {}

    @classmethod
    def from_list(cls, items) -> 'LuaTable':
        """Build a table like the constructor `{a, b, nil, c}` would."""
        items = list(items)
        t = cls(narr=len(items))
        for i, v in enumerate(items, start=1):
            t.rawset(i, to_guest(v))
        return t

    @classmethod
    def from_dict(cls, mapping) -> 'LuaTable':
        t = cls(nrec=len(mapping))
        for k, v in mapping.items():
            t.rawset(to_guest(k), to_guest(v))
        return t

    @staticmethod
    def _normalize(key):
        if key is None:
            raise LuaError(b"table index is nil")
        if isinstance(key, bool):
            # True == 1 in Python; keep booleans apart from integer keys.
            return ("boolean", key)
        if isinstance(key, float):
            if math.isnan(key):
                raise LuaError(b"table index is NaN")
            if key.is_integer():
                return int(key)
        return key

    def rawget(self, key):
        try:
            nkey = self._normalize(key)
        except LuaError:
            return None
        entry = self._entries.get(nkey)
        return entry[1] if entry is not None else None

    def rawset(self, key, value):
        nkey = self._normalize(key)
        if isinstance(key, float) and isinstance(nkey, int):
            key = nkey
        if value is None:
            if self._entries.pop(nkey, None) is not None:
                self._order = None
            return
        if nkey not in self._entries:
            self._order = None
        self._entries[nkey] = (key, value)

    def next(self, key) -> Optional[Tuple[Any, Any]]:
        """Return the pair following `key` in traversal order, or None at the end."""
        if self._order is None:
            self._order = list(self._entries)
            self._pos = {k: i for i, k in enumerate(self._order)}
        if key is None:
            idx = 0
        else:
            nkey = self._normalize(key)
            if nkey not in self._pos:
                raise LuaError(b"invalid key to 'next'")
            idx = self._pos[nkey] + 1
        if idx >= len(self._order):
            return None
        return self._entries[self._order[idx]]

    def length(self) -> int:
        """The border the length operator reports."""
        j = self.narr
        if j > 0 and self.rawget(j) is None:
            # A border exists inside the array part.
            i = 0
            while j - i > 1:
                m = (i + j) // 2
                if self.rawget(m) is None:
                    j = m
                else:
                    i = m
            return i
        i = j
        j = i + 1
        while self.rawget(j) is not None:
            i = j
            j *= 2
        while j - i > 1:
            m = (i + j) // 2
            if self.rawget(m) is None:
                j = m
            else:
                i = m
        return i

    def items(self):
        return [entry for entry in self._entries.values()]

    def __len__(self) -> int:
        return self.length()

    def __getitem__(self, key):
        if isinstance(key, str):
            key = key.encode("utf-8")
        return self.rawget(key)

    def __setitem__(self, key, value):
        self.rawset(to_guest(key), to_guest(value))

    def __contains__(self, key) -> bool:
        return self[key] is not None

    def __repr__(self) -> str:
        from luacall.luacall_printer import Printer
        return Printer().pformat(self)


def to_guest(value, encoding: str = "utf-8"):
    """Convert a plain Python value into a guest value (deep, value semantics)."""
    match value:
        case None | bool() | float() | bytes() | LuaTable() | LuaFunction():
            return value
        case int():
            return wrap_integer(value)
        case str():
            return value.encode(encoding)
        case bytearray():
            return bytes(value)
        case list() | tuple():
            return LuaTable.from_list(value)
        case dict():
            return LuaTable.from_dict(value)
        case _ if callable(value):
            return LuaFunction(value)
    raise TypeError(f"cannot convert {type(value).__name__} to a Lua value")


def tag_of(value) -> str:
    """The runtime's raw type name for a guest value."""
    match value:
        case None:
            return "nil"
        case bool():
            return "boolean"
        case int() | float():
            return "number"
        case bytes():
            return "string"
        case LuaTable():
            return "table"
        case LuaFunction():
            return "function"
    return "userdata"


# =================================================================
# The Stack Handle
# =================================================================

class LuaStack(ABC):
    """The handle a converter or call uses to reach one guest runtime.

    Indices follow the runtime's convention: positive indices are absolute
    (1 is the bottom), negative indices count down from the top (-1 is the
    top). One handle must only be driven by one thread at a time.
    """

    @abstractmethod
    def gettop(self) -> int: raise NotImplementedError
    @abstractmethod
    def settop(self, index: int) -> None: raise NotImplementedError
    @abstractmethod
    def absindex(self, index: int) -> int: raise NotImplementedError
    @abstractmethod
    def type(self, index: int) -> str: raise NotImplementedError
    @abstractmethod
    def isinteger(self, index: int) -> bool: raise NotImplementedError
    @abstractmethod
    def iscallable(self, index: int) -> bool: raise NotImplementedError
    @abstractmethod
    def tointeger(self, index: int) -> int: raise NotImplementedError
    @abstractmethod
    def tonumber(self, index: int) -> float: raise NotImplementedError
    @abstractmethod
    def toboolean(self, index: int) -> bool: raise NotImplementedError
    @abstractmethod
    def tobytes(self, index: int) -> Optional[bytes]: raise NotImplementedError
    @abstractmethod
    def rawlen(self, index: int) -> int: raise NotImplementedError
    @abstractmethod
    def next(self, index: int) -> bool: raise NotImplementedError
    @abstractmethod
    def rawgeti(self, index: int, n: int) -> str: raise NotImplementedError
    @abstractmethod
    def rawseti(self, index: int, n: int) -> None: raise NotImplementedError
    @abstractmethod
    def settable(self, index: int) -> None: raise NotImplementedError
    @abstractmethod
    def createtable(self, narr: int = 0, nrec: int = 0) -> None: raise NotImplementedError
    @abstractmethod
    def pushnil(self) -> None: raise NotImplementedError
    @abstractmethod
    def pushinteger(self, value: int) -> None: raise NotImplementedError
    @abstractmethod
    def pushnumber(self, value: float) -> None: raise NotImplementedError
    @abstractmethod
    def pushboolean(self, value: bool) -> None: raise NotImplementedError
    @abstractmethod
    def pushstring(self, value: bytes) -> None: raise NotImplementedError
    @abstractmethod
    def pushvalue(self, index: int) -> None: raise NotImplementedError
    @abstractmethod
    def getglobal(self, name: str) -> str: raise NotImplementedError
    @abstractmethod
    def pcall(self, nargs: int, nresults: int) -> bool: raise NotImplementedError

    def pop(self, n: int = 1) -> None:
        self.settop(-n - 1)


class LuaState(LuaStack):
    """An in-memory guest runtime: a value stack plus a global table.

    Besides the stack API it behaves like a mapping over its globals, so a
    host can install guest functions and values directly:

        state = LuaState()
        state["greeting"] = "hello"

        @state.function
        def add(a, b):
            return a + b
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self.stack: List[Any] = []
        self.globals = LuaTable()

    # --- Globals ---
    def __getitem__(self, name: str):
        return self.globals.rawget(name.encode(self.encoding))

    def __setitem__(self, name: str, value):
        self.globals.rawset(name.encode(self.encoding), to_guest(value, self.encoding))

    def __delitem__(self, name: str):
        self.globals.rawset(name.encode(self.encoding), None)

    def __contains__(self, name: str) -> bool:
        return self[name] is not None

    def register(self, name: str, fn: Callable) -> LuaFunction:
        func = fn if isinstance(fn, LuaFunction) else LuaFunction(fn, name)
        self[name] = func
        return func

    def function(self, fn: Optional[Callable] = None, *, name: Optional[str] = None):
        """Decorator registering a Python callable as a global guest function."""
        def decorate(f):
            self.register(name or f.__name__, f)
            return f
        return decorate(fn) if fn is not None else decorate

    # --- Addressing ---
    def gettop(self) -> int:
        return len(self.stack)

    def absindex(self, index: int) -> int:
        if index < 0:
            return len(self.stack) + 1 + index
        return index

    def _slot(self, index: int) -> int:
        pos = self.absindex(index)
        if pos < 1 or pos > len(self.stack):
            raise IndexError(f"stack index {index} out of range (top is {len(self.stack)})")
        return pos - 1

    def _get(self, index: int):
        return self.stack[self._slot(index)]

    def _table(self, index: int) -> LuaTable:
        value = self._get(index)
        if not isinstance(value, LuaTable):
            raise TypeError(f"table expected at stack index {index}, got {tag_of(value)}")
        return value

    def settop(self, index: int) -> None:
        if index >= 0:
            if index > len(self.stack):
                self.stack.extend([None] * (index - len(self.stack)))
            else:
                del self.stack[index:]
            return
        new_top = len(self.stack) + 1 + index
        if new_top < 0:
            raise IndexError(f"cannot set top to {index} (top is {len(self.stack)})")
        del self.stack[new_top:]

    # --- Access ---
    def type(self, index: int) -> str:
        return tag_of(self._get(index))

    def isinteger(self, index: int) -> bool:
        value = self._get(index)
        return isinstance(value, int) and not isinstance(value, bool)

    def iscallable(self, index: int) -> bool:
        return isinstance(self._get(index), LuaFunction)

    def tointeger(self, index: int) -> int:
        value = self._get(index)
        if isinstance(value, bool):
            return 0
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return wrap_integer(int(value))
        return 0

    def tonumber(self, index: int) -> float:
        value = self._get(index)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        return 0.0

    def toboolean(self, index: int) -> bool:
        value = self._get(index)
        return not (value is None or value is False)

    def tobytes(self, index: int) -> Optional[bytes]:
        value = self._get(index)
        match value:
            case bytes():
                return value
            case bool():
                return None
            case int():
                return str(value).encode("ascii")
            case float():
                return ("%.14g" % value).encode("ascii")
        return None

    def rawlen(self, index: int) -> int:
        value = self._get(index)
        if isinstance(value, bytes):
            return len(value)
        if isinstance(value, LuaTable):
            return value.length()
        return 0

    # --- Tables ---
    def next(self, index: int) -> bool:
        table = self._table(index)
        key = self.stack.pop()
        pair = table.next(key)
        if pair is None:
            return False
        self.stack.extend(pair)
        return True

    def rawgeti(self, index: int, n: int) -> str:
        value = self._table(index).rawget(n)
        self.stack.append(value)
        return tag_of(value)

    def rawseti(self, index: int, n: int) -> None:
        table = self._table(index)
        table.rawset(n, self.stack.pop())

    def settable(self, index: int) -> None:
        table = self._table(index)
        value = self.stack.pop()
        key = self.stack.pop()
        table.rawset(key, value)

    def createtable(self, narr: int = 0, nrec: int = 0) -> None:
        self.stack.append(LuaTable(narr, nrec))

    # --- Push ---
    def pushnil(self) -> None:
        self.stack.append(None)

    def pushinteger(self, value: int) -> None:
        self.stack.append(wrap_integer(int(value)))

    def pushnumber(self, value: float) -> None:
        self.stack.append(float(value))

    def pushboolean(self, value: bool) -> None:
        self.stack.append(bool(value))

    def pushstring(self, value) -> None:
        if isinstance(value, str):
            value = value.encode(self.encoding)
        self.stack.append(bytes(value))

    def pushvalue(self, index: int) -> None:
        self.stack.append(self._get(index))

    # --- Calls ---
    def getglobal(self, name: str) -> str:
        value = self.globals.rawget(name.encode(self.encoding))
        self.stack.append(value)
        return tag_of(value)

    def pcall(self, nargs: int, nresults: int) -> bool:
        base = self._slot(-nargs - 1)
        func = self.stack[base]
        args = self.stack[base + 1:]
        del self.stack[base:]
        if not isinstance(func, LuaFunction):
            self.stack.append(f"attempt to call a {tag_of(func)} value".encode(self.encoding))
            return False
        try:
            out = func(*args)
            if out is None:
                results = []
            elif isinstance(out, tuple):
                results = [to_guest(v, self.encoding) for v in out]
            else:
                results = [to_guest(out, self.encoding)]
        except LuaError as e:
            self.stack.append(to_guest(e.value, self.encoding))
            return False
        except Exception as e:
            # pcall traps every error raised by guest code.
            self.stack.append(f"{type(e).__name__}: {e}".encode(self.encoding))
            return False
        if nresults != MULTRET:
            results = (results + [None] * nresults)[:nresults]
        self.stack.extend(results)
        return True

    def dump(self) -> str:
        """Render the stack, bottom first, for debugging."""
        from luacall.luacall_printer import Printer
        pf = Printer().pformat
        top = len(self.stack)
        lines = [f"[{i}|{i - top - 1}] {pf(v)}" for i, v in enumerate(self.stack, start=1)]
        return "\n".join(lines) if lines else "<empty stack>"


__all__ = [
    "LuaStack", "LuaState", "LuaTable", "LuaFunction", "LuaError",
    "MULTRET", "to_guest", "tag_of", "wrap_integer",
]
