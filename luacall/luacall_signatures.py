"""
Declared signatures for guest functions.

A signature file lists guest functions with the types of their parameters and
results, so a host can call them without spelling descriptors at each call
site:

    add:
      params: [int, int]
      returns: int
    split_name:
      params: [string]
      returns:
        - string
        - optional[string]
    reset:
      params: []
      returns: null

Types use the annotation syntax the Printer emits: scalars (`int`, `uint8`,
`float32`, `string`, `any`, ...), `optional[T]` or `T?`, `list[T]`,
`array[T, N]`, `dict[K, V]`, `buffer[N]` and `flagged_buffer[N]`.
"""
from __future__ import annotations

import inspect
import json
import typing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional as Opt, Tuple

import yaml
from koine import Parser

from luacall.luacall_datatypes import (
    INT8, INT16, INT32, INT64, UINT8, UINT16, UINT32, UINT64, INTEGER,
    FLOAT32, FLOAT64, NUMBER, BOOL, STRING, NIL, BASIC,
    Buffer, FlaggedBuffer, Optional, List, Array, Dict as DictType,
    as_type
)
from luacall.luacall_caller import Arg, call_function
from luacall.luacall_convert import Options, DEFAULT_OPTIONS
from luacall.luacall_printer import Printer
from luacall.luacall_state import LuaStack


# --------------------------
# Type expressions
# --------------------------

_SCALARS = {
    "int": INTEGER, "integer": INTEGER,
    "int8": INT8, "int16": INT16, "int32": INT32, "int64": INT64,
    "uint8": UINT8, "uint16": UINT16, "uint32": UINT32, "uint64": UINT64,
    "float": NUMBER, "number": NUMBER, "float32": FLOAT32, "float64": FLOAT64,
    "bool": BOOL, "boolean": BOOL,
    "str": STRING, "string": STRING,
    "any": BASIC, "basic": BASIC,
    "nil": NIL,
}

# generic name -> kinds of its bracketed arguments
_GENERICS = {
    "optional": ("type",),
    "list": ("type",),
    "array": ("type", "size"),
    "dict": ("type", "type"),
    "buffer": ("size",),
    "flagged_buffer": ("size",),
}

_GRAMMAR_PATH = Path(__file__).parent / "grammar" / "luacall_types.yaml"


class TypeExpressionParser:
    """Parses type expressions with the koine grammar in grammar/luacall_types.yaml
    and turns the resulting AST into descriptors."""

    _parser = None

    def __init__(self):
        if TypeExpressionParser._parser is None:
            TypeExpressionParser._parser = Parser.from_file(str(_GRAMMAR_PATH))
        self.parser = TypeExpressionParser._parser

    def parse(self, text: str):
        try:
            parse_out = self.parser.parse(text)
        except Exception as e:
            raise ValueError(f"invalid type {text!r}: {e}") from e
        if isinstance(parse_out, dict) and 'status' in parse_out:
            if parse_out.get('status') != 'success':
                node = parse_out.get('error_node') or {}
                base = parse_out.get('error_message') or "parse failed"
                self._fail(text, base, node)
            ast_node = parse_out.get('ast')
        else:
            ast_node = parse_out
        if ast_node is None:
            self._fail(text, "empty type expression", {})
        return self._transform(text, ast_node)

    @staticmethod
    def _fail(text: str, msg: str, node):
        col = node.get('col') if isinstance(node, dict) else None
        if col is not None:
            raise ValueError(f"invalid type {text!r} at position {col - 1}: {msg}")
        raise ValueError(f"invalid type {text!r}: {msg}")

    def _children(self, node) -> list:
        """Child nodes in order, with nested sequence results flattened."""
        out = []
        pending = node.get('children') or []
        if isinstance(pending, dict):
            pending = [pending]
        for child in pending:
            if isinstance(child, list):
                out.extend(self._children({'children': child}))
            elif isinstance(child, dict) and 'tag' in child:
                out.append(child)
            elif isinstance(child, dict):
                out.extend(self._children(child))
        return out

    def _transform(self, text: str, node):
        match node.get('tag'):
            case 'type_expr':
                return self._transform(text, self._children(node)[0])
            case 'type':
                base, *marks = self._children(node)
                t = self._transform(text, base)
                for mark in marks:
                    if mark.get('tag') == 'optional_mark':
                        t = Optional(t)
                return t
            case 'name':
                name = node['text']
                if name in _SCALARS:
                    return _SCALARS[name]
                if name in _GENERICS:
                    self._fail(text, f"{name} needs arguments in brackets", node)
                self._fail(text, f"unknown type {name}", node)
            case 'generic':
                return self._generic(text, node)
            case 'size':
                self._fail(text, f"expected a type, got size {self._size(node)}", node)
        self._fail(text, f"unexpected {node.get('tag')}", node)

    @staticmethod
    def _size(node) -> int:
        value = node.get('value')
        return int(value if value is not None else node['text'])

    def _generic(self, text: str, node):
        name_node, *args = self._children(node)
        name = name_node['text']
        if name not in _GENERICS:
            self._fail(text, f"unknown type {name}", name_node)
        kinds = _GENERICS[name]
        if len(args) != len(kinds):
            self._fail(text, f"{name} takes {len(kinds)} argument(s), got {len(args)}", name_node)
        values = []
        for kind, arg in zip(kinds, args):
            if kind == 'size':
                if arg.get('tag') != 'size':
                    self._fail(text, f"{name} expects a size, got {arg.get('text')}", arg)
                values.append(self._size(arg))
            else:
                values.append(self._transform(text, arg))
        match name:
            case "optional":
                return Optional(*values)
            case "list":
                return List(*values)
            case "array":
                return Array(*values)
            case "dict":
                return DictType(*values)
            case "buffer":
                return Buffer(*values)
            case "flagged_buffer":
                return FlaggedBuffer(*values)


def parse_type(text):
    """Parse a type expression such as "optional[list[int32]]" into a descriptor.

    Descriptors and Python annotations are accepted too and pass through `as_type`.
    """
    if not isinstance(text, str):
        return as_type(text)
    return TypeExpressionParser().parse(text)


def format_type(t) -> str:
    return Printer().pformat(as_type(t))


# --------------------------
# Signatures
# --------------------------

def _parse_returns(returns):
    if returns is None:
        return None
    if isinstance(returns, (list, tuple)):
        parsed = tuple(parse_type(r) for r in returns)
        if len(parsed) == 0:
            return None
        if len(parsed) == 1:
            return parsed[0]
        return parsed
    return parse_type(returns)


@dataclass(frozen=True)
class Signature:
    """Parameter and result types of one guest function.

    `returns` is None for a void call, a descriptor for a single result, or
    a tuple of descriptors for several results.
    """
    name: str
    params: Tuple[Any, ...] = ()
    returns: Any = None

    @classmethod
    def from_mapping(cls, name: str, entry) -> 'Signature':
        entry = entry or {}
        if not isinstance(entry, dict):
            raise ValueError(f"signature for {name!r} must be a mapping, not {type(entry).__name__}")
        unknown = set(entry) - {"params", "returns"}
        if unknown:
            raise ValueError(f"signature for {name!r} has unknown fields: {', '.join(sorted(unknown))}")
        params = tuple(parse_type(p) for p in (entry.get("params") or []))
        return cls(name, params, _parse_returns(entry.get("returns")))

    @classmethod
    def from_function(cls, fn, name: Opt[str] = None) -> 'Signature':
        """Build a signature from a Python stub's annotations.

        Unannotated parameters take any basic value; a missing or None return
        annotation means the call returns nothing.
        """
        hints = typing.get_type_hints(fn)
        params = []
        for pname, param in inspect.signature(fn).parameters.items():
            if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD, param.KEYWORD_ONLY):
                raise ValueError(f"{fn.__name__}: only positional parameters can be passed to Lua")
            params.append(as_type(hints[pname]) if pname in hints else BASIC)
        returns = hints.get("return", None)
        if returns is None or returns is type(None):
            parsed = None
        elif typing.get_origin(returns) is tuple:
            parsed = _parse_returns([as_type(r) for r in typing.get_args(returns)])
        else:
            parsed = as_type(returns)
        return cls(name or fn.__name__, tuple(params), parsed)

    def to_mapping(self) -> dict:
        if self.returns is None:
            returns = None
        elif isinstance(self.returns, tuple):
            returns = [format_type(r) for r in self.returns]
        else:
            returns = format_type(self.returns)
        return {"params": [format_type(p) for p in self.params], "returns": returns}

    def __str__(self) -> str:
        params = ", ".join(format_type(p) for p in self.params)
        mapping = self.to_mapping()
        returns = mapping["returns"]
        if returns is None:
            returns = "nil"
        elif isinstance(returns, list):
            returns = f"({', '.join(returns)})"
        return f"{self.name}({params}) -> {returns}"


# --------------------------
# Signature files
# --------------------------

def detect_format(path: Opt[str] = None, data_hint: Opt[str] = None) -> Opt[str]:
    """Returns 'json' or 'yaml' from a file suffix, else from the text itself."""
    suffix = Path(path).suffix.lower() if path else ""
    if suffix == ".json":
        return 'json'
    if suffix in (".yaml", ".yml"):
        return 'yaml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        return 'yaml'
    return None


def load_signatures(text: str, *, fmt: Opt[str] = None) -> Dict[str, Signature]:
    """Parse a signature document (YAML or JSON) into Signatures keyed by name."""
    f = fmt or detect_format(data_hint=text)
    if f == 'json':
        try:
            doc = json.loads(text)
        except ValueError:
            # Mislabeled YAML still loads, YAML being a superset of JSON.
            doc = yaml.safe_load(text)
    elif f == 'yaml':
        doc = yaml.safe_load(text)
    else:
        raise ValueError(f"Unsupported signature format: {fmt!r}")
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ValueError("a signature document must be a mapping of function names")
    return {str(name): Signature.from_mapping(str(name), entry) for name, entry in doc.items()}


def dump_signatures(signatures, *, fmt: str = 'yaml') -> str:
    doc = {s.name: s.to_mapping() for s in signatures}
    if fmt == 'json':
        return json.dumps(doc, indent=2)
    if fmt == 'yaml':
        return yaml.safe_dump(doc, sort_keys=False)
    raise ValueError(f"Unsupported signature format: {fmt!r}")


# --------------------------
# Bound calls
# --------------------------

class BoundFunction:
    """A guest function called through its declared signature."""

    def __init__(self, state: LuaStack, signature: Signature, opts: Options = DEFAULT_OPTIONS):
        self.state = state
        self.signature = signature
        self.opts = opts

    def __call__(self, *args):
        sig = self.signature
        if len(args) != len(sig.params):
            raise TypeError(f"{sig.name}() takes {len(sig.params)} arguments but {len(args)} were given")
        typed = [Arg(value, t) for value, t in zip(args, sig.params)]
        return call_function(self.state, sig.name, *typed, returns=sig.returns, opts=self.opts)

    def __repr__(self) -> str:
        return f"<BoundFunction {self.signature}>"


def bind(state: LuaStack, target, opts: Options = DEFAULT_OPTIONS) -> BoundFunction:
    """Bind a Signature, or a Python stub whose annotations describe one."""
    if isinstance(target, Signature):
        return BoundFunction(state, target, opts)
    if callable(target):
        return BoundFunction(state, Signature.from_function(target), opts)
    raise TypeError(f"cannot bind {type(target).__name__}; expected a Signature or a function stub")


@dataclass
class Bindings:
    """All functions of a signature document bound against one state.

    Functions are reachable as items or attributes: `b["add"](1, 2)` or `b.add(1, 2)`.
    """
    state: LuaStack
    functions: Dict[str, BoundFunction] = field(default_factory=dict)

    @classmethod
    def from_text(cls, state: LuaStack, text: str, *, fmt: Opt[str] = None,
                  opts: Options = DEFAULT_OPTIONS) -> 'Bindings':
        sigs = load_signatures(text, fmt=fmt)
        return cls(state, {name: BoundFunction(state, sig, opts) for name, sig in sigs.items()})

    @classmethod
    def from_file(cls, state: LuaStack, path, *, opts: Options = DEFAULT_OPTIONS) -> 'Bindings':
        p = Path(path)
        text = p.read_text(encoding="utf-8")
        return cls.from_text(state, text, fmt=detect_format(str(p), text), opts=opts)

    def __getitem__(self, name: str) -> BoundFunction:
        return self.functions[name]

    def __contains__(self, name: str) -> bool:
        return name in self.functions

    def __getattr__(self, name: str):
        functions = self.__dict__.get("functions") or {}
        if name in functions:
            return functions[name]
        raise AttributeError(name)


__all__ = [
    "parse_type", "TypeExpressionParser", "format_type", "Signature", "detect_format", "load_signatures",
    "dump_signatures", "BoundFunction", "bind", "Bindings",
]
