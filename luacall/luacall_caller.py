"""
Calls named guest functions with typed arguments and typed results.

Every call goes through the same steps: resolve the global, push the
arguments left to right, run it under pcall, then convert the results.
Failures leave the stack exactly as it was before the call.
"""
import typing
from dataclasses import dataclass
from typing import Any, Literal, Optional

from luacall.luacall_datatypes import LuaCallError, UnresolvedFunction, GuestExecutionFailure
from luacall.luacall_convert import (
    Options, DEFAULT_OPTIONS, read_from_stack, push_to_stack, stack_guard, resolve_type, _dbg
)
from luacall.luacall_state import LuaStack


@dataclass
class Arg:
    """An argument pushed with an explicit descriptor instead of an inferred one."""
    value: Any
    t: Any


@dataclass
class CallResult:
    """The structured result of `safe_call`."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == 'success'

    def format_error(self) -> str:
        """Formats the error message, prefixed with the error kind."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_kind and not msg.startswith(f"{self.error_kind}:"):
            return f"{self.error_kind}: {msg}"
        return msg


# ===================================================================
# Call Steps
# ===================================================================

def _resolve(state: LuaStack, name: str) -> None:
    state.getglobal(name)
    if not state.iscallable(-1):
        state.pop(1)
        raise UnresolvedFunction(name)


def _push_args(state: LuaStack, name: str, args, opts: Options) -> None:
    for i, arg in enumerate(args, start=1):
        label = f"argument {i} of {name}"
        if isinstance(arg, Arg):
            push_to_stack(state, arg.value, arg.t, label, opts)
        else:
            push_to_stack(state, arg, None, label, opts)


def _error_message(state: LuaStack, opts: Options) -> str:
    data = state.tobytes(-1)
    if data is None:
        return f"(error object is a {state.type(-1)} value)"
    return opts.decode(data)


def _invoke(state: LuaStack, name: str, nargs: int, nresults: int, opts: Options) -> None:
    _dbg("pcall", name, "nargs", nargs, "nresults", nresults)
    if not state.pcall(nargs, nresults):
        message = _error_message(state, opts)
        state.pop(1)
        _dbg("pcall failed", name, message)
        raise GuestExecutionFailure(message)


# ===================================================================
# Call Shapes
# ===================================================================

def call_void(state: LuaStack, name: str, *args, opts: Options = DEFAULT_OPTIONS) -> None:
    """Call `name` and discard anything it returns."""
    with stack_guard(state):
        _resolve(state, name)
        _push_args(state, name, args, opts)
        _invoke(state, name, len(args), 0, opts)


def call(state: LuaStack, returns, name: str, *args, opts: Options = DEFAULT_OPTIONS):
    """Call `name` and convert its single result to `returns`."""
    returns = resolve_type(returns)
    with stack_guard(state):
        _resolve(state, name)
        _push_args(state, name, args, opts)
        _invoke(state, name, len(args), 1, opts)
        result = read_from_stack(state, returns, -1, f"returned by {name}()", opts)
        state.pop(1)
    return result


def call_multi(state: LuaStack, returns, name: str, *args, opts: Options = DEFAULT_OPTIONS) -> tuple:
    """Call `name` and convert its results to the descriptors in `returns`, in order.

    The results sit on the stack first-to-last, so result i of n is read at
    index -(n - i). All of them are popped together once every conversion
    has succeeded.
    """
    returns = tuple(returns)
    count = len(returns)
    if count < 2:
        raise ValueError(f"call_multi needs at least two return types, got {count}")
    returns = tuple(resolve_type(t) for t in returns)
    with stack_guard(state):
        _resolve(state, name)
        _push_args(state, name, args, opts)
        _invoke(state, name, len(args), count, opts)
        values = tuple(
            read_from_stack(state, t, -(count - i), f"returned by {name}() at position {i + 1}", opts)
            for i, t in enumerate(returns)
        )
        state.pop(count)
    return values


def call_function(state: LuaStack, name: str, *args, returns=None, opts: Options = DEFAULT_OPTIONS):
    """Pick the call shape from `returns`.

    None calls for no result, a tuple (or `tuple[...]` annotation) of two or
    more types for several results, anything else for a single result.
    """
    if typing.get_origin(returns) is tuple:
        returns = typing.get_args(returns)
    if returns is None:
        return call_void(state, name, *args, opts=opts)
    if isinstance(returns, (tuple, list)):
        if len(returns) == 0:
            return call_void(state, name, *args, opts=opts)
        if len(returns) == 1:
            return call(state, returns[0], name, *args, opts=opts)
        return call_multi(state, returns, name, *args, opts=opts)
    return call(state, returns, name, *args, opts=opts)


def safe_call(state: LuaStack, name: str, *args, returns=None, opts: Options = DEFAULT_OPTIONS) -> CallResult:
    """Like `call_function`, but reports failures as an error CallResult."""
    try:
        value = call_function(state, name, *args, returns=returns, opts=opts)
    except LuaCallError as e:
        return CallResult('error', error_message=str(e), error_kind=type(e).__name__)
    return CallResult('success', value=value)


__all__ = ["Arg", "CallResult", "call_void", "call", "call_multi", "call_function", "safe_call"]
