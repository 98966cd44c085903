"""
Classifies stack slots: the normalized type tag, and the list/dict shape of tables.
"""
from typing import Literal

from luacall.luacall_state import LuaStack

TypeTag = Literal['nil', 'integer', 'float', 'boolean', 'string', 'table', 'function', 'userdata']

BASIC_TAGS = ('nil', 'integer', 'float', 'boolean', 'string')


def classify(state: LuaStack, index: int) -> TypeTag:
    """The slot's runtime tag, with numbers split into 'integer' and 'float'
    by the runtime's own integer test."""
    tag = state.type(index)
    if tag == 'number':
        return 'integer' if state.isinteger(index) else 'float'
    return tag


def is_list(state: LuaStack, index: int) -> bool:
    """True when every key is a positive integer and the largest key equals
    the length the runtime reports. Holes are tolerated as long as they do
    not move the length away from the largest key; an empty table is a list.
    """
    index = state.absindex(index)
    if state.type(index) != 'table':
        return False

    length = state.rawlen(index)
    if length == 0:
        return True

    max_key = 0
    state.pushnil()
    while state.next(index):
        if not state.isinteger(-2):
            state.pop(2)
            return False
        key = state.tointeger(-2)
        if key < 1:
            state.pop(2)
            return False
        if key > max_key:
            max_key = key
        state.pop(1)
    return max_key == length


def is_dict(state: LuaStack, index: int) -> bool:
    """True when the slot is a table none of whose keys is nil."""
    index = state.absindex(index)
    if state.type(index) != 'table':
        return False

    state.pushnil()
    while state.next(index):
        if state.type(-2) == 'nil':
            state.pop(2)
            return False
        state.pop(1)
    return True


__all__ = ["TypeTag", "BASIC_TAGS", "classify", "is_list", "is_dict"]
