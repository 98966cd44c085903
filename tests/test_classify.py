import pytest

from luacall.luacall_state import LuaState, LuaTable, to_guest
from luacall.luacall_classify import classify, is_list, is_dict


def push_guest(state, value):
    state.stack.append(to_guest(value))


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, "nil"),
        (3, "integer"),
        (3.0, "float"),
        (-0.5, "float"),
        (True, "boolean"),
        ("s", "string"),
        ([1], "table"),
        (lambda: None, "function"),
    ],
)
def test_classify_tags(value, expected):
    state = LuaState()
    push_guest(state, value)
    assert classify(state, -1) == expected


def test_empty_table_is_both_list_and_dict():
    state = LuaState()
    state.createtable()
    assert is_list(state, -1)
    assert is_dict(state, -1)


def test_contiguous_table_is_list():
    state = LuaState()
    push_guest(state, [1, 2, 3])
    assert is_list(state, -1)
    assert is_dict(state, -1)


def test_table_with_gap_beyond_length_is_not_a_list():
    state = LuaState()
    t = LuaTable()
    t.rawset(1, b"a")
    t.rawset(3, b"c")
    state.stack.append(t)
    # Largest key 3, reported length 1.
    assert state.rawlen(-1) == 1
    assert not is_list(state, -1)
    assert is_dict(state, -1)


def test_hole_is_tolerated_when_length_matches_largest_key():
    state = LuaState()
    push_guest(state, [1, None, 3])
    assert state.rawlen(-1) == 3
    assert is_list(state, -1)


def test_string_keyed_table_has_length_zero_and_counts_as_list():
    state = LuaState()
    push_guest(state, {"a": 1})
    # The length shortcut runs before any key is inspected.
    assert state.rawlen(-1) == 0
    assert is_list(state, -1)
    assert is_dict(state, -1)


def test_mixed_keys_are_not_a_list():
    state = LuaState()
    t = LuaTable.from_list([1, 2])
    t["name"] = "x"
    state.stack.append(t)
    assert not is_list(state, -1)


def test_zero_key_is_not_a_list():
    state = LuaState()
    t = LuaTable()
    t.rawset(0, 1)
    t.rawset(1, 1)
    state.stack.append(t)
    assert not is_list(state, -1)


def test_non_tables_are_neither():
    state = LuaState()
    push_guest(state, "abc")
    assert not is_list(state, -1)
    assert not is_dict(state, -1)


def test_shape_checks_leave_stack_balanced():
    state = LuaState()
    mixed = LuaTable.from_list([1, 2])
    mixed["k"] = 1
    state.stack.append(mixed)
    push_guest(state, [1, 2, 3])
    push_guest(state, 99)
    assert not is_list(state, -3)
    assert is_list(state, -2)
    assert is_dict(state, -3)
    assert state.gettop() == 3
    assert state.tointeger(-1) == 99
