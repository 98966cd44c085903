import json
import typing

import pytest
import yaml

from luacall.luacall_datatypes import (
    INT8, INT32, INTEGER, UINT16, FLOAT32, NUMBER, BOOL, STRING, NIL, BASIC,
    Buffer, FlaggedBuffer, Optional, List, Array, Dict, TypeMismatch
)
from luacall.luacall_signatures import (
    parse_type, format_type, Signature, detect_format, load_signatures,
    dump_signatures, BoundFunction, bind, Bindings
)
from luacall.luacall_state import LuaState

SIGNATURES_YAML = """
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
"""


@pytest.fixture
def state():
    s = LuaState()

    @s.function
    def add(a, b):
        return a + b

    @s.function
    def split_name(full):
        first, _, last = full.partition(b" ")
        return first, (last or None)

    @s.function
    def reset():
        s["counter"] = 0

    return s


# --- Type expressions ---

@pytest.mark.parametrize(
    "text,expected",
    [
        ("int", INTEGER),
        ("int8", INT8),
        ("uint16", UINT16),
        ("float", NUMBER),
        ("float32", FLOAT32),
        ("boolean", BOOL),
        ("string", STRING),
        ("any", BASIC),
        ("nil", NIL),
        ("int?", Optional(INTEGER)),
        ("optional[list[int32]]", Optional(List(INT32))),
        ("list[ string? ]", List(Optional(STRING))),
        ("array[float, 4]", Array(NUMBER, 4)),
        ("dict[string, list[float]]", Dict(STRING, List(NUMBER))),
        ("buffer[16]", Buffer(16)),
        ("flagged_buffer[8]", FlaggedBuffer(8)),
    ],
)
def test_parse_type(text, expected):
    assert parse_type(text) == expected


@pytest.mark.parametrize(
    "text,message",
    [
        ("integerish", "unknown type integerish"),
        ("list[integerish]", "unknown type integerish"),
        ("integerish[int]", "unknown type integerish"),
        ("list", "list needs arguments in brackets"),
        ("array[int, x]", "array expects a size, got x"),
        ("array[int]", "array takes 2 argument(s), got 1"),
        ("dict[string, int, int]", "dict takes 2 argument(s), got 3"),
        ("list[4]", "expected a type, got size 4"),
    ],
)
def test_parse_type_rejects_bad_names_and_arguments(text, message):
    with pytest.raises(ValueError) as exc:
        parse_type(text)
    assert str(exc.value).startswith(f"invalid type {text!r}")
    assert message in str(exc.value)


@pytest.mark.parametrize("text", ["list[int", "int]", "int$", "", "dict[string,]", "?int"])
def test_parse_type_rejects_malformed_expressions(text):
    with pytest.raises(ValueError) as exc:
        parse_type(text)
    assert str(exc.value).startswith(f"invalid type {text!r}")


def test_parse_type_reports_position_of_unknown_name():
    with pytest.raises(ValueError) as exc:
        parse_type("list[widget]")
    assert "at position 5" in str(exc.value)


def test_parse_type_rejects_zero_capacity_buffer():
    with pytest.raises(ValueError):
        parse_type("buffer[0]")


def test_parse_type_passes_descriptors_and_annotations():
    assert parse_type(INT8) is INT8
    assert parse_type(list[int]) == List(INTEGER)


@pytest.mark.parametrize(
    "t",
    [INTEGER, UINT16, FLOAT32, BOOL, STRING, BASIC, Optional(List(INT32)),
     Array(STRING, 3), Dict(STRING, Optional(NUMBER)), Buffer(32), FlaggedBuffer(2)],
)
def test_format_type_reads_back(t):
    assert parse_type(format_type(t)) == t


def test_format_type():
    assert format_type(Dict(STRING, List(INTEGER))) == "dict[string, list[int64]]"
    assert format_type(int) == "int64"


# --- Signatures ---

def test_signature_from_mapping():
    sig = Signature.from_mapping("add", {"params": ["int", "int"], "returns": "int"})
    assert sig == Signature("add", (INTEGER, INTEGER), INTEGER)
    assert str(sig) == "add(int64, int64) -> int64"


def test_signature_multiple_returns():
    sig = Signature.from_mapping("split_name", {"params": ["string"], "returns": ["string", "string?"]})
    assert sig.returns == (STRING, Optional(STRING))
    assert str(sig) == "split_name(string) -> (string, optional[string])"


def test_signature_single_item_return_list():
    sig = Signature.from_mapping("f", {"returns": ["int"]})
    assert sig.returns == INTEGER


def test_signature_empty_spec_is_void():
    sig = Signature.from_mapping("reset", None)
    assert sig.params == ()
    assert sig.returns is None
    assert str(sig) == "reset() -> nil"


def test_signature_rejects_unknown_fields():
    with pytest.raises(ValueError) as exc:
        Signature.from_mapping("f", {"params": [], "result": "int"})
    assert "unknown fields: result" in str(exc.value)


def test_signature_rejects_non_mapping():
    with pytest.raises(ValueError):
        Signature.from_mapping("f", ["int"])


def test_signature_from_function():
    def add(a: int, b: int) -> int: ...
    def split(s: str) -> tuple[str, typing.Optional[str]]: ...
    def reset() -> None: ...
    def anything(x): ...

    assert Signature.from_function(add) == Signature("add", (INTEGER, INTEGER), INTEGER)
    assert Signature.from_function(split).returns == (STRING, Optional(STRING))
    assert Signature.from_function(reset).returns is None
    assert Signature.from_function(anything) == Signature("anything", (BASIC,), None)
    assert Signature.from_function(add, name="plus").name == "plus"


def test_signature_from_function_rejects_star_args():
    def f(*args: int) -> int: ...

    with pytest.raises(ValueError):
        Signature.from_function(f)


# --- Documents ---

@pytest.mark.parametrize(
    "path,hint,expected",
    [
        ("sigs.json", None, "json"),
        ("sigs.YAML", None, "yaml"),
        ("sigs.yml", None, "yaml"),
        (None, '  {"a": {}}', "json"),
        (None, "a: {}", "yaml"),
        ("sigs.txt", None, None),
    ],
)
def test_detect_format(path, hint, expected):
    assert detect_format(path, hint) == expected


def test_load_yaml_signatures():
    sigs = load_signatures(SIGNATURES_YAML)
    assert list(sigs) == ["add", "split_name", "reset"]
    assert sigs["add"].params == (INTEGER, INTEGER)
    assert sigs["split_name"].returns == (STRING, Optional(STRING))
    assert sigs["reset"].returns is None


def test_load_json_signatures():
    text = json.dumps({"scale": {"params": ["list[float]", "float"], "returns": "list[float]"}})
    sigs = load_signatures(text)
    assert sigs["scale"] == Signature("scale", (List(NUMBER), NUMBER), List(NUMBER))


def test_load_mislabeled_yaml_as_json():
    sigs = load_signatures("add:\n  params: [int, int]\n  returns: int\n", fmt="json")
    assert sigs["add"].returns == INTEGER


def test_load_empty_document():
    assert load_signatures("") == {}


def test_load_rejects_non_mapping_documents():
    with pytest.raises(ValueError):
        load_signatures("- add\n- sub\n")


def test_load_rejects_unknown_format():
    with pytest.raises(ValueError):
        load_signatures("a: {}", fmt="toml")


@pytest.mark.parametrize("fmt", ["yaml", "json"])
def test_dump_and_load(fmt):
    sigs = load_signatures(SIGNATURES_YAML)
    text = dump_signatures(sigs.values(), fmt=fmt)
    assert load_signatures(text, fmt=fmt) == sigs


def test_dump_yaml_is_readable():
    doc = yaml.safe_load(dump_signatures([Signature("f", (INT8,), Optional(STRING))]))
    assert doc == {"f": {"params": ["int8"], "returns": "optional[string]"}}


# --- Bound calls ---

def test_bind_signature(state):
    add = bind(state, Signature("add", (INT8, INT8), INT8))
    assert isinstance(add, BoundFunction)
    assert add(100, 100) == -56
    assert repr(add) == "<BoundFunction add(int8, int8) -> int8>"


def test_bind_stub(state):
    def split_name(full: str) -> tuple[str, typing.Optional[str]]: ...

    split = bind(state, split_name)
    assert split("Ada Lovelace") == ("Ada", "Lovelace")
    assert split("Plato") == ("Plato", None)


def test_bound_function_checks_arity(state):
    add = bind(state, Signature("add", (INTEGER, INTEGER), INTEGER))
    with pytest.raises(TypeError):
        add(1)


def test_bound_function_checks_argument_types(state):
    add = bind(state, Signature("add", (INTEGER, INTEGER), INTEGER))
    with pytest.raises(TypeMismatch) as exc:
        add(1, "2")
    assert "argument 2 of add" in str(exc.value)
    assert state.gettop() == 0


def test_bind_rejects_other_targets(state):
    with pytest.raises(TypeError):
        bind(state, 42)


def test_bindings_from_text(state):
    b = Bindings.from_text(state, SIGNATURES_YAML)
    assert "add" in b
    assert b.add(2, 3) == 5
    assert b["split_name"]("a b") == ("a", "b")
    assert b.reset() is None
    assert state["counter"] == 0
    with pytest.raises(AttributeError):
        b.missing


def test_bindings_from_file(state, tmp_path):
    path = tmp_path / "sigs.json"
    path.write_text(json.dumps({"add": {"params": ["int", "int"], "returns": "float"}}), encoding="utf-8")
    b = Bindings.from_file(state, path)
    assert b.add(1, 2) == 3.0
