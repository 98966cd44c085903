from luacall.luacall_datatypes import (
    LuaCallError, TypeMismatch, CapacityExceeded, UnresolvedFunction,
    GuestExecutionFailure, UnsupportedType, NilKeyError,
    Int, Float, Bool, String, Nil, Basic, Buffer, FlaggedBuffer,
    Optional, List, Array, Dict,
    INT8, INT16, INT32, INT64, UINT8, UINT16, UINT32, UINT64,
    INTEGER, FLOAT32, FLOAT64, NUMBER, BOOL, STRING, NIL, BASIC,
    FixedString, FixedArray, as_type, type_of,
)
from luacall.luacall_state import LuaStack, LuaState, LuaTable, LuaFunction, LuaError, MULTRET
from luacall.luacall_classify import classify, is_list, is_dict
from luacall.luacall_convert import Options, DEFAULT_OPTIONS, read_from_stack, push_to_stack, resolve_type
from luacall.luacall_caller import Arg, CallResult, call_void, call, call_multi, call_function, safe_call
from luacall.luacall_signatures import (
    parse_type, format_type, Signature, load_signatures, dump_signatures, TypeExpressionParser,
    BoundFunction, bind, Bindings,
)
from luacall.luacall_printer import Printer
