"""
Defines the core data types for the Rexa language runtime.

This module provides the value model (scalars and stem arrays), the
immutable statement and expression nodes produced by the parser, and the
records shared by the resolver, dispatcher and module loader.
"""
import inspect
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from rexa.rexa_errors import ParseError, TypeCoercionError


# =================================================================
# Values
# =================================================================

class _Undefined:
    """Sentinel returned by environment reads of unbound names."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __str__(self):
        return ""

    def __repr__(self):
        return "UNDEFINED"


UNDEFINED = _Undefined()

_NUMERAL = re.compile(r'^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$')


class Stem:
    """An ordered, 1-based, count-prefixed aggregate with optional named sub-keys.

    Index 0 is reserved for the count of positional elements. Positional
    elements are always contiguous: writing past the end fills the gap with
    empty strings, so `stem[0]` equals the number of populated indices.
    """
    __slots__ = ("_items", "_named")

    def __init__(self, items=None, named=None):
        self._items: List[Any] = list(items or [])
        self._named: Dict[str, Any] = dict(named or {})

    @staticmethod
    def _index(key) -> Optional[int]:
        if isinstance(key, bool):
            return None
        if isinstance(key, int):
            return key if key >= 0 else None
        if isinstance(key, float) and key.is_integer() and key >= 0:
            return int(key)
        if isinstance(key, str) and key.isdigit():
            return int(key)
        return None

    @property
    def count(self) -> int:
        return len(self._items)

    @property
    def named(self) -> Dict[str, Any]:
        return self._named

    def get(self, key, default=UNDEFINED):
        idx = self._index(key)
        if idx is None:
            return self._named.get(str(key), default)
        if idx == 0:
            return len(self._items)
        if idx <= len(self._items):
            return self._items[idx - 1]
        return default

    def set(self, key, value):
        idx = self._index(key)
        if idx is None:
            self._named[str(key)] = value
            return
        if idx == 0:
            n = int(to_number(value))
            if n < 0:
                raise TypeCoercionError(f"Stem count cannot be negative: {n}")
            if n < len(self._items):
                del self._items[n:]
            else:
                self._items.extend([""] * (n - len(self._items)))
            return
        if idx <= len(self._items):
            self._items[idx - 1] = value
            return
        self._items.extend([""] * (idx - 1 - len(self._items)))
        self._items.append(value)

    def delete(self, key):
        idx = self._index(key)
        if idx is None:
            self._named.pop(str(key), None)
        elif idx == 0:
            self._items.clear()
        elif idx <= len(self._items):
            del self._items[idx - 1]

    def append(self, value) -> int:
        self._items.append(value)
        return len(self._items)

    def values(self) -> List[Any]:
        return list(self._items)

    def keys(self) -> List[Any]:
        return list(range(1, len(self._items) + 1)) + list(self._named.keys())

    def __getitem__(self, key):
        return self.get(key)

    def __setitem__(self, key, value):
        self.set(key, value)

    def __delitem__(self, key):
        self.delete(key)

    def __contains__(self, key):
        return self.get(key) is not UNDEFINED

    def __len__(self):
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))

    def copy(self) -> 'Stem':
        """Deep copy; nested stems are copied too."""
        return Stem(
            [v.copy() if isinstance(v, Stem) else v for v in self._items],
            {k: (v.copy() if isinstance(v, Stem) else v) for k, v in self._named.items()},
        )

    def to_python(self):
        if self._named and not self._items:
            return {k: _unstem(v) for k, v in self._named.items()}
        if not self._named:
            return [_unstem(v) for v in self._items]
        out = {str(i): _unstem(v) for i, v in enumerate(self._items, start=1)}
        out.update({k: _unstem(v) for k, v in self._named.items()})
        return out

    @classmethod
    def from_python(cls, value) -> 'Stem':
        if isinstance(value, Stem):
            return value
        if isinstance(value, dict):
            return cls(named={str(k): normalize_value(v) for k, v in value.items()})
        return cls([normalize_value(v) for v in value])

    def __eq__(self, other):
        if isinstance(other, Stem):
            return self._items == other._items and self._named == other._named
        if isinstance(other, (list, tuple)) and not self._named:
            return self._items == list(other)
        if isinstance(other, dict) and not self._items:
            return self._named == other
        return NotImplemented

    __hash__ = None

    def __repr__(self):
        from rexa.rexa_printer import Printer
        return f"Stem({Printer().pformat(self)})"


def _unstem(v):
    return v.to_python() if isinstance(v, Stem) else v


def normalize_value(value):
    """Bring any collaborator result into the language's value model."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (Stem, str, int, float)):
        return value
    if isinstance(value, (list, tuple, dict)):
        return Stem.from_python(value)
    return value


def is_numeric(value) -> bool:
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and bool(_NUMERAL.match(value))


def to_number(value):
    """Coerce a numeral-shaped value to int/float or raise TypeCoercionError."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str) and _NUMERAL.match(value):
        text = value.strip()
        if any(c in text for c in ".eE"):
            return float(text)
        return int(text)
    shown = "<undefined>" if value is UNDEFINED else repr(to_string(value))
    raise TypeCoercionError(f"Bad arithmetic conversion: {shown} is not a number")


def to_string(value) -> str:
    if value is None or value is UNDEFINED:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e16:
            return str(int(value))
        return format(value, ".15g")
    if isinstance(value, Stem):
        return json.dumps(value.to_python(), ensure_ascii=False)
    return str(value)


def truthy(value) -> bool:
    if isinstance(value, Stem):
        return value.count > 0 or bool(value.named)
    if value is UNDEFINED or value is None:
        return False
    if is_numeric(value):
        return to_number(value) != 0
    return str(value).strip() != ""


# =================================================================
# Expression Nodes
# =================================================================

@dataclass(frozen=True)
class Literal:
    value: Any
    interpolate: bool = False
    line: int = 0
    col: int = 0


@dataclass(frozen=True)
class VarRef:
    """A simple or compound symbol. `tail` holds the raw segments after the stem name."""
    name: str
    tail: Tuple[str, ...] = ()
    line: int = 0
    col: int = 0

    @property
    def symbol(self) -> str:
        return ".".join((self.name,) + self.tail)


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Any
    line: int = 0
    col: int = 0


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Any
    right: Any
    line: int = 0
    col: int = 0


@dataclass(frozen=True)
class Argument:
    name: Optional[str]
    value: Any


@dataclass(frozen=True)
class CallExpr:
    name: str
    args: Tuple[Argument, ...] = ()
    line: int = 0
    col: int = 0


@dataclass(frozen=True)
class PipeOp:
    left: Any
    call: CallExpr
    line: int = 0
    col: int = 0


@dataclass(frozen=True)
class HeredocLiteral:
    delimiter: str
    content: str
    structured: Optional[str] = None   # 'json' | 'yaml'
    line: int = 0
    col: int = 0


# =================================================================
# Statement Nodes
# =================================================================

@dataclass(frozen=True)
class CommandForm:
    """`method k=v p ...`: a call written without parentheses."""
    method: str
    args: Tuple[Argument, ...] = ()
    line: int = 0
    col: int = 0


@dataclass(frozen=True)
class Assignment:
    target: VarRef
    value: Any = None
    command: Optional[CommandForm] = None
    rhs_text: str = ""
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class Say:
    expr: Any
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class If:
    condition: Any
    then_body: Tuple[Any, ...] = ()
    else_body: Tuple[Any, ...] = ()
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class Loop:
    kind: str                       # block | forever | count | range | while | until | over
    body: Tuple[Any, ...] = ()
    var: Optional[VarRef] = None
    start: Any = None
    end: Any = None
    step: Any = None
    condition: Any = None
    count: Any = None
    over: Any = None
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class LoopControl:
    action: str                     # leave | iterate
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Argument, ...] = ()
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class AddressSwitch:
    domain: Optional[str] = None
    mode: Optional[str] = None
    rule: Any = None
    command: Any = None
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class BlockLiteral:
    literal: HeredocLiteral
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class Signal:
    action: str                     # on | off | goto
    condition: Optional[str] = None
    label: Optional[str] = None
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class Return:
    value: Any = None
    exit: bool = False
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class Label:
    name: str
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class ArgBinding:
    names: Tuple[str, ...] = ()
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class Require:
    identifier: Any
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class InterpolationStatement:
    action: str                     # register | activate | example
    name: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    example: Optional[str] = None
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class Clause:
    """A line that is not a keyword statement. Its meaning depends on the address context."""
    expr: Any = None
    command: Optional[CommandForm] = None
    error: Optional[ParseError] = field(default=None, compare=False)
    line: int = 0
    text: str = ""


@dataclass(frozen=True)
class Nop:
    line: int = 0
    text: str = ""


# =================================================================
# Registry, Module and Address Records
# =================================================================

@dataclass
class FunctionMetadata:
    module: str = ""
    category: str = ""
    description: str = ""
    parameters: List[str] = field(default_factory=list)
    returns: str = ""
    examples: List[str] = field(default_factory=list)
    operation: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict], module: str = "") -> 'FunctionMetadata':
        data = dict(data or {})
        return cls(
            module=str(data.get("module", module) or module),
            category=str(data.get("category", "")),
            description=str(data.get("description", "")),
            parameters=[str(p) for p in data.get("parameters", [])],
            returns=str(data.get("returns", "")),
            examples=[str(e) for e in data.get("examples", [])],
            operation=bool(data.get("operation", False)),
        )


@dataclass
class FunctionEntry:
    name: str
    kind: str                       # builtin | internal | required | address-method | capability | remote
    thunk: Callable[..., Any]
    params: Tuple[str, ...] = ()
    optional: frozenset = frozenset()
    keyword_only: frozenset = frozenset()
    variadic: bool = False
    extra_named: bool = False
    pipe_param: Optional[str] = None
    metadata: Optional[FunctionMetadata] = None
    source: Optional[str] = None

    @property
    def call_style(self) -> str:
        if self.metadata is not None and self.metadata.operation:
            return "operation"
        return "function"

    @classmethod
    def from_callable(cls, name: str, kind: str, func: Callable, *,
                      metadata: Optional[FunctionMetadata] = None,
                      source: Optional[str] = None) -> 'FunctionEntry':
        """Derive the parameter list from a Python callable's signature."""
        params: List[str] = []
        optional = set()
        keyword_only = set()
        variadic = extra_named = False
        try:
            sig = inspect.signature(func)
        except (TypeError, ValueError):
            sig = None
        if sig is None:
            variadic = extra_named = True
        else:
            for p in sig.parameters.values():
                match p.kind:
                    case inspect.Parameter.VAR_POSITIONAL:
                        variadic = True
                    case inspect.Parameter.VAR_KEYWORD:
                        extra_named = True
                    case _:
                        params.append(p.name)
                        if p.default is not inspect.Parameter.empty:
                            optional.add(p.name)
                        if p.kind is inspect.Parameter.KEYWORD_ONLY:
                            keyword_only.add(p.name)
        if metadata is None and getattr(func, "_rexa_operation", False):
            metadata = FunctionMetadata(operation=True)
        return cls(
            name=name.upper(),
            kind=kind,
            thunk=func,
            params=tuple(params),
            optional=frozenset(optional),
            keyword_only=frozenset(keyword_only),
            variadic=variadic,
            extra_named=extra_named,
            pipe_param=getattr(func, "_rexa_pipe_param", None),
            metadata=metadata,
            source=source,
        )


def receives_pipe(param: str):
    """Designate the parameter that takes a piped value when positionals are all supplied."""
    def deco(func):
        func._rexa_pipe_param = param
        return func
    return deco


def operation(func):
    """Mark a callable as an operation: named arguments only, no value produced."""
    func._rexa_operation = True
    return func


class ModuleState(Enum):
    PENDING = "pending"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass
class ModuleNode:
    identifier: str
    location: str
    functions: Dict[str, FunctionEntry] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    state: ModuleState = ModuleState.PENDING
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class AddressContext:
    domain: str
    mode: str = "function"
    rule: Optional[str] = None
    matcher: Optional[re.Pattern] = field(default=None, compare=False)


@dataclass(frozen=True)
class InterpolationPattern:
    name: str
    start: str
    end: str
