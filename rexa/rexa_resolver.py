"""
Function registries, argument binding and the tiered name resolver.
"""
import inspect
import threading
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from rexa.rexa_errors import (
    ArgumentBindingError, MissingArgumentError, UnknownFunctionError, AddressHandlerError,
)
from rexa.rexa_datatypes import FunctionEntry, FunctionMetadata, AddressContext, normalize_value, Stem

NO_PIPE = object()

FALLBACK_TIERS = ("capability", "remote")


class FunctionRegistry:
    """A name -> FunctionEntry table. Names are case-insensitive."""

    def __init__(self, kind: str):
        self.kind = kind
        self._entries: Dict[str, FunctionEntry] = {}
        self._lock = threading.RLock()

    def register(self, entry: FunctionEntry) -> FunctionEntry:
        # Re-registration replaces the entry (metadata overwrite on re-require)
        with self._lock:
            self._entries[entry.name.upper()] = entry
        return entry

    def register_callable(self, name: str, func: Callable, *, metadata: Optional[FunctionMetadata] = None,
                          source: Optional[str] = None) -> FunctionEntry:
        return self.register(FunctionEntry.from_callable(name, self.kind, func, metadata=metadata, source=source))

    def update(self, entries: Iterable[FunctionEntry]):
        with self._lock:
            for entry in entries:
                self._entries[entry.name.upper()] = entry

    def lookup(self, name: str) -> Optional[FunctionEntry]:
        with self._lock:
            return self._entries.get(name.upper())

    def unregister(self, name: str):
        with self._lock:
            self._entries.pop(name.upper(), None)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def entries(self) -> List[FunctionEntry]:
        with self._lock:
            return list(self._entries.values())

    def __contains__(self, name: str) -> bool:
        return self.lookup(name) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __repr__(self):
        return f"<FunctionRegistry {self.kind} n={len(self)}>"


# ===================================================================
# Argument binding
# ===================================================================

def bind_arguments(entry: FunctionEntry, arguments: Sequence[Tuple[Optional[str], Any]],
                   piped: Any = NO_PIPE, *, as_statement: bool = False) -> Tuple[list, dict]:
    """Match supplied arguments against the entry's declared parameters.

    Named arguments bind first. A piped value takes the first unbound
    positional slot, or the entry's pipe parameter when the explicit
    positionals already fill every slot. Returns `(args, kwargs)` ready
    for the entry's thunk.
    """
    name = entry.name
    positionals = [v for n, v in arguments if n is None]
    if entry.call_style == "operation":
        if not as_statement:
            raise ArgumentBindingError(f"{name} is an operation and produces no value", function=name)
        if positionals or piped is not NO_PIPE:
            raise ArgumentBindingError(f"{name} is an operation and takes named arguments only", function=name)

    by_upper = {p.upper(): p for p in entry.params}
    bound: Dict[str, Any] = {}
    extra_named: Dict[str, Any] = {}
    for arg_name, value in arguments:
        if arg_name is None:
            continue
        param = by_upper.get(arg_name.upper())
        if param is None:
            if not entry.extra_named:
                raise ArgumentBindingError(f"{name} has no parameter named '{arg_name}'", function=name)
            extra_named[arg_name] = value
            continue
        if param in bound:
            raise ArgumentBindingError(f"{name}: parameter '{param}' given more than once", function=name)
        bound[param] = value

    open_slots = [p for p in entry.params if p not in bound and p not in entry.keyword_only]
    if piped is not NO_PIPE:
        if entry.variadic or len(positionals) < len(open_slots):
            positionals.insert(0, piped)
        elif entry.pipe_param and entry.pipe_param not in bound:
            bound[entry.pipe_param] = piped
            if entry.pipe_param in open_slots:
                open_slots.remove(entry.pipe_param)
        else:
            raise ArgumentBindingError(
                f"{name}: cannot pipe a value, all arguments are already supplied", function=name)

    for param in open_slots:
        if not positionals:
            break
        if param not in bound:
            bound[param] = positionals.pop(0)

    extra_positional: List[Any] = []
    if positionals:
        if not entry.variadic:
            limit = len([p for p in entry.params if p not in entry.keyword_only])
            raise ArgumentBindingError(f"{name} takes at most {limit} positional argument(s)", function=name)
        extra_positional = positionals

    for param in entry.params:
        if param not in bound and param not in entry.optional:
            raise MissingArgumentError(f"{name}: missing required argument '{param}'", function=name)

    args: List[Any] = []
    kwargs: Dict[str, Any] = {}
    contiguous = True
    for param in entry.params:
        if param in entry.keyword_only:
            if param in bound:
                kwargs[param] = bound[param]
            continue
        if contiguous and param in bound:
            args.append(bound[param])
        else:
            contiguous = False
            if param in bound:
                kwargs[param] = bound[param]
    args.extend(extra_positional)
    kwargs.update(extra_named)
    return args, kwargs


async def invoke_entry(entry: FunctionEntry, args: list, kwargs: dict) -> Any:
    """Run an entry's thunk, awaiting it if needed, and normalise the result."""
    result = entry.thunk(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return normalize_value(result)


def payload_from(params: Sequence[str], args: Sequence[Any], kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Fold a bound call back into a name -> value mapping for external collaborators."""
    payload = dict(zip(params, args))
    payload.update(kwargs)
    if len(args) > len(params):
        payload["args"] = list(args[len(params):])
    return {k: (v.to_python() if isinstance(v, Stem) else v) for k, v in payload.items()}


# ===================================================================
# Fallback bridges
# ===================================================================

class CapabilityBridge(ABC):
    """An environment-specific source of functions (tier: capability)."""

    @abstractmethod
    def lookup(self, name: str) -> Optional[FunctionEntry]:
        raise NotImplementedError


def rexa_api_method(func):
    """A decorator to explicitly mark host methods as callable from scripts."""
    func._is_rexa_api = True
    return func


class HostBridge(CapabilityBridge):
    """Exposes `@rexa_api_method` members of a host object as capability functions."""

    def __init__(self, host):
        self.host = host
        self._entries: Dict[str, FunctionEntry] = {}
        for name, member in inspect.getmembers(host):
            if not callable(member):
                continue
            is_api = getattr(member, "_is_rexa_api", False)
            if not is_api:
                func = getattr(member, "__func__", None)
                is_api = getattr(func, "_is_rexa_api", False) if func is not None else False
            if not is_api:
                continue
            entry = FunctionEntry.from_callable(name, "capability", member, source=type(host).__name__)
            self._entries[entry.name] = entry

    def lookup(self, name: str) -> Optional[FunctionEntry]:
        return self._entries.get(name.upper())

    def names(self) -> List[str]:
        return sorted(self._entries)


class ControlChannel(ABC):
    """A request/reply link to an external orchestrator."""

    @abstractmethod
    async def request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class RemoteProcedureBridge:
    """Forwards unresolved calls across a ControlChannel (tier: remote).

    The orchestrator replies `{success, result?, error?: {kind, message}}`.
    A reply whose error kind is `UnknownFunctionError` is reported as such;
    any other failure is an AddressHandlerError carrying the reply's error.
    """

    def __init__(self, channel: ControlChannel):
        self.channel = channel

    def lookup(self, name: str) -> FunctionEntry:
        async def thunk(*args, **kwargs):
            return await self.call(name, list(args), kwargs)
        return FunctionEntry(name=name.upper(), kind="remote", thunk=thunk,
                             variadic=True, extra_named=True, source="remote")

    async def call(self, name: str, args: list, kwargs: dict) -> Any:
        message = {
            "type": "call",
            "function": name,
            "args": [a.to_python() if isinstance(a, Stem) else a for a in args],
            "kwargs": {k: (v.to_python() if isinstance(v, Stem) else v) for k, v in kwargs.items()},
        }
        reply = await self.channel.request(message)
        if not isinstance(reply, dict):
            raise AddressHandlerError(f"Malformed reply from control channel for {name}", function=name, payload=reply)
        if reply.get("success"):
            return reply.get("result")
        error = reply.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        message_text = error.get("message") or f"Remote call {name} failed"
        if error.get("kind") == "UnknownFunctionError":
            raise UnknownFunctionError(message_text, function=name, payload=error)
        raise AddressHandlerError(message_text, function=name, payload=error)


# ===================================================================
# Resolver
# ===================================================================

class FunctionResolver:
    """Walks the resolution tiers in order; the first tier holding the name wins.

    1. builtins            4. current address handler methods
    2. internal labels     5/6. capability bridges and the remote bridge,
    3. required libraries       in `fallback_order`
    """

    def __init__(self, builtins: FunctionRegistry, internal: FunctionRegistry, required: FunctionRegistry, *,
                 address_methods: Optional[Callable[[str, AddressContext], Optional[FunctionEntry]]] = None,
                 capabilities: Optional[List[CapabilityBridge]] = None,
                 remote: Optional[RemoteProcedureBridge] = None,
                 fallback_order: Sequence[str] = FALLBACK_TIERS,
                 autoload: Optional[Dict[str, str]] = None,
                 require: Optional[Callable[[str], Awaitable[Any]]] = None):
        if sorted(fallback_order) != sorted(FALLBACK_TIERS):
            raise ValueError(f"fallback_order must be a permutation of {FALLBACK_TIERS}, not {tuple(fallback_order)}")
        self.builtins = builtins
        self.internal = internal
        self.required = required
        self.address_methods = address_methods
        self.capabilities: List[CapabilityBridge] = list(capabilities or [])
        self.remote = remote
        self.fallback_order = tuple(fallback_order)
        self.autoload = {k.upper(): v for k, v in (autoload or {}).items()}
        self.require = require

    def _fallback(self, tier: str, name: str) -> Optional[FunctionEntry]:
        if tier == "capability":
            for bridge in self.capabilities:
                entry = bridge.lookup(name)
                if entry is not None:
                    return entry
            return None
        if self.remote is not None:
            return self.remote.lookup(name)
        return None

    def resolve_local(self, name: str, address: Optional[AddressContext] = None) -> Optional[FunctionEntry]:
        """Tiers that need no I/O."""
        for registry in (self.builtins, self.internal, self.required):
            entry = registry.lookup(name)
            if entry is not None:
                return entry
        if self.address_methods is not None and address is not None:
            entry = self.address_methods(name, address)
            if entry is not None:
                return entry
        return None

    async def resolve(self, name: str, address: Optional[AddressContext] = None,
                      line: Optional[int] = None) -> FunctionEntry:
        entry = self.resolve_local(name, address)
        if entry is not None:
            return entry
        identifier = self.autoload.get(name.upper())
        if identifier is not None and self.require is not None:
            await self.require(identifier)
            entry = self.resolve_local(name, address)
            if entry is not None:
                return entry
        for tier in self.fallback_order:
            entry = self._fallback(tier, name)
            if entry is not None:
                return entry
        raise UnknownFunctionError(f"Unknown function {name}", line=line, function=name)

    def tier_of(self, name: str, address: Optional[AddressContext] = None) -> Optional[str]:
        """Kind of the entry `name` resolves to locally, or None (used by SYMBOL/INFO)."""
        entry = self.resolve_local(name, address)
        return entry.kind if entry is not None else None
