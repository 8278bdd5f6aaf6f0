"""
The address ("escape hatch") dispatcher and the handler contract.

A handler answers for one or more domains. After `ADDRESS domain [mode]`
the interpreter routes statements to it in one of four modes:

    command   the statement text is the payload
    function  `method k=v ...` becomes invoke(method, {k: v})
    heredoc   a block literal becomes invoke(DELIM, content)
    pattern   lines matching the rule become invoke(line, {groups})
"""
import asyncio
import inspect
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from rexa.rexa_errors import AddressHandlerError
from rexa.rexa_datatypes import AddressContext, FunctionEntry, normalize_value
from rexa.rexa_resolver import payload_from

MODES = ("command", "function", "heredoc", "pattern")


@dataclass
class HandlerInfo:
    """What a handler's probe reports about itself."""
    canonical_id: str
    domains: Tuple[str, ...]
    methods: Optional[Dict[str, List[str]]] = None
    pattern: Optional[str] = None


@dataclass
class HandlerReply:
    success: bool
    result: Any = None
    error: Any = None

    @classmethod
    def coerce(cls, reply: Any, domain: str) -> 'HandlerReply':
        if isinstance(reply, HandlerReply):
            return reply
        if isinstance(reply, Mapping) and "success" in reply:
            return cls(bool(reply["success"]), reply.get("result"), reply.get("error"))
        raise AddressHandlerError(f"Handler for {domain} returned a malformed reply: {reply!r}",
                                  domain=domain, payload=reply)


@dataclass(frozen=True)
class DispatchContext:
    domain: str
    mode: str
    line: Optional[int] = None
    delimiter: Optional[str] = None


class AddressHandler(ABC):
    """The contract every external handler implements."""

    @abstractmethod
    def probe(self) -> HandlerInfo:
        raise NotImplementedError

    @abstractmethod
    def invoke(self, method: str, payload: Any, context: DispatchContext):
        """Return a HandlerReply or mapping `{success, result?, error?}`, or an awaitable of one."""
        raise NotImplementedError


class MethodTableHandler(AddressHandler):
    """A handler backed by a table of Python callables.

    `methods` serve function mode. `command` receives command-mode text,
    `heredoc` receives `(delimiter, content)` and `on_match` receives
    `(line, groups, named)` in pattern mode. Exceptions become failure
    replies carrying the exception's kind and message.
    """

    def __init__(self, canonical_id: str, domains, methods: Optional[Dict[str, Callable]] = None, *,
                 command: Optional[Callable] = None, heredoc: Optional[Callable] = None,
                 on_match: Optional[Callable] = None, pattern: Optional[str] = None):
        self.canonical_id = canonical_id
        self.domains = (domains,) if isinstance(domains, str) else tuple(domains)
        self.methods = dict(methods or {})
        self.command = command
        self.heredoc = heredoc
        self.on_match = on_match
        self.pattern = pattern
        self.calls: List[Tuple[str, Any, DispatchContext]] = []

    def probe(self) -> HandlerInfo:
        table = {}
        for name, func in self.methods.items():
            try:
                table[name] = [p.name for p in inspect.signature(func).parameters.values()
                               if p.kind not in (p.VAR_POSITIONAL, p.VAR_KEYWORD)]
            except (TypeError, ValueError):
                table[name] = []
        return HandlerInfo(self.canonical_id, self.domains, table, self.pattern)

    def _target(self, method: str, payload: Any, context: DispatchContext):
        if context.delimiter is not None:
            return (lambda: self.heredoc(context.delimiter, payload)) if self.heredoc else None
        if context.mode == "pattern" and isinstance(payload, dict):
            if self.on_match is None:
                return None
            return lambda: self.on_match(payload.get("line"), payload.get("groups"), payload.get("named"))
        if context.mode == "function":
            func = self._lookup(method)
            if func is not None:
                return lambda: func(**payload) if isinstance(payload, dict) else func(payload)
        if self.command is not None:
            return lambda: self.command(method)
        return None

    def _lookup(self, method: str) -> Optional[Callable]:
        if method in self.methods:
            return self.methods[method]
        lowered = method.lower()
        for name, func in self.methods.items():
            if name.lower() == lowered:
                return func
        return None

    async def invoke(self, method: str, payload: Any, context: DispatchContext):
        self.calls.append((method, payload, context))
        target = self._target(method, payload, context)
        if target is None:
            return HandlerReply(False, error={"kind": "UnknownMethod",
                                              "message": f"{self.canonical_id} has no method {method!r}"})
        try:
            result = target()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            return HandlerReply(False, error={"kind": type(e).__name__, "message": str(e)})
        return HandlerReply(True, result)


class AddressDispatcher:
    """Owns the current address context and the registered handlers.

    The handler table is guarded by a lock; the context itself belongs to
    the single interpreter that owns this dispatcher.
    """

    def __init__(self, default_domain: str = "DEFAULT", timeout: Optional[float] = None):
        self.default_domain = default_domain.upper()
        self.timeout = timeout
        self._handlers: Dict[str, Tuple[AddressHandler, HandlerInfo]] = {}
        self._lock = threading.RLock()
        self.context = AddressContext(self.default_domain)

    # -- registration ---------------------------------------------------

    def register(self, handler: AddressHandler) -> HandlerInfo:
        if not isinstance(handler, AddressHandler):
            raise TypeError(f"Address handlers must implement AddressHandler, not {type(handler).__name__}")
        info = handler.probe()
        if not isinstance(info, HandlerInfo):
            raise TypeError(f"probe() must return HandlerInfo, not {type(info).__name__}")
        if not isinstance(info.canonical_id, str) or not info.canonical_id:
            raise ValueError("HandlerInfo.canonical_id must be a non-empty string")
        domains = (info.domains,) if isinstance(info.domains, str) else tuple(info.domains or ())
        if not domains or not all(isinstance(d, str) and d for d in domains):
            raise ValueError(f"Handler {info.canonical_id} must declare at least one domain name")
        if info.methods is not None and not isinstance(info.methods, Mapping):
            raise ValueError(f"Handler {info.canonical_id}: methods must be a mapping of name -> parameters")
        if info.pattern is not None:
            self._compile(info.pattern, domains[0])
        info = replace(info, domains=domains)
        with self._lock:
            for domain in domains:
                self._handlers[domain.upper()] = (handler, info)
        return info

    def unregister(self, domain: str):
        with self._lock:
            self._handlers.pop(domain.upper(), None)

    def domains(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    def handler_for(self, domain: str) -> Tuple[AddressHandler, HandlerInfo]:
        with self._lock:
            found = self._handlers.get(domain.upper())
        if found is None:
            raise AddressHandlerError(f"No handler registered for domain {domain}", domain=domain)
        return found

    # -- context --------------------------------------------------------

    def is_default(self, ctx: Optional[AddressContext] = None) -> bool:
        return (ctx or self.context).domain == self.default_domain

    @staticmethod
    def _compile(rule: str, domain: str) -> re.Pattern:
        try:
            return re.compile(rule)
        except re.error as e:
            raise AddressHandlerError(f"Invalid pattern rule {rule!r}: {e}", domain=domain)

    def switch(self, domain: Optional[str] = None, mode: Optional[str] = None,
               rule: Optional[str] = None) -> AddressContext:
        """Select a domain; no domain (or the default one) returns to native execution."""
        if domain is None or domain.upper() == self.default_domain:
            self.context = AddressContext(self.default_domain)
            return self.context
        _, info = self.handler_for(domain)
        mode = (mode or "function").lower()
        if mode not in MODES:
            raise AddressHandlerError(f"Unknown address mode {mode!r}", domain=domain)
        matcher = None
        if mode == "pattern":
            rule = rule or info.pattern
            if not rule:
                raise AddressHandlerError(f"Pattern mode for {domain} needs a rule", domain=domain)
            matcher = self._compile(rule, domain)
        self.context = AddressContext(domain.upper(), mode, rule if mode == "pattern" else None, matcher)
        return self.context

    def restore(self, ctx: AddressContext):
        self.context = ctx

    def match(self, text: str) -> Optional[re.Match]:
        """Match a statement's text against the active pattern rule (anchored at line start)."""
        ctx = self.context
        if ctx.mode != "pattern" or ctx.matcher is None:
            return None
        return ctx.matcher.match(text.strip())

    def method_params(self, method: str, domain: Optional[str] = None) -> Tuple[str, ...]:
        """Declared parameter names for `method` on the (current) domain's handler."""
        with self._lock:
            found = self._handlers.get((domain or self.context.domain).upper())
        if found is None or not found[1].methods:
            return ()
        for name, params in found[1].methods.items():
            if name.upper() == method.upper():
                return tuple(params or ())
        return ()

    def method_entry(self, name: str, ctx: AddressContext) -> Optional[FunctionEntry]:
        """A resolver entry for a method the current handler declares, if any."""
        if self.is_default(ctx):
            return None
        with self._lock:
            found = self._handlers.get(ctx.domain)
        if found is None:
            return None
        _, info = found
        if not info.methods:
            return None
        method = next((m for m in info.methods if m.upper() == name.upper()), None)
        if method is None:
            return None
        params = tuple(info.methods[method] or ())
        domain = ctx.domain

        async def thunk(*args, **kwargs):
            return await self.invoke(method, payload_from(params, args, kwargs), mode="function", domain=domain)
        return FunctionEntry(name=method.upper(), kind="address-method", thunk=thunk, params=params,
                             optional=frozenset(params), extra_named=True, source=info.canonical_id)

    # -- invocation -----------------------------------------------------

    async def invoke(self, method: str, payload: Any, *, mode: Optional[str] = None, line: Optional[int] = None,
                     delimiter: Optional[str] = None, domain: Optional[str] = None) -> Any:
        """Send one request to a handler and settle its reply into a language value."""
        domain = (domain or self.context.domain).upper()
        handler, info = self.handler_for(domain)
        context = DispatchContext(domain, mode or self.context.mode, line, delimiter)
        try:
            reply = handler.invoke(method, payload, context)
            if inspect.isawaitable(reply):
                if self.timeout:
                    reply = await asyncio.wait_for(reply, self.timeout)
                else:
                    reply = await reply
        except AddressHandlerError as e:
            raise e.with_context(line=line, domain=domain)
        except asyncio.TimeoutError:
            raise AddressHandlerError(f"Handler {info.canonical_id} timed out after {self.timeout}s",
                                      line=line, domain=domain,
                                      payload={"kind": "Timeout", "message": f"timed out after {self.timeout}s"})
        except Exception as e:
            raise AddressHandlerError(str(e) or type(e).__name__, line=line, domain=domain,
                                      payload={"kind": type(e).__name__, "message": str(e)}) from e
        reply = HandlerReply.coerce(reply, domain)
        if not reply.success:
            error = reply.error
            if isinstance(error, Mapping):
                message = error.get("message") or error.get("kind")
            else:
                message = str(error) if error else None
            raise AddressHandlerError(message or f"Handler {info.canonical_id} reported failure",
                                      line=line, domain=domain, payload=error)
        return normalize_value(reply.result)
