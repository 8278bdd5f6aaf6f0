# rexa_runtime.py

import asyncio
import datetime
import inspect
import os
import time
from abc import ABC
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import yaml

from rexa.rexa_errors import (
    RexaError, ParseError, EvaluationError, TypeCoercionError, UnknownFunctionError,
)
from rexa.rexa_datatypes import (
    Stem, UNDEFINED, FunctionMetadata, is_numeric, normalize_value, to_number, to_string, truthy,
    receives_pipe, operation,
)
from rexa.rexa_parser import parse
from rexa.rexa_interpreter import Evaluator, _ExitSignal
from rexa.rexa_resolver import (
    FunctionRegistry, FunctionResolver, HostBridge, CapabilityBridge, ControlChannel, RemoteProcedureBridge,
    rexa_api_method,
)
from rexa.rexa_address import AddressDispatcher, AddressHandler, HandlerInfo
from rexa.rexa_interpolate import InterpolationEngine
from rexa.rexa_modules import ModuleLoader
from rexa.rexa_config import RexaConfig
from rexa.rexa_serialize import parse_strict, serialize

# ===================================================================
# 1. Host integration
# ===================================================================


class RexaHost(ABC):
    """The base class for any Python object exposed to Rexa scripts.

    Methods marked with `@rexa_api_method` become capability functions for
    every runner created with this host.
    """
    def __init__(self):
        self.active_runners: set = set()

    @rexa_api_method
    def cancel_runs(self):
        count = len(self.active_runners)
        for runner in list(self.active_runners):
            runner.cancel()
        return count

    def _register_runner(self, runner: 'ScriptRunner'):
        self.active_runners.add(runner)

    def _release_runner(self, runner: 'ScriptRunner'):
        self.active_runners.discard(runner)


# ===================================================================
# 2. The Standard Library
# ===================================================================

CATEGORIES = {
    "math": ("ABS", "MATH_POWER", "MAX", "MIN", "SIGN", "TRUNC"),
    "string": ("LENGTH", "SUBSTR", "UPPER", "LOWER", "POS", "WORD", "WORDS", "STRIP", "REVERSE",
               "COPIES", "LEFT", "RIGHT", "SPLIT"),
    "stem": ("ARRAY_LENGTH", "ARRAY_PUSH", "ARRAY_GET", "ARRAY_JOIN"),
    "data": ("JSON_PARSE", "JSON_STRINGIFY", "YAML_PARSE"),
    "io": ("FILE_READ", "FILE_WRITE", "HTTP_GET", "EMIT"),
    "time": ("DATE", "TIME", "SLEEP"),
    "introspection": ("ARG", "SYMBOL", "DATATYPE", "TYPEOF", "ADDRESS", "INTERPOLATION", "INFO"),
}


def _whole(value, what: str) -> int:
    n = to_number(value)
    if int(n) != n:
        raise TypeCoercionError(f"{what} must be a whole number, not {to_string(value)}")
    return int(n)


def _stem(value, func: str) -> Stem:
    if not isinstance(value, Stem):
        raise TypeCoercionError(f"{func} expects a stem, not {to_string(value)!r}")
    return value


class StdLib:
    """Python implementations of the core built-ins.

    Every `_name` method is registered as the builtin `NAME`.
    """
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    # --- Math ---
    def _abs(self, number):
        return abs(to_number(number))

    def _math_power(self, base, exponent):
        return to_number(base) ** to_number(exponent)

    def _max(self, *values):
        if not values:
            raise EvaluationError("MAX needs at least one value")
        return max(to_number(v) for v in values)

    def _min(self, *values):
        if not values:
            raise EvaluationError("MIN needs at least one value")
        return min(to_number(v) for v in values)

    def _sign(self, number):
        n = to_number(number)
        return (n > 0) - (n < 0)

    def _trunc(self, number, digits=0):
        n = to_number(number)
        d = _whole(digits, "TRUNC digits")
        if d <= 0:
            return int(n)
        factor = 10 ** d
        return int(n * factor) / factor

    # --- Strings ---
    def _length(self, string):
        return len(to_string(string))

    @receives_pipe("string")
    def _substr(self, string, start, length=None, pad=" "):
        """Substring from 1-based `start`, padded with `pad` past the end."""
        s = to_string(string)
        begin = _whole(start, "SUBSTR start")
        if begin < 1:
            raise EvaluationError(f"SUBSTR start must be positive, not {begin}")
        piece = s[begin - 1:]
        if length is None:
            return piece
        n = _whole(length, "SUBSTR length")
        return piece[:n].ljust(n, to_string(pad)[:1] or " ")

    def _upper(self, string):
        return to_string(string).upper()

    def _lower(self, string):
        return to_string(string).lower()

    def _pos(self, needle, haystack, start=1):
        """1-based position of `needle` in `haystack`, or 0."""
        return to_string(haystack).find(to_string(needle), _whole(start, "POS start") - 1) + 1

    def _word(self, string, n):
        words = to_string(string).split()
        i = _whole(n, "WORD index")
        return words[i - 1] if 1 <= i <= len(words) else ""

    def _words(self, string):
        return len(to_string(string).split())

    def _strip(self, string, option="B", char=" "):
        s = to_string(string)
        chars = to_string(char) or " "
        match to_string(option).upper()[:1]:
            case "L":
                return s.lstrip(chars)
            case "T":
                return s.rstrip(chars)
            case _:
                return s.strip(chars)

    def _reverse(self, string):
        return to_string(string)[::-1]

    def _copies(self, string, n):
        return to_string(string) * _whole(n, "COPIES count")

    def _left(self, string, length, pad=" "):
        n = _whole(length, "LEFT length")
        return to_string(string)[:n].ljust(n, to_string(pad)[:1] or " ")

    def _right(self, string, length, pad=" "):
        n = _whole(length, "RIGHT length")
        s = to_string(string)
        return (s[-n:] if n else "").rjust(n, to_string(pad)[:1] or " ")

    def _split(self, string, separator=" "):
        s = to_string(string)
        sep = to_string(separator)
        return Stem(s.split() if sep == " " else s.split(sep))

    # --- Stems ---
    def _array_length(self, array):
        return _stem(array, "ARRAY_LENGTH").count

    def _array_push(self, array, *values):
        stem = _stem(array, "ARRAY_PUSH")
        for value in values:
            stem.append(value)
        return stem

    def _array_get(self, array, index, default=""):
        value = _stem(array, "ARRAY_GET").get(index if not is_numeric(index) else _whole(index, "index"))
        return default if value is UNDEFINED else value

    def _array_join(self, array, separator=","):
        return to_string(separator).join(to_string(v) for v in _stem(array, "ARRAY_JOIN").values())

    # --- Structured data ---
    def _json_parse(self, text):
        try:
            return parse_strict(to_string(text), "json")
        except ValueError as e:
            raise EvaluationError(f"JSON_PARSE: {e}")

    def _json_stringify(self, value, pretty=0):
        return serialize(value, fmt="json", pretty=truthy(pretty))

    def _yaml_parse(self, text):
        try:
            return parse_strict(to_string(text), "yaml")
        except yaml.YAMLError as e:
            raise EvaluationError(f"YAML_PARSE: {e}")

    # --- I/O ---
    async def _file_read(self, path):
        from rexa.rexa_file import file_get
        return await file_get(to_string(path), base_dir=self.evaluator.source_dir)

    async def _file_write(self, path, data):
        from rexa.rexa_file import file_put
        return await file_put(to_string(path), data, base_dir=self.evaluator.source_dir)

    async def _http_get(self, url, timeout=5, mode=""):
        """GET a URL and decode the body.

        mode "lite" returns a stem of `status` and `body` without raising on
        error statuses; "full" adds the lowercased response `headers`.
        """
        from rexa.rexa_http import http_get, normalize_response_mode
        config = {"timeout": to_number(timeout), "response-mode": to_string(mode)}
        response_mode = normalize_response_mode(config)
        if response_mode is None and to_string(mode).strip():
            raise EvaluationError(f"HTTP_GET: unknown response mode {to_string(mode)!r}")
        if response_mode in (None, "none"):
            return await http_get(to_string(url), config)
        status, body, headers = await http_get(to_string(url), config)
        reply = {"status": status, "body": body}
        if response_mode == "full":
            reply["headers"] = headers
        return reply

    @operation
    def _emit(self, message, topic="stdout"):
        """Append a side effect on `topic`; named arguments only."""
        self.evaluator.emit(to_string(topic), to_string(message))

    # --- Time ---
    def _date(self, format="N"):
        today = datetime.date.today()
        match to_string(format).upper()[:1]:
            case "S":
                return today.strftime("%Y%m%d")
            case "I":
                return today.isoformat()
            case "W":
                return today.strftime("%A")
            case "M":
                return today.strftime("%B")
            case _:
                return f"{today.day} {today.strftime('%b %Y')}"

    def _time(self, format="N"):
        now = datetime.datetime.now()
        match to_string(format).upper()[:1]:
            case "S":
                return now.hour * 3600 + now.minute * 60 + now.second
            case "L":
                return now.strftime("%H:%M:%S.%f")
            case "T":
                return int(time.time())
            case _:
                return now.strftime("%H:%M:%S")

    async def _sleep(self, seconds):
        await asyncio.sleep(float(to_number(seconds)))
        return 0

    # --- Introspection ---
    def _arg(self, n=None):
        """Argument count of the current routine, or its n-th argument."""
        args = self.evaluator.arg_stack[-1]
        if n is None:
            return len(args)
        i = _whole(n, "ARG index")
        return args[i - 1] if 1 <= i <= len(args) else ""

    def _symbol(self, name):
        """VAR for a bound variable, FUNC for a resolvable routine, else LIT."""
        text = to_string(name)
        if not text or not (text[0].isalpha() or text[0] in "_$@#"):
            return "BAD"
        parts = text.split(".")
        if self.evaluator.current_env.read(parts[0], tuple(parts[1:])) is not UNDEFINED:
            return "VAR"
        if self.evaluator.resolver.tier_of(text, self.evaluator.dispatcher.context) is not None:
            return "FUNC"
        return "LIT"

    def _datatype(self, value, type=None):
        if type is None:
            return "NUM" if not isinstance(value, Stem) and is_numeric(value) else "CHAR"
        s = to_string(value)
        match to_string(type).upper()[:1]:
            case "N":
                ok = is_numeric(value) and not isinstance(value, Stem)
            case "W":
                ok = is_numeric(value) and not isinstance(value, Stem) and int(to_number(value)) == to_number(value)
            case "A":
                ok = s.isalnum()
            case "U":
                ok = s.isalpha() and s.isupper()
            case "L":
                ok = s.isalpha() and s.islower()
            case "S":
                ok = isinstance(value, Stem)
            case _:
                raise EvaluationError(f"DATATYPE: unknown type {to_string(type)!r}")
        return 1 if ok else 0

    def _typeof(self, value):
        if isinstance(value, Stem):
            return "STEM"
        if isinstance(value, (int, float)):
            return "NUMBER"
        return "STRING"

    def _address(self):
        return self.evaluator.dispatcher.context.domain

    def _interpolation(self):
        return self.evaluator.interpolation.active.name

    def _info(self, name):
        """Registry entry and metadata for a resolvable function."""
        text = to_string(name)
        entry = self.evaluator.resolver.resolve_local(text, self.evaluator.dispatcher.context)
        if entry is None:
            raise UnknownFunctionError(f"Unknown function {text}", function=text)
        meta = entry.metadata or FunctionMetadata()
        return normalize_value({
            "name": entry.name,
            "kind": entry.kind,
            "style": entry.call_style,
            "params": list(entry.params),
            "module": meta.module,
            "category": meta.category,
            "description": meta.description,
            "returns": meta.returns,
            "examples": list(meta.examples),
        })


# ===================================================================
# 3. Script Execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    error_token: Optional[Token] = None
    error_function: Optional[str] = None
    error_domain: Optional[str] = None
    error_payload: Any = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg

    @property
    def stdout(self) -> List[str]:
        return [e['message'] for e in self.side_effects if 'stdout' in e.get('topics', ())]


class ScriptRunner:
    """Parses and executes Rexa programs.

    Each runner owns an evaluator, an address dispatcher and an interpolation
    engine; variables persist across `handle_script` calls on the same runner.
    Module entries come from a loader that may be shared between runners.
    """

    def __init__(self, host_object: Optional[RexaHost] = None, *, config: Optional[RexaConfig] = None,
                 module_loader: Optional[ModuleLoader] = None,
                 control_channel: Optional[ControlChannel] = None):
        self.config = config or RexaConfig()
        self.host_object = host_object
        if module_loader is None:
            module_loader = (ModuleLoader(registry_url=self.config.registry_url)
                             if self.config.registry_url else ModuleLoader.shared())
        self.module_loader = module_loader
        if control_channel is None and self.config.remote_url:
            from rexa.rexa_http import HttpControlChannel
            control_channel = HttpControlChannel(self.config.remote_url)
        self.control_channel = control_channel

        self.dispatcher = AddressDispatcher(self.config.default_domain, timeout=self.config.dispatch_timeout)
        self.interpolation = InterpolationEngine(self.config.interpolation_pattern)
        self.evaluator = Evaluator(dispatcher=self.dispatcher, interpolation=self.interpolation,
                                   yield_interval=self.config.yield_interval, debug=self.config.debug)
        ev = self.evaluator
        capabilities: List[CapabilityBridge] = [HostBridge(host_object)] if host_object is not None else []
        ev.resolver = FunctionResolver(
            ev.builtins, ev.internal, ev.required,
            address_methods=self.dispatcher.method_entry,
            capabilities=capabilities,
            remote=RemoteProcedureBridge(control_channel) if control_channel is not None else None,
            fallback_order=self.config.fallback_order,
            autoload=self.config.autoload,
            require=ev.require,
        )
        ev.require_hook = self._load_module

        # Load stdlib
        stdlib = StdLib(ev)
        category_of = {name: cat for cat, names in CATEGORIES.items() for name in names}
        for name, member in inspect.getmembers(stdlib):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                rexa_name = name[1:].upper()
                doc = inspect.getdoc(member) or ""
                meta = FunctionMetadata(module="builtin", category=category_of.get(rexa_name, ""),
                                        description=doc.splitlines()[0] if doc else "",
                                        operation=getattr(member, "_rexa_operation", False))
                ev.builtins.register_callable(rexa_name, member, metadata=meta, source="builtin")
        self._source = ""

    # -- collaborators --------------------------------------------------

    @property
    def required(self) -> FunctionRegistry:
        return self.evaluator.required

    @property
    def environment(self):
        return self.evaluator.env

    @property
    def source_dir(self) -> Optional[str]:
        return self.evaluator.source_dir

    @source_dir.setter
    def source_dir(self, value: Optional[str]):
        self.evaluator.source_dir = value

    def register_handler(self, handler: AddressHandler) -> HandlerInfo:
        return self.dispatcher.register(handler)

    def register_capability(self, bridge: CapabilityBridge):
        self.evaluator.resolver.capabilities.append(bridge)

    def register_function(self, name: str, func, *, metadata: Optional[FunctionMetadata] = None):
        """Add a Python callable to this runner's `required` overlay."""
        return self.required.register_callable(name, func, metadata=metadata, source="host")

    async def _load_module(self, identifier: str):
        return await self.module_loader.require(identifier, base_dir=self.source_dir or os.getcwd())

    async def require(self, identifier: str):
        return await self.evaluator.require(identifier)

    # -- control --------------------------------------------------------

    def cancel(self):
        self.evaluator.cancel()

    def pause(self):
        self.evaluator.pause()

    def resume(self):
        self.evaluator.resume()

    # -- execution ------------------------------------------------------

    def parse(self, source_code: str):
        return parse(source_code)

    def prepare(self, program):
        """Install a parsed program so its labels can be called without running it."""
        self.evaluator.load_program(program)

    async def run_module(self, program) -> Any:
        """Run a module body once: its top level up to the first label."""
        return await self.evaluator.run(program, stop_at_label=True)

    async def call(self, label: str, *args, **kwargs) -> Any:
        """Call one label of the prepared program as a subroutine."""
        try:
            return await self.evaluator.call_label(label.upper(), list(args), kwargs)
        except _ExitSignal as e:
            return e.value

    async def handle_script(self, source_code: str, args=()) -> 'ExecutionResult':
        """The main entry point to execute a script."""
        ev = self.evaluator
        ev.side_effects.clear()
        ev.call_stack.clear()
        ev.error_context = {}
        self._source = source_code
        host = self.host_object
        if host is not None and hasattr(host, "_register_runner"):
            host._register_runner(self)
        try:
            program = parse(source_code)
            value = await ev.run(program, args)
        except RexaError as e:
            return self._error_result(e, source_code)
        except Exception as e:
            err = EvaluationError(f"InternalError: {e}", line=ev.current_line)
            return self._error_result(err, source_code)
        finally:
            if host is not None and hasattr(host, "_release_runner"):
                host._release_runner(self)
        return ExecutionResult(status='success', value=value, side_effects=list(ev.side_effects))

    # -- error reporting ------------------------------------------------

    def _error_result(self, e: RexaError, source: str) -> ExecutionResult:
        ev = self.evaluator
        if not isinstance(e, ParseError):
            e.with_context(line=ev.current_line)
        ev.error_context = {'line': e.line, 'function': e.function, 'domain': e.domain}
        msg = self._format_error(e, source)
        ev.emit('stderr', msg)
        token = {'line': e.line, 'col': e.col} if e.line is not None else None
        return ExecutionResult(
            status='error',
            error_message=msg,
            error_kind=e.kind,
            error_token=token,
            error_function=e.function,
            error_domain=e.domain,
            error_payload=e.payload,
            side_effects=list(ev.side_effects),
        )

    def _format_error(self, e: RexaError, source: str) -> str:
        msg = f"{e.kind}: {e.message}"
        if e.domain:
            msg += f" [domain {e.domain}]"
        if e.line is not None:
            col_info = f", col {e.col}" if e.col is not None else ""
            msg += f"\n(line {e.line}{col_info})"
            context = self._source_context(source, e.line, e.col)
            if context:
                msg += "\n" + context
        st = self._format_stacktrace()
        if st:
            msg += "\n" + st
        return msg

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_stacktrace(self) -> str:
        stack = self.evaluator.call_stack
        if not stack:
            return ""
        from rexa.rexa_printer import Printer
        printer = Printer()
        return "REXA stacktrace: " + " ".join(printer.pformat_frame(f) for f in stack)
