"""
The core Rexa interpreter: statement execution and expression evaluation.
"""
import asyncio
import os
import sys
from typing import Any, Callable, Dict, List, Optional

import yaml

from rexa.rexa_errors import (
    RexaError, EvaluationError, TypeCoercionError, CancellationError, AddressHandlerError,
)
from rexa.rexa_datatypes import (
    Stem, UNDEFINED, normalize_value, is_numeric, to_number, to_string, truthy,
    Literal, VarRef, UnaryOp, BinaryOp, CallExpr, PipeOp, HeredocLiteral,
    CommandForm, Assignment, Say, If, Loop, LoopControl, Call, AddressSwitch, BlockLiteral,
    Signal, Return, Label, ArgBinding, Require, InterpolationStatement, Clause, Nop,
    FunctionEntry,
)
from rexa.rexa_environment import Environment
from rexa.rexa_resolver import FunctionRegistry, FunctionResolver, bind_arguments, invoke_entry, NO_PIPE
from rexa.rexa_address import AddressDispatcher
from rexa.rexa_interpolate import InterpolationEngine
from rexa.rexa_serialize import parse_strict

MAX_CALL_DEPTH = 100


# Internal control-flow signals; never visible to programs
class _LeaveLoop(Exception):
    pass


class _IterateLoop(Exception):
    pass


class _ReturnSignal(Exception):
    def __init__(self, value):
        self.value = value


class _ExitSignal(Exception):
    def __init__(self, value):
        self.value = value


class _SignalJump(Exception):
    def __init__(self, label: str, line: Optional[int]):
        self.label = label
        self.line = line


class Evaluator:
    """The Rexa execution engine.

    One evaluator runs one program at a time on a single control flow. The
    program is a flat top-level statement list; labels index into it, so
    `SIGNAL` and subroutine calls are jumps rather than nested scopes. Error
    traps and `SIGNAL label` are handled by the top-level loop only.
    """

    def __init__(self, *, dispatcher: Optional[AddressDispatcher] = None,
                 interpolation: Optional[InterpolationEngine] = None,
                 resolver: Optional[FunctionResolver] = None,
                 yield_interval: int = 64, debug: bool = False):
        self.side_effects: List[Dict[str, Any]] = []
        self.call_stack: List[Dict[str, Any]] = []
        self.env = Environment()
        # Scope of the innermost call in progress; builtins such as SYMBOL read it
        self.current_env = self.env
        self.source_dir: Optional[str] = None
        self.dispatcher = dispatcher or AddressDispatcher()
        self.interpolation = interpolation or InterpolationEngine()
        self.builtins = FunctionRegistry("builtin")
        self.internal = FunctionRegistry("internal")
        self.required = FunctionRegistry("required")
        self.resolver = resolver or FunctionResolver(
            self.builtins, self.internal, self.required, address_methods=self.dispatcher.method_entry)
        # async callable(identifier) -> entries; set by the runner
        self.require_hook: Optional[Callable] = None
        self.output_listener: Optional[Callable[[Dict[str, Any]], None]] = None
        self.program: tuple = ()
        self.labels: Dict[str, int] = {}
        self.traps: Dict[str, str] = {}
        self.arg_stack: List[list] = [[]]
        self.current_node = None
        self.current_line: Optional[int] = None
        self.error_context: Dict[str, Any] = {}
        self.yield_interval = yield_interval
        self.debug = debug
        self.statement_count = 0
        self.loop_depth = 0
        self.call_depth = 0
        self._cancel_requested = False
        self._halting: Optional[CancellationError] = None
        self._running = asyncio.Event()
        self._running.set()

    def _dbg(self, *parts):
        if self.debug or os.environ.get("REXA_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def emit(self, topic: str, message: str):
        effect = {'topics': [topic], 'message': message}
        self.side_effects.append(effect)
        if self.output_listener is not None:
            self.output_listener(effect)

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def _push_frame(self, name, args, line):
        self.call_stack.append({
            'name': name,
            'args': args,
            'line': line,
            'domain': None if self.dispatcher.is_default() else self.dispatcher.context.domain,
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self):
        self._cancel_requested = True
        self._running.set()

    def pause(self):
        self._running.clear()

    def resume(self):
        self._running.set()

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    async def _checkpoint(self, stmt):
        if not self._running.is_set():
            self._dbg("paused before line", stmt.line)
            await self._running.wait()
        if self._cancel_requested:
            raise CancellationError("Execution cancelled", line=stmt.line)
        self.statement_count += 1
        if self.yield_interval and self.statement_count % self.yield_interval == 0:
            await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # Program execution
    # ------------------------------------------------------------------

    def load_program(self, program):
        """Install a parsed program and register its labels as internal routines."""
        self.program = tuple(program)
        self.labels = {}
        self.internal.clear()
        for index, stmt in enumerate(self.program):
            if isinstance(stmt, Label) and stmt.name not in self.labels:
                self.labels[stmt.name] = index
                self.internal.register(FunctionEntry(
                    name=stmt.name, kind="internal", thunk=self._label_thunk(stmt.name),
                    variadic=True, extra_named=True, source="script"))

    def _label_thunk(self, name: str):
        async def thunk(*args, **kwargs):
            return await self.call_label(name, list(args), kwargs)
        return thunk

    def _label_index(self, label: str, line: Optional[int] = None) -> int:
        index = self.labels.get(label.upper())
        if index is None:
            raise EvaluationError(f"Label {label} not found", line=line)
        return index

    async def run(self, program, args=(), *, stop_at_label: bool = False) -> Any:
        """Run a program from its first statement.

        With `stop_at_label` execution ends at the first label reached by
        falling through, leaving the labelled routines to be called.
        """
        self.load_program(program)
        self.traps.clear()
        self.arg_stack = [list(args)]
        self.call_stack.clear()
        self.loop_depth = 0
        self.call_depth = 0
        self._halting = None
        self._cancel_requested = False
        try:
            value = await self._run_from(0, self.env, top=True, stop_at_label=stop_at_label)
        except _ExitSignal as e:
            value = e.value
        if self._halting is not None:
            halted, self._halting = self._halting, None
            raise halted
        return value

    async def _run_from(self, index: int, env: Environment, *, top: bool, stop_at_label: bool = False) -> Any:
        program = self.program
        pc = index
        while pc < len(program):
            stmt = program[pc]
            if stop_at_label and isinstance(stmt, Label):
                break
            pc += 1
            try:
                await self.exec_statement(stmt, env)
            except _ReturnSignal as ret:
                return ret.value
            except _SignalJump as jump:
                if not top:
                    raise
                self.call_stack.clear()
                pc = self._label_index(jump.label, jump.line) + 1
            except CancellationError as e:
                if not top or "HALT" not in self.traps:
                    raise
                label = self.traps.pop("HALT")
                self._dbg("HALT trap ->", label)
                self._cancel_requested = False
                self._halting = e
                self._set_condition(e, env)
                self.call_stack.clear()
                pc = self._label_index(label) + 1
            except RexaError as e:
                if not top or "ERROR" not in self.traps:
                    raise
                label = self.traps.pop("ERROR")
                self._dbg("ERROR trap ->", label, e.kind, e.message)
                self._set_condition(e, env)
                self.call_stack.clear()
                self.loop_depth = 0
                pc = self._label_index(label) + 1
        return ""

    def _set_condition(self, e: RexaError, env: Environment):
        e.with_context(line=self.current_line)
        self.error_context = {'line': e.line, 'function': e.function, 'domain': e.domain}
        env.write("RC", 1)
        env.write("SIGL", e.line if e.line is not None else "")
        env.write("ERROR_KIND", e.kind)
        env.write("ERROR_MESSAGE", e.message)
        env.write("ERROR_LINE", e.line if e.line is not None else "")
        env.write("ERROR_FUNCTION", e.function or "")
        env.write("ERROR_DOMAIN", e.domain or "")

    async def call_label(self, name: str, args: list, kwargs: dict) -> Any:
        """Run an internal subroutine with a fresh, argument-seeded environment."""
        index = self._label_index(name, self.current_line)
        if self.call_depth >= MAX_CALL_DEPTH:
            raise EvaluationError(f"Call depth limit ({MAX_CALL_DEPTH}) exceeded in {name}", line=self.current_line)
        env = Environment.seeded(kwargs)
        saved_ctx = self.dispatcher.context
        saved_loops = self.loop_depth
        self.arg_stack.append([a.copy() if isinstance(a, Stem) else a for a in args])
        self.call_depth += 1
        self.loop_depth = 0
        try:
            return await self._run_from(index + 1, env, top=False)
        finally:
            self.call_depth -= 1
            self.loop_depth = saved_loops
            self.arg_stack.pop()
            self.dispatcher.restore(saved_ctx)

    async def exec_block(self, statements, env: Environment):
        for stmt in statements:
            await self.exec_statement(stmt, env)

    async def exec_statement(self, stmt, env: Environment):
        await self._checkpoint(stmt)
        self.current_node = stmt
        self.current_line = stmt.line
        ctx = self.dispatcher.context
        if ctx.mode == "pattern" and not isinstance(stmt, (AddressSwitch, Label)):
            m = self.dispatcher.match(stmt.text)
            if m is not None:
                payload = {'line': stmt.text, 'groups': list(m.groups()), 'named': m.groupdict()}
                value = await self.dispatch(stmt.text, payload, mode="pattern", line=stmt.line)
                self._store_result(env, value)
                return
        match stmt:
            case Assignment():
                await self._exec_assignment(stmt, env)
            case Say(expr=expr):
                self.emit('stdout', to_string(await self.eval(expr, env)))
            case If():
                branch = stmt.then_body if truthy(await self.eval(stmt.condition, env)) else stmt.else_body
                await self.exec_block(branch, env)
            case Loop():
                await self._exec_loop(stmt, env)
            case LoopControl(action=action):
                if self.loop_depth == 0:
                    raise EvaluationError(f"{action.upper()} outside of a loop", line=stmt.line)
                raise _LeaveLoop() if action == "leave" else _IterateLoop()
            case Call():
                value = await self.call_function(stmt.name, stmt.args, env, as_statement=True, line=stmt.line)
                env.write("RESULT", value)
            case AddressSwitch():
                await self._exec_address(stmt, env)
            case BlockLiteral(literal=literal):
                if self.dispatcher.is_default():
                    env.write("RESULT", self._heredoc_value(literal, env))
                else:
                    self._store_result(env, await self._dispatch_heredoc(literal, env))
            case Signal():
                self._exec_signal(stmt)
            case Return(value=node, exit=is_exit):
                value = await self.eval(node, env) if node is not None else ""
                raise _ExitSignal(value) if is_exit else _ReturnSignal(value)
            case Label() | Nop():
                pass
            case ArgBinding(names=names):
                args = self.arg_stack[-1]
                for i, name in enumerate(names):
                    if i < len(args):
                        env.write(name, args[i])
                    elif not env.has(name):
                        env.write(name, "")
            case Require(identifier=node):
                identifier = to_string(await self.eval(node, env))
                await self.require(identifier, line=stmt.line)
            case InterpolationStatement():
                self._exec_interpolation(stmt)
            case Clause():
                await self._exec_clause(stmt, env)
            case _:
                raise EvaluationError(f"Unknown statement {type(stmt).__name__}", line=stmt.line)

    def _store_result(self, env: Environment, value):
        env.write("RESULT", value)
        env.write("RC", 0)

    async def require(self, identifier: str, line: Optional[int] = None):
        if self.require_hook is None:
            raise EvaluationError(f"No module loader available for {identifier}", line=line)
        try:
            entries = await self.require_hook(identifier)
        except RexaError as e:
            raise e.with_context(line=line)
        self.required.update(entries.values())
        return entries

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _is_bare_method(self, value, env: Environment) -> bool:
        """In function mode an unbound simple symbol on the right of `=` names a method."""
        return (isinstance(value, VarRef) and not value.tail and not env.has(value.name)
                and not self.dispatcher.is_default() and self.dispatcher.context.mode == "function")

    async def _exec_assignment(self, stmt: Assignment, env: Environment):
        if isinstance(stmt.value, HeredocLiteral):
            if self.dispatcher.is_default():
                value = self._heredoc_value(stmt.value, env)
            else:
                value = await self._dispatch_heredoc(stmt.value, env)
                self._store_result(env, value)
        elif stmt.command is not None:
            if self.dispatcher.is_default():
                value = await self.call_function(stmt.command.method, stmt.command.args, env,
                                                 line=stmt.line)
            else:
                value = await self._dispatch_command_form(stmt.command, env, stmt.line)
                self._store_result(env, value)
        elif self._is_bare_method(stmt.value, env):
            command = CommandForm(stmt.value.name, (), stmt.value.line, stmt.value.col)
            value = await self._dispatch_command_form(command, env, stmt.line)
            self._store_result(env, value)
        else:
            value = await self.eval(stmt.value, env)
        name, tail = self._resolve_symbol(stmt.target, env)
        env.write(name, value, tail)

    async def _exec_loop(self, stmt: Loop, env: Environment):
        self.loop_depth += 1
        try:
            match stmt.kind:
                case "block":
                    await self._loop_body(stmt, env)
                case "forever":
                    while await self._loop_body(stmt, env):
                        pass
                case "count":
                    n = to_number(await self.eval(stmt.count, env))
                    if n < 0 or int(n) != n:
                        raise EvaluationError(f"DO count must be a non-negative whole number, not {to_string(n)}",
                                              line=stmt.line)
                    for _ in range(int(n)):
                        if not await self._loop_body(stmt, env):
                            break
                case "while":
                    while truthy(await self.eval(stmt.condition, env)):
                        if not await self._loop_body(stmt, env):
                            break
                case "until":
                    while True:
                        if not await self._loop_body(stmt, env):
                            break
                        if truthy(await self.eval(stmt.condition, env)):
                            break
                case "range":
                    await self._exec_range(stmt, env)
                case "over":
                    collection = await self.eval(stmt.over, env)
                    if not isinstance(collection, Stem):
                        raise TypeCoercionError(f"DO ... OVER needs a stem, not {to_string(collection)!r}",
                                              line=stmt.line)
                    items = collection.values() if collection.count else list(collection.named.keys())
                    name, tail = self._resolve_symbol(stmt.var, env)
                    for item in items:
                        env.write(name, item, tail)
                        if not await self._loop_body(stmt, env):
                            break
        finally:
            self.loop_depth -= 1

    async def _exec_range(self, stmt: Loop, env: Environment):
        name, tail = self._resolve_symbol(stmt.var, env)
        current = to_number(await self.eval(stmt.start, env))
        end = to_number(await self.eval(stmt.end, env)) if stmt.end is not None else None
        step = to_number(await self.eval(stmt.step, env)) if stmt.step is not None else 1
        if step == 0:
            raise EvaluationError("DO ... BY step must not be zero", line=stmt.line)
        while end is None or (current <= end if step > 0 else current >= end):
            env.write(name, current, tail)
            if not await self._loop_body(stmt, env):
                break
            # The body may reassign the control variable
            current = to_number(env.read(name, tail)) + step
        else:
            env.write(name, current, tail)

    async def _loop_body(self, stmt: Loop, env: Environment) -> bool:
        """Run one iteration; False means LEAVE."""
        try:
            await self.exec_block(stmt.body, env)
        except _LeaveLoop:
            return False
        except _IterateLoop:
            return True
        return stmt.kind != "block"

    async def _exec_address(self, stmt: AddressSwitch, env: Environment):
        try:
            if stmt.command is not None:
                text = await self._command_text(stmt.command, None, env)
                value = await self.dispatch(text, None, mode="command", line=stmt.line, domain=stmt.domain)
                self._store_result(env, value)
                return
            rule = to_string(await self.eval(stmt.rule, env)) if stmt.rule is not None else None
            ctx = self.dispatcher.switch(stmt.domain, stmt.mode, rule)
            self._dbg("ADDRESS", ctx.domain, ctx.mode, ctx.rule)
        except AddressHandlerError as e:
            raise e.with_context(line=stmt.line)

    def _exec_signal(self, stmt: Signal):
        match stmt.action:
            case "on":
                self._label_index(stmt.label, stmt.line)
                self.traps[stmt.condition] = stmt.label
            case "off":
                self.traps.pop(stmt.condition, None)
            case _:
                self._label_index(stmt.label, stmt.line)
                raise _SignalJump(stmt.label, stmt.line)

    def _exec_interpolation(self, stmt: InterpolationStatement):
        try:
            match stmt.action:
                case "register":
                    self.interpolation.register(stmt.name, stmt.start, stmt.end)
                case "activate":
                    self.interpolation.activate(stmt.name)
                case _:
                    self.interpolation.activate_example(stmt.example)
        except RexaError as e:
            raise e.with_context(line=stmt.line)

    async def _exec_clause(self, stmt: Clause, env: Environment):
        ctx = self.dispatcher.context
        if self.dispatcher.is_default() or ctx.mode == "pattern":
            if stmt.error is not None:
                raise stmt.error
            if stmt.command is not None:
                value = await self.call_function(stmt.command.method, stmt.command.args, env,
                                                 as_statement=True, line=stmt.line)
            elif isinstance(stmt.expr, CallExpr):
                value = await self.call_function(stmt.expr.name, stmt.expr.args, env,
                                                 as_statement=True, line=stmt.line)
            else:
                value = await self.eval(stmt.expr, env)
            env.write("RESULT", value)
            return
        if ctx.mode == "function":
            if stmt.command is not None:
                self._store_result(env, await self._dispatch_command_form(stmt.command, env, stmt.line))
                return
            if isinstance(stmt.expr, (CallExpr, PipeOp)):
                env.write("RESULT", await self.eval(stmt.expr, env))
                return
        text = await self._command_text(stmt.expr, stmt.text, env)
        self._store_result(env, await self.dispatch(text, None, mode="command", line=stmt.line))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, method: str, payload: Any, *, mode: str, line: Optional[int] = None,
                       delimiter: Optional[str] = None, domain: Optional[str] = None) -> Any:
        self._dbg("DISPATCH", domain or self.dispatcher.context.domain, mode, method)
        return await self.dispatcher.invoke(method, payload, mode=mode, line=line,
                                            delimiter=delimiter, domain=domain)

    async def _command_text(self, expr, raw_text: Optional[str], env: Environment) -> str:
        """Quoted strings and concatenations are evaluated; anything else is sent as written."""
        if isinstance(expr, Literal) or (isinstance(expr, BinaryOp) and expr.op == "||") or raw_text is None:
            return to_string(await self.eval(expr, env))
        return self._interpolate(raw_text, env)

    async def _dispatch_command_form(self, command: CommandForm, env: Environment, line: int) -> Any:
        params = self.dispatcher.method_params(command.method)
        payload: Dict[str, Any] = {}
        positional = []
        for arg in command.args:
            value = await self.eval(arg.value, env)
            value = value.to_python() if isinstance(value, Stem) else value
            if arg.name is None:
                positional.append(value)
            else:
                payload[arg.name] = value
        free = [p for p in params if p not in payload]
        for value in list(positional):
            if not free:
                break
            payload[free.pop(0)] = value
            positional.pop(0)
        if positional:
            payload["args"] = positional
        return await self.dispatch(command.method, payload, mode="function", line=line)

    async def _dispatch_heredoc(self, literal: HeredocLiteral, env: Environment) -> Any:
        content = self._interpolate(literal.content, env)
        return await self.dispatch(literal.delimiter, content, mode=self.dispatcher.context.mode,
                                   line=literal.line, delimiter=literal.delimiter)

    def _heredoc_value(self, literal: HeredocLiteral, env: Environment):
        text = self._interpolate(literal.content, env)
        if literal.structured:
            try:
                return normalize_value(parse_strict(text, literal.structured))
            except (ValueError, yaml.YAMLError):
                self._dbg("structured literal fell back to text", literal.delimiter)
                return text
        return text

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def _interpolate(self, text: str, env: Environment) -> str:
        def lookup(ref: str):
            parts = ref.split(".")
            return env.read(parts[0], tuple(parts[1:]))
        return self.interpolation.apply(text, lookup)

    def _resolve_symbol(self, ref: VarRef, env: Environment):
        """Substitute bound scalar variables into a compound tail."""
        tail = []
        for seg in ref.tail:
            if seg.isdigit():
                tail.append(seg)
                continue
            value = env.read(seg)
            if value is UNDEFINED or isinstance(value, Stem):
                tail.append(seg)
            else:
                tail.append(to_string(value))
        return ref.name, tuple(tail)

    async def eval(self, node, env: Environment) -> Any:
        match node:
            case Literal(value=value, interpolate=interp):
                if interp and isinstance(value, str):
                    return self._interpolate(value, env)
                return value
            case VarRef():
                name, tail = self._resolve_symbol(node, env)
                value = env.read(name, tail)
                if value is UNDEFINED:
                    return "" if tail else node.symbol
                return value
            case UnaryOp(op=op, operand=operand):
                value = await self.eval(operand, env)
                try:
                    if op == "!":
                        return 0 if truthy(value) else 1
                    number = to_number(value)
                    return -number if op == "-" else number
                except RexaError as e:
                    raise e.with_context(line=node.line)
            case BinaryOp():
                return await self._eval_binary(node, env)
            case CallExpr(name=name, args=args):
                return await self.call_function(name, args, env, line=node.line)
            case PipeOp(left=left, call=call):
                piped = await self.eval(left, env)
                self._dbg("PIPE", call.name, "lhs_type", type(piped).__name__)
                return await self.call_function(call.name, call.args, env, piped=piped, line=call.line)
            case HeredocLiteral():
                return self._heredoc_value(node, env)
            case None:
                return ""
            case _:
                raise EvaluationError(f"Cannot evaluate {type(node).__name__}", line=self.current_line)

    async def _eval_binary(self, node: BinaryOp, env: Environment) -> Any:
        op = node.op
        if op == "&":
            if not truthy(await self.eval(node.left, env)):
                return 0
            return 1 if truthy(await self.eval(node.right, env)) else 0
        if op == "|":
            if truthy(await self.eval(node.left, env)):
                return 1
            return 1 if truthy(await self.eval(node.right, env)) else 0
        left = await self.eval(node.left, env)
        right = await self.eval(node.right, env)
        try:
            return self._binary(op, left, right)
        except RexaError as e:
            raise e.with_context(line=node.line)
        except (OverflowError, ValueError, ZeroDivisionError) as e:
            raise EvaluationError(f"Arithmetic error in {op}: {e}", line=node.line) from e

    def _binary(self, op: str, left, right):
        match op:
            case "||":
                return to_string(left) + to_string(right)
            case "+":
                return to_number(left) + to_number(right)
            case "-":
                return to_number(left) - to_number(right)
            case "*":
                return to_number(left) * to_number(right)
            case "/":
                a, b = to_number(left), to_number(right)
                if b == 0:
                    raise EvaluationError("Division by zero")
                if isinstance(a, int) and isinstance(b, int) and a % b == 0:
                    return a // b
                return a / b
            case "%":
                a, b = to_number(left), to_number(right)
                if b == 0:
                    raise EvaluationError("Division by zero")
                return a % b
            case "**":
                a, b = to_number(left), to_number(right)
                if isinstance(a, int) and isinstance(b, int) and b < 0:
                    return a ** float(b)
                return a ** b
            case "==":
                return 1 if to_string(left) == to_string(right) else 0
            case "\\==":
                return 0 if to_string(left) == to_string(right) else 1
        cmp = _compare(left, right)
        match op:
            case "=":
                return 1 if cmp == 0 else 0
            case "!=" | "\\=" | "<>":
                return 1 if cmp != 0 else 0
            case "<":
                return 1 if cmp < 0 else 0
            case ">":
                return 1 if cmp > 0 else 0
            case "<=":
                return 1 if cmp <= 0 else 0
            case ">=":
                return 1 if cmp >= 0 else 0
        raise EvaluationError(f"Unknown operator {op}")

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call_function(self, name: str, arg_nodes, env: Environment, *, piped: Any = NO_PIPE,
                            as_statement: bool = False, line: Optional[int] = None) -> Any:
        line = line if line is not None else self.current_line
        entry = await self.resolver.resolve(name, self.dispatcher.context, line)
        values = [(arg.name, await self.eval(arg.value, env)) for arg in arg_nodes]
        try:
            args, kwargs = bind_arguments(entry, values, piped, as_statement=as_statement)
        except RexaError as e:
            raise e.with_context(line=line, function=entry.name)
        self._dbg("CALL", entry.kind, entry.name, "argc", len(args), "kw", list(kwargs))
        self._push_frame(entry.name, args + list(kwargs.values()), line)
        self.current_env = env
        try:
            result = await invoke_entry(entry, args, kwargs)
        except (_ExitSignal, _SignalJump, RexaError) as e:
            if isinstance(e, RexaError):
                e.with_context(line=line, function=entry.name)
            raise
        except Exception as e:
            raise EvaluationError(f"{entry.name}: {e}", line=line, function=entry.name) from e
        self._pop_frame()
        return result


def _compare(left, right) -> int:
    """Loose comparison: numeric when both sides are numbers, else stripped strings."""
    if not isinstance(left, Stem) and not isinstance(right, Stem) and is_numeric(left) and is_numeric(right):
        a, b = to_number(left), to_number(right)
    else:
        a, b = to_string(left).strip(), to_string(right).strip()
    return (a > b) - (a < b)
