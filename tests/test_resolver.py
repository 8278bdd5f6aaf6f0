import pytest

from rexa import ScriptRunner, RexaHost, RexaConfig, ControlChannel, rexa_api_method
from rexa.rexa_datatypes import AddressContext, FunctionEntry, operation
from rexa.rexa_errors import ArgumentBindingError, MissingArgumentError, UnknownFunctionError
from rexa.rexa_resolver import (
    FunctionRegistry, FunctionResolver, CapabilityBridge, RemoteProcedureBridge, bind_arguments, NO_PIPE,
)


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected, f"expected {expected!r}, got {res.value!r}"


def entry(name, kind):
    return FunctionEntry.from_callable(name, kind, lambda: kind)


class DictBridge(CapabilityBridge):
    def __init__(self, *names):
        self.entries = {n.upper(): entry(n, "capability") for n in names}

    def lookup(self, name):
        return self.entries.get(name.upper())


class FakeChannel(ControlChannel):
    def __init__(self, reply):
        self.reply = reply
        self.messages = []

    async def request(self, message):
        self.messages.append(message)
        return self.reply


def make_resolver(**kwargs):
    builtins, internal, required = FunctionRegistry("builtin"), FunctionRegistry("internal"), FunctionRegistry("required")
    for registry in (builtins, internal, required):
        registry.register(entry("F", registry.kind))
    methods = {"F": entry("F", "address-method")}
    resolver = FunctionResolver(builtins, internal, required,
                                address_methods=lambda name, ctx: methods.get(name.upper()), **kwargs)
    return resolver, (builtins, internal, required)


@pytest.mark.asyncio
async def test_tiers_are_walked_in_order():
    resolver, (builtins, internal, required) = make_resolver(
        capabilities=[DictBridge("F")],
        remote=RemoteProcedureBridge(FakeChannel({"success": True})))
    ctx = AddressContext("SVC")
    kinds = []
    for registry in (builtins, internal, required):
        kinds.append((await resolver.resolve("f", ctx)).kind)
        registry.unregister("F")
    kinds.append((await resolver.resolve("f", ctx)).kind)
    resolver.address_methods = None
    kinds.append((await resolver.resolve("f", ctx)).kind)
    resolver.capabilities.clear()
    kinds.append((await resolver.resolve("f", ctx)).kind)
    assert kinds == ["builtin", "internal", "required", "address-method", "capability", "remote"]


@pytest.mark.asyncio
async def test_fallback_order_is_configurable():
    resolver, _ = make_resolver(capabilities=[DictBridge("G")],
                                remote=RemoteProcedureBridge(FakeChannel({"success": True})),
                                fallback_order=("remote", "capability"))
    assert (await resolver.resolve("G")).kind == "remote"


def test_fallback_order_must_be_a_permutation():
    with pytest.raises(ValueError):
        make_resolver(fallback_order=("capability",))


@pytest.mark.asyncio
async def test_unresolved_name():
    resolver, _ = make_resolver()
    with pytest.raises(UnknownFunctionError) as exc:
        await resolver.resolve("missing", line=7)
    assert exc.value.line == 7
    assert exc.value.function == "missing"


@pytest.mark.asyncio
async def test_autoload_requires_then_retries():
    calls = []
    resolver, (_, _, required) = make_resolver()

    async def require(identifier):
        calls.append(identifier)
        required.register(entry("LATE", "required"))

    resolver.autoload = {"LATE": "./late.py"}
    resolver.require = require
    assert (await resolver.resolve("late")).kind == "required"
    assert (await resolver.resolve("late")).kind == "required"
    assert calls == ["./late.py"]


def test_bind_named_then_positional():
    def f(a, b=2, c=3):
        return a, b, c
    e = FunctionEntry.from_callable("F", "builtin", f)
    assert bind_arguments(e, [(None, 1), ("C", 9)]) == ([1], {"c": 9})
    assert bind_arguments(e, [("b", 5), (None, 1)]) == ([1, 5], {})


def test_bind_errors():
    e = FunctionEntry.from_callable("F", "builtin", lambda a, b=2: a)
    with pytest.raises(ArgumentBindingError):
        bind_arguments(e, [("zzz", 1)])
    with pytest.raises(ArgumentBindingError):
        bind_arguments(e, [("a", 1), ("A", 2)])
    with pytest.raises(ArgumentBindingError):
        bind_arguments(e, [(None, 1), (None, 2), (None, 3)])
    with pytest.raises(MissingArgumentError):
        bind_arguments(e, [("b", 1)])


def test_bind_variadic_and_extra_named():
    e = FunctionEntry.from_callable("V", "builtin", lambda first, *rest, **extra: None)
    assert bind_arguments(e, [(None, 1), (None, 2), ("k", 3)], piped=0) == ([0, 1, 2], {"k": 3})
    assert bind_arguments(e, [(None, 1)], piped=NO_PIPE) == ([1], {})


def test_bind_operation_rules():
    e = FunctionEntry.from_callable("OP", "builtin", operation(lambda message: None))
    assert e.call_style == "operation"
    assert bind_arguments(e, [("message", "x")], as_statement=True) == (["x"], {})
    with pytest.raises(ArgumentBindingError):
        bind_arguments(e, [("message", "x")])
    with pytest.raises(ArgumentBindingError):
        bind_arguments(e, [(None, "x")], as_statement=True)


@pytest.mark.asyncio
async def test_remote_bridge_round_trip():
    channel = FakeChannel({"success": True, "result": [1, 2]})
    runner = ScriptRunner(control_channel=channel)
    assert_ok(await runner.handle_script("x = remote_sum(1, 2, scale=3)\nRETURN x.0"), 2)
    assert channel.messages == [{"type": "call", "function": "remote_sum", "args": [1, 2], "kwargs": {"scale": 3}}]


@pytest.mark.asyncio
async def test_remote_unknown_function_reply():
    channel = FakeChannel({"success": False, "error": {"kind": "UnknownFunctionError", "message": "nope"}})
    res = await ScriptRunner(control_channel=channel).handle_script("RETURN mystery()")
    assert res.status == 'error'
    assert res.error_kind == "UnknownFunctionError"


@pytest.mark.asyncio
async def test_remote_failure_reply():
    channel = FakeChannel({"success": False, "error": {"kind": "Boom", "message": "remote broke"}})
    res = await ScriptRunner(control_channel=channel).handle_script("RETURN mystery()")
    assert res.error_kind == "AddressHandlerError"
    assert "remote broke" in res.error_message
    assert res.error_payload == {"kind": "Boom", "message": "remote broke"}
    assert res.error_function == "mystery"


class Game(RexaHost):
    def __init__(self):
        super().__init__()
        self.hp = 100

    @rexa_api_method
    def take_damage(self, amount):
        self.hp -= int(amount)
        return self.hp

    @rexa_api_method
    def which(self):
        return "capability"

    def hidden(self):
        return "no"


@pytest.mark.asyncio
async def test_host_methods_are_capabilities():
    host = Game()
    runner = ScriptRunner(host_object=host)
    assert_ok(await runner.handle_script("RETURN take_damage(5)"), 95)
    assert host.hp == 95
    res = await runner.handle_script("RETURN hidden()")
    assert res.error_kind == "UnknownFunctionError"


@pytest.mark.asyncio
async def test_runner_fallback_order():
    channel = FakeChannel({"success": True, "result": "remote"})
    default = ScriptRunner(Game(), control_channel=channel)
    assert_ok(await default.handle_script("RETURN which()"), "capability")
    flipped = ScriptRunner(Game(), control_channel=channel,
                           config=RexaConfig(fallback_order=("remote", "capability")))
    assert_ok(await flipped.handle_script("RETURN which()"), "remote")


@pytest.mark.asyncio
async def test_labels_shadow_required_functions():
    runner = ScriptRunner()
    runner.register_function("greet", lambda: "required")
    assert_ok(await runner.handle_script("RETURN greet()"), "required")
    assert_ok(await runner.handle_script("RETURN greet()\ngreet:\nRETURN 'label'"), "label")


@pytest.mark.asyncio
async def test_builtins_cannot_be_shadowed():
    runner = ScriptRunner()
    runner.register_function("ABS", lambda number: "mine")
    assert_ok(await runner.handle_script("RETURN ABS(-3)\nabs:\nRETURN 'label'"), 3)


@pytest.mark.asyncio
async def test_symbol_and_info_introspection():
    runner = ScriptRunner()
    src = """x = 1
RETURN SYMBOL("x") || SYMBOL("ABS") || SYMBOL("zzz") || SYMBOL("1x")
"""
    assert_ok(await runner.handle_script(src), "VARFUNCLITBAD")
    src = """info = INFO("SUBSTR")
RETURN info.kind || "/" || info.category || "/" || info.params.0
"""
    assert_ok(await runner.handle_script(src), "builtin/string/4")
    res = await runner.handle_script('RETURN INFO("nothing")')
    assert res.error_kind == "UnknownFunctionError"
