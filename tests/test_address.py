import asyncio

import pytest

from rexa import (
    ScriptRunner, RexaConfig, AddressHandler, HandlerInfo, HandlerReply, MethodTableHandler,
)
from rexa.rexa_address import AddressDispatcher
from rexa.rexa_errors import AddressHandlerError


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected, f"expected {expected!r}, got {res.value!r}"


def assert_error(res, kind: str | None = None, contains: str | None = None):
    assert res.status == 'error', f"expected error, got success: {res.value!r}"
    if kind is not None:
        assert res.error_kind == kind, res.error_message
    if contains is not None:
        assert contains in (res.error_message or ""), f"error did not contain {contains!r}: {res.error_message!r}"


def make_service():
    def do_thing(a, b=0):
        return {"sum": a + b}
    return MethodTableHandler("svc", ["SVC"], {"doThing": do_thing})


class StaticHandler(AddressHandler):
    def __init__(self, info, reply=None):
        self.info = info
        self.reply = reply

    def probe(self):
        return self.info

    def invoke(self, method, payload, context):
        return self.reply


@pytest.mark.asyncio
async def test_function_mode_command_form():
    handler = make_service()
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """ADDRESS SVC
doThing a=1 b=2
ADDRESS
RETURN RESULT.sum || "/" || RC
"""
    assert_ok(await runner.handle_script(src), "3/0")
    method, payload, ctx = handler.calls[0]
    assert (method, payload) == ("doThing", {"a": 1, "b": 2})
    assert (ctx.domain, ctx.mode, ctx.line) == ("SVC", "function", 2)


@pytest.mark.asyncio
async def test_function_mode_positional_operands_follow_declared_parameters():
    handler = make_service()
    runner = ScriptRunner()
    runner.register_handler(handler)
    assert_ok(await runner.handle_script("ADDRESS SVC\nx = doThing 5 6\nADDRESS\nRETURN x.sum"), 11)
    assert handler.calls[0][1] == {"a": 5, "b": 6}


@pytest.mark.asyncio
async def test_function_mode_bare_method_on_assignment_is_dispatched():
    handler = MethodTableHandler("svc", ["SVC"], {"listAll": lambda: "ITEMS"})
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """ADDRESS SVC
x = listAll
ADDRESS
RETURN x || "/" || RESULT || "/" || RC
"""
    assert_ok(await runner.handle_script(src), "ITEMS/ITEMS/0")
    assert [c[0] for c in handler.calls] == ["listAll"]


@pytest.mark.asyncio
async def test_function_mode_assignment_still_copies_bound_variables():
    handler = MethodTableHandler("svc", ["SVC"], {"listAll": lambda: "ITEMS"})
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """listAll = "local"
ADDRESS SVC
x = listAll
ADDRESS
RETURN x
"""
    assert_ok(await runner.handle_script(src), "local")
    assert handler.calls == []


@pytest.mark.asyncio
async def test_handler_methods_resolve_as_functions_in_their_domain():
    handler = make_service()
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """ADDRESS SVC
x = doThing(a=2, b=3)
y = doThing(4)
ADDRESS
RETURN x.sum || "," || y.sum
"""
    assert_ok(await runner.handle_script(src), "5,4")
    assert [c[1] for c in handler.calls] == [{"a": 2, "b": 3}, {"a": 4}]


@pytest.mark.asyncio
async def test_handler_methods_are_not_visible_outside_their_domain():
    runner = ScriptRunner()
    runner.register_handler(make_service())
    assert_error(await runner.handle_script("RETURN doThing(a=1)"), "UnknownFunctionError")


@pytest.mark.asyncio
async def test_builtins_win_over_handler_methods():
    handler = MethodTableHandler("svc", "SVC", {"length": lambda string: -1})
    runner = ScriptRunner()
    runner.register_handler(handler)
    assert_ok(await runner.handle_script('ADDRESS SVC\nx = LENGTH("abc")\nADDRESS\nRETURN x'), 3)
    assert handler.calls == []


@pytest.mark.asyncio
async def test_command_mode_sends_interpolated_text():
    handler = MethodTableHandler("sh", "SH", command=lambda text: text.upper())
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """name = "world"
ADDRESS SH COMMAND
echo {{name}}
"literal " || name
ADDRESS
RETURN RESULT
"""
    assert_ok(await runner.handle_script(src), "LITERAL WORLD")
    assert [c[0] for c in handler.calls] == ["echo world", "literal world"]
    assert all(c[1] is None and c[2].mode == "command" for c in handler.calls)


@pytest.mark.asyncio
async def test_one_shot_command_keeps_context():
    handler = MethodTableHandler("sh", "SH", command=lambda text: text.upper())
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """ADDRESS SH "ls -l"
RETURN RESULT || "@" || ADDRESS()
"""
    assert_ok(await runner.handle_script(src), "LS -L@DEFAULT")


@pytest.mark.asyncio
async def test_heredoc_mode():
    handler = MethodTableHandler("db", "DB", heredoc=lambda d, c: f"{d}:{c}")
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """table = "users"
ADDRESS DB HEREDOC
rows = <<SQL
SELECT * FROM {{table}}
SQL
ADDRESS
RETURN rows
"""
    assert_ok(await runner.handle_script(src), "SQL:SELECT * FROM users")
    _, payload, ctx = handler.calls[0]
    assert payload == "SELECT * FROM users"
    assert ctx.delimiter == "SQL"


@pytest.mark.asyncio
async def test_standalone_block_literal_in_domain_sets_result():
    handler = MethodTableHandler("db", "DB", heredoc=lambda d, c: len(c))
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """ADDRESS DB HEREDOC
<<Q
abc
Q
ADDRESS
RETURN RESULT
"""
    assert_ok(await runner.handle_script(src), 3)


@pytest.mark.asyncio
async def test_pattern_mode_with_probed_rule():
    handler = MethodTableHandler("bot", "BOT", on_match=lambda line, groups, named: groups[0],
                                 pattern=r"^>\s*(.*)$")
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """ADDRESS BOT PATTERN
> hello there
x = 5
ADDRESS
RETURN RESULT || "/" || x
"""
    assert_ok(await runner.handle_script(src), "hello there/5")
    assert len(handler.calls) == 1
    assert handler.calls[0][1]["line"] == "> hello there"


@pytest.mark.asyncio
async def test_pattern_mode_with_explicit_rule_and_named_groups():
    handler = MethodTableHandler("ops", "OPS", on_match=lambda line, groups, named: named["cmd"])
    runner = ScriptRunner()
    runner.register_handler(handler)
    src = """ADDRESS OPS PATTERN "^#(?P<cmd>\\w+)"
#deploy now
ADDRESS
RETURN RESULT
"""
    assert_ok(await runner.handle_script(src), "deploy")


@pytest.mark.asyncio
async def test_pattern_mode_without_rule_is_an_error():
    runner = ScriptRunner()
    runner.register_handler(make_service())
    assert_error(await runner.handle_script("ADDRESS SVC PATTERN"), "AddressHandlerError", "needs a rule")


@pytest.mark.asyncio
async def test_unhandled_failure_carries_domain_and_payload():
    def fail():
        raise RuntimeError("disk full")

    runner = ScriptRunner()
    runner.register_handler(MethodTableHandler("svc", "SVC", {"fail": fail}))
    res = await runner.handle_script("ADDRESS SVC\nfail")
    assert_error(res, "AddressHandlerError", "disk full")
    assert res.error_domain == "SVC"
    assert res.error_payload == {"kind": "RuntimeError", "message": "disk full"}


@pytest.mark.asyncio
async def test_unknown_method_is_a_failure_reply():
    runner = ScriptRunner()
    runner.register_handler(make_service())
    res = await runner.handle_script("ADDRESS SVC\nnoSuchThing x=1")
    assert_error(res, "AddressHandlerError", "no method 'noSuchThing'")


@pytest.mark.asyncio
async def test_dispatch_timeout():
    async def slow():
        await asyncio.sleep(1)

    runner = ScriptRunner(config=RexaConfig(dispatch_timeout=0.05))
    runner.register_handler(MethodTableHandler("svc", "SVC", {"slow": slow}))
    res = await runner.handle_script("ADDRESS SVC\nslow")
    assert_error(res, "AddressHandlerError", "timed out")
    assert res.error_payload["kind"] == "Timeout"


@pytest.mark.asyncio
async def test_unregistered_domain():
    assert_error(await ScriptRunner().handle_script("ADDRESS NOPE"), "AddressHandlerError", "NOPE")


@pytest.mark.asyncio
async def test_context_is_restored_after_call():
    runner = ScriptRunner()
    runner.register_handler(make_service())
    src = """CALL sub
RETURN ADDRESS() || "," || RESULT
sub:
ADDRESS SVC
RETURN ADDRESS()
"""
    assert_ok(await runner.handle_script(src), "DEFAULT,SVC")


@pytest.mark.asyncio
async def test_mapping_reply_is_normalised():
    info = HandlerInfo("static", ("ST",))
    runner = ScriptRunner()
    runner.register_handler(StaticHandler(info, {"success": True, "result": [1, 2, 3]}))
    assert_ok(await runner.handle_script('ADDRESS ST\nping\nADDRESS\nRETURN RESULT.0'), 3)


@pytest.mark.asyncio
async def test_malformed_reply():
    runner = ScriptRunner()
    runner.register_handler(StaticHandler(HandlerInfo("static", ("ST",)), "nope"))
    assert_error(await runner.handle_script('ADDRESS ST\nping'), "AddressHandlerError", "malformed")


def test_registration_validates_probe():
    dispatcher = AddressDispatcher()
    with pytest.raises(TypeError):
        dispatcher.register(object())
    with pytest.raises(TypeError):
        dispatcher.register(StaticHandler("not info"))
    with pytest.raises(ValueError):
        dispatcher.register(StaticHandler(HandlerInfo("", ("X",))))
    with pytest.raises(ValueError):
        dispatcher.register(StaticHandler(HandlerInfo("x", ())))
    with pytest.raises(AddressHandlerError):
        dispatcher.register(StaticHandler(HandlerInfo("x", ("X",), pattern="(")))
    assert dispatcher.domains() == []


def test_one_handler_may_serve_several_domains():
    dispatcher = AddressDispatcher()
    info = dispatcher.register(StaticHandler(HandlerInfo("multi", ("A", "b")), HandlerReply(True, 1)))
    assert info.domains == ("A", "b")
    assert dispatcher.domains() == ["A", "B"]
    assert dispatcher.switch("b").domain == "B"
    assert dispatcher.switch().domain == "DEFAULT"
