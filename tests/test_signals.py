import pytest

from rexa import ScriptRunner, MethodTableHandler


async def run_rexa(src: str, runner: ScriptRunner | None = None):
    runner = runner or ScriptRunner()
    return await runner.handle_script(src)


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


@pytest.mark.asyncio
async def test_error_trap_sets_condition_variables():
    src = """SIGNAL ON ERROR
x = 1 / 0
RETURN "unreached"
ERROR:
RETURN ERROR_KIND || ":" || SIGL || ":" || RC
"""
    assert_ok(await run_rexa(src), "EvaluationError:2:1")


@pytest.mark.asyncio
async def test_error_trap_with_named_label():
    src = """SIGNAL ON ERROR NAME recover
RETURN nope()
recover:
RETURN ERROR_MESSAGE
"""
    assert_ok(await run_rexa(src), "Unknown function nope")


@pytest.mark.asyncio
async def test_trap_is_disarmed_after_firing():
    src = """SIGNAL ON ERROR
x = 1 / 0
ERROR:
y = missing_fn()
"""
    assert_error(await run_rexa(src), "UnknownFunctionError")


@pytest.mark.asyncio
async def test_signal_off_disables_trap():
    src = """SIGNAL ON ERROR
SIGNAL OFF ERROR
x = 1 / 0
ERROR:
RETURN "trapped"
"""
    assert_error(await run_rexa(src), "EvaluationError")


@pytest.mark.asyncio
async def test_signal_on_needs_existing_label():
    assert_error(await run_rexa("SIGNAL ON ERROR NAME ghost"), "EvaluationError", "GHOST")


@pytest.mark.asyncio
async def test_errors_inside_subroutines_reach_top_level_trap():
    src = """SIGNAL ON ERROR
CALL bad
RETURN "no"
bad:
RETURN ABS("x")
ERROR:
RETURN ERROR_FUNCTION || "@" || ERROR_LINE
"""
    assert_ok(await run_rexa(src), "ABS@5")


@pytest.mark.asyncio
async def test_handler_failure_is_trappable():
    def fail():
        raise RuntimeError("x")

    runner = ScriptRunner()
    runner.register_handler(MethodTableHandler("svc", "SVC", {"fail": fail}))
    src = """SIGNAL ON ERROR
ADDRESS SVC
fail
RETURN "no"
ERROR:
RETURN ERROR_MESSAGE || "@" || ERROR_DOMAIN
"""
    assert_ok(await run_rexa(src, runner), "x@SVC")


@pytest.mark.asyncio
async def test_trap_can_resume_with_signal():
    src = """SIGNAL ON ERROR
x = ABS("bad")
done:
RETURN "resumed " || RC
ERROR:
SIGNAL done
"""
    assert_ok(await run_rexa(src), "resumed 1")


@pytest.mark.asyncio
async def test_error_report_includes_source_and_stacktrace():
    src = """RETURN outer(1)
outer:
ARG v
RETURN ABS("bad")
"""
    res = await run_rexa(src)
    assert_error(res, "TypeCoercionError")
    assert res.error_function == "ABS"
    assert res.error_token["line"] == 4
    assert "> 4 | RETURN ABS(\"bad\")" in res.error_message
    assert "REXA stacktrace: (OUTER 1) (ABS bad)" in res.error_message
    assert res.format_error().startswith("Error on line 4")
    assert any(e['topics'] == ['stderr'] for e in res.side_effects)


@pytest.mark.asyncio
async def test_parse_error_result():
    res = await run_rexa('SAY 1\nDO\n  SAY 2\n')
    assert_error(res, "ParseError", "Missing END")
    assert res.error_token == {'line': 2, 'col': 1}
    assert res.format_error().startswith("Error on line 2, col 1")


@pytest.mark.asyncio
async def test_deferred_clause_error_is_raised_when_reached():
    res = await run_rexa('SAY "before"\n> not valid rexa')
    assert_error(res, "ParseError", "Unexpected")
    assert res.stdout == ["before"]
