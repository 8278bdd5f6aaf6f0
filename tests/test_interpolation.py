import asyncio

import pytest

from rexa import ScriptRunner
from rexa.rexa_datatypes import Stem, UNDEFINED
from rexa.rexa_errors import DuplicatePatternNameError, InvalidDelimiterError, EvaluationError
from rexa.rexa_interpolate import InterpolationEngine


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


def lookup_from(values):
    def lookup(ref):
        parts = ref.split(".")
        value = values.get(parts[0], UNDEFINED)
        for key in parts[1:]:
            if not isinstance(value, Stem):
                return UNDEFINED
            value = value.get(key)
        return value
    return lookup


def test_builtin_patterns():
    engine = InterpolationEngine()
    lookup = lookup_from({"name": "bo", "user": Stem(named={"id": 7})})
    assert engine.apply("hi {{name}} #{{ user.id }}", lookup) == "hi bo #7"
    engine.activate("shell")
    assert engine.apply("${name}/{{name}}", lookup) == "bo/{{name}}"
    engine.activate("BATCH")
    assert engine.apply("%name%!", lookup) == "bo!"
    engine.activate("brackets")
    assert engine.apply("[[name]]", lookup) == "bo"


def test_unresolved_references_are_left_as_written():
    engine = InterpolationEngine()
    lookup = lookup_from({"a": 1})
    assert engine.apply("{{missing}} {{a}} {{not a ref}} {{a", lookup) == "{{missing}} 1 {{not a ref}} {{a"


def test_register_validation_leaves_registry_untouched():
    engine = InterpolationEngine()
    before = [p.name for p in engine.patterns()]
    with pytest.raises(DuplicatePatternNameError):
        engine.register("Shell", "<", ">")
    with pytest.raises(InvalidDelimiterError):
        engine.register("angle", "", ">")
    with pytest.raises(InvalidDelimiterError):
        engine.register("", "<", ">")
    assert [p.name for p in engine.patterns()] == before
    engine.register("angle", "<", ">")
    assert engine.get("ANGLE").start == "<"


def test_activate_unknown_pattern():
    with pytest.raises(EvaluationError):
        InterpolationEngine().activate("nope")


def test_activate_by_example():
    engine = InterpolationEngine()
    assert engine.activate_example("${v}").name == "shell"
    pattern = engine.activate_example("<<v>>")
    assert (pattern.start, pattern.end) == ("<<", ">>")
    assert engine.active is pattern
    assert engine.apply("<<x>>", lookup_from({"x": "y"})) == "y"
    with pytest.raises(InvalidDelimiterError):
        engine.activate_example("<vv>")
    with pytest.raises(InvalidDelimiterError):
        engine.activate_example("v>")


@pytest.mark.asyncio
async def test_double_quoted_strings_interpolate():
    src = """name = "bo"
RETURN "hi {{name}}" || ' {{name}}'
"""
    assert_ok(await ScriptRunner().handle_script(src), "hi bo {{name}}")


@pytest.mark.asyncio
async def test_interpolation_statements_switch_patterns():
    src = """name = "bo"
INTERPOLATION shell
a = "${name}"
INTERPOLATION REGISTER angle "<" ">"
INTERPOLATION angle
b = "<name>"
INTERPOLATION "@@v@@"
c = "@@name@@"
RETURN a || b || c || " " || INTERPOLATION()
"""
    assert_ok(await ScriptRunner().handle_script(src), "bobobo @@v@@")


@pytest.mark.asyncio
async def test_heredoc_bodies_use_the_active_pattern():
    src = """who = "world"
INTERPOLATION batch
text = <<TXT
hello %who%
TXT
RETURN text
"""
    assert_ok(await ScriptRunner().handle_script(src), "hello world")


@pytest.mark.asyncio
async def test_duplicate_registration_is_an_error():
    res = await ScriptRunner().handle_script('INTERPOLATION REGISTER shell "<" ">"')
    assert_error(res, "DuplicatePatternNameError")
    assert res.error_token["line"] == 1


@pytest.mark.asyncio
async def test_each_runner_has_its_own_patterns():
    first, second = ScriptRunner(), ScriptRunner()
    results = await asyncio.gather(
        first.handle_script('INTERPOLATION shell\nx = 1\nRETURN "${x}{{x}}"'),
        second.handle_script('x = 2\nRETURN "${x}{{x}}"'),
    )
    assert [r.value for r in results] == ["1{{x}}", "${x}2"]
