from rexa.rexa_datatypes import Stem, UNDEFINED
from rexa.rexa_printer import Printer


def test_scalars():
    p = Printer()
    assert p.pformat(3) == "3"
    assert p.pformat(2.0) == "2"
    assert p.pformat(True) == "1"
    assert p.pformat("plain") == "plain"
    assert p.pformat("") == "''"
    assert p.pformat(" padded") == "' padded'"
    assert p.pformat("a: b") == "'a: b'"
    assert p.pformat(None) == "''"
    assert p.pformat(UNDEFINED) == "<undefined>"


def test_stems_print_positional_then_named():
    p = Printer()
    assert p.pformat(Stem()) == "{}"
    assert p.pformat(Stem(["a", "b"], {"k": 1})) == "{1: a, 2: b, k: 1}"
    assert p.pformat(Stem(named={"inner": Stem([1])})) == "{inner: {1: 1}}"


def test_wide_values_break_across_lines():
    p = Printer(width=20)
    out = p.pformat(Stem(["alpha", "beta", "gamma"], {"nested": Stem(["x"])}))
    assert out == "{\n  1: alpha,\n  2: beta,\n  3: gamma,\n  nested: {1: x}\n}"


def test_python_containers():
    p = Printer()
    assert p.pformat({"a": [1, 2]}) == "{a: {1: 1, 2: 2}}"


def test_frames():
    p = Printer()
    assert p.pformat_frame({"name": "ABS", "args": ["x", Stem([1, 2])]}) == "(ABS x #[2])"
    assert p.pformat_frame({"name": "F", "args": [Stem(named={"k": 1})]}) == "(F #{...})"
    assert p.pformat_frame({"name": "NOARGS", "args": []}) == "(NOARGS)"
    assert p.pformat_frame({"args": ["y" * 30]}) == "(<call> " + "y" * 21 + "...)"
