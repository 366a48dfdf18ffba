import pytest

from slashscript.slash_datatypes import (
    FALSY, Entry, IterableSource, FunctionDefinition, InterpolatedString, VarPart,
)
from slashscript.slash_printer import Printer
from slashscript.slash_runtime import RangeProducer, Script
from slashscript.slash_serialize import deserialize, detect_format, serialize, to_builtin


@pytest.fixture
def printer():
    return Printer()


@pytest.mark.parametrize("value, text", [
    (None, ""),
    (FALSY, ""),
    (True, "true"),
    (False, "false"),
    (3, "3"),
    (2.0, "2"),
    (2.5, "2.5"),
    ("plain", "plain"),
    (["a", 2, None], '["a",2,null]'),
    ({"k": [1]}, '{"k":[1]}'),
    (Entry("docs/a.md", {"stem": "a"}), "docs/a.md"),
])
def test_to_text(printer, value, text):
    assert printer.to_text(value) == text


def test_iterable_source_text(printer):
    src = IterableSource("range", RangeProducer(), (1, 4))
    assert printer.to_text(src) == "range(1, 4)"
    assert printer.pformat(src) == "range(1, 4)"


def test_pformat_values(printer):
    assert printer.pformat("say \"hi\"") == '"say \\"hi\\""'
    assert printer.pformat(None) == "null"
    assert printer.pformat(FALSY) == "FALSY"
    assert printer.pformat([1, "a", [True]]) == '[1, "a", [true]]'
    assert printer.pformat({"a": 1}) == '{"a": 1}'


def test_pformat_function_definitions(printer):
    static = FunctionDefinition("greet", ("n",), "static",
                                InterpolatedString(("Hi, ", VarPart("n"), "! Cost: $5")))
    assert printer.pformat(static) == '/func static greet($n) => "Hi, $n! Cost: \\$5"'

    code = FunctionDefinition("add", ("a", "b"), "code", "return a + b;", "js")
    assert printer.pformat(code) == "/func js add($a, $b) { return a + b; }"


def test_listings(printer):
    assert printer.render_vars({}, {}) == "(no variables)"
    assert printer.render_vars({"b": "x", "a": 1}, {"xs": [1]}) == '$a = 1\n$b = "x"\n@xs = [1]'
    assert printer.render_funcs({}) == "(no functions)"
    assert printer.render_scripts([]) == "(no scripts)"
    script = Script("deploy", ("/echo a", "/echo b"), "ship it")
    assert printer.render_scripts([script]) == "deploy - ship it"
    assert printer.render_script_info(script) == "deploy: ship it\n  /echo a\n  /echo b"


def test_listings_do_not_html_escape(printer):
    assert printer.render_vars({"t": "<b>&</b>"}, {}) == '$t = "<b>&</b>"'


def test_serialize_json_and_yaml():
    value = {"a": 1, "b": [FALSY, Entry("x", {})]}
    assert serialize(value, fmt="json", pretty=False) == '{"a":1,"b":[false,"x"]}'
    assert deserialize(serialize(value, fmt="yaml"), fmt="yaml") == {"a": 1, "b": [False, "x"]}
    with pytest.raises(ValueError):
        serialize(value, fmt="toml")


def test_deserialize_detection_and_fallbacks():
    assert deserialize('{"a": [1, 2]}') == {"a": [1, 2]}
    assert deserialize("a: 1\nb: [x, y]\n", content_type="application/json") == {"a": 1, "b": ["x", "y"]}
    assert deserialize("plain words") == "plain words"
    assert deserialize("[not json", fmt="json") == "[not json"
    assert deserialize(b"caf\xc3\xa9", content_type="text/plain; charset=utf-8") == "café"


def test_detect_format_and_to_builtin():
    assert detect_format("application/x-yaml") == "yaml"
    assert detect_format(None, "  [1]") == "json"
    assert detect_format("text/plain", "hello") is None
    assert to_builtin((1, (2,))) == [1, [2]]
