import asyncio

import pytest

from slashscript.slash_datatypes import ParseError, ScriptNotFoundError, UnboundVariableError
from slashscript.slash_runtime import ScriptRegistry, ScriptRunner, Script, ExecutionResult


def make_runner(**scripts):
    runner = ScriptRunner()
    for name, source in scripts.items():
        runner.scripts.register(name, source)
    return runner


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains=None):
    assert res.status == 'error', f"expected error, got success: {res.value!r}"
    if contains is not None:
        assert contains in res.error_message, res.error_message


# --- Registry ---

def test_registry_keeps_registration_order():
    reg = ScriptRegistry()
    reg.register("b", "/echo b")
    reg.register("a", "/echo a", description="first letter")
    reg.register("b", "/echo B")
    assert [s.name for s in reg.list()] == ["a", "b"]
    assert reg.get("a").description == "first letter"
    assert len(reg) == 2 and "a" in reg


def test_registry_accepts_command_sequences_and_scripts():
    reg = ScriptRegistry()
    script = reg.register("seq", ["/var $x = 1", "/echo $x"])
    assert script.source == "/var $x = 1\n/echo $x"
    renamed = reg.register("other", Script("ignored", ("/echo hi",), "desc"))
    assert renamed.name == "other"
    assert renamed.description == "desc"


def test_parse_is_cached_until_reregistered():
    reg = ScriptRegistry()
    reg.register("s", "/echo one")
    first = reg.parse("s")
    assert reg.parse("s") is first
    reg.register("s", "/echo two")
    assert reg.parse("s") is not first


def test_missing_scripts():
    reg = ScriptRegistry()
    with pytest.raises(ScriptNotFoundError):
        reg.get("nope")
    with pytest.raises(ScriptNotFoundError):
        reg.unregister("nope")
    reg.register("s", "/echo")
    reg.unregister("s")
    assert "s" not in reg


def test_parse_failure_names_script():
    reg = ScriptRegistry()
    reg.register("bad", "/echo ok\n/bogus")
    with pytest.raises(ParseError) as ei:
        reg.parse("bad")
    assert ei.value.script == "bad"
    assert (ei.value.line, ei.value.col) == (2, 1)


# --- Running registered scripts ---

@pytest.mark.asyncio
async def test_run_seeds_input_and_args():
    runner = make_runner(show="/echo $input\n/for $a in @args { /echo $a }")
    res = await runner.run("show", "a b")
    assert res.output == ["a b", "a", "b"]

    res = await runner.run("show", ["x", "y"])
    assert res.output == ['["x","y"]', "x", "y"]

    res = await runner.run("show")
    assert res.output == [""]


@pytest.mark.asyncio
async def test_run_raises_with_script_name():
    runner = make_runner(broken="/var $v = $nope")
    with pytest.raises(UnboundVariableError) as ei:
        await runner.run("broken")
    assert ei.value.script == "broken"
    assert (ei.value.line, ei.value.col) == (1, 1)


@pytest.mark.asyncio
async def test_runs_do_not_share_variables():
    runner = make_runner(setter="/var $x = 1", getter="/var $y = $x")
    assert_ok(await runner.run("setter"), 1)
    with pytest.raises(UnboundVariableError):
        await runner.run("getter")


# --- Nested scripts ---

@pytest.mark.asyncio
async def test_nested_script_gets_argument_as_input():
    runner = make_runner(child="/echo got $input")
    res = await runner.handle_script("/script run child hello")
    assert_ok(res, "got hello")
    assert res.output == ["got hello"]


@pytest.mark.asyncio
async def test_nested_script_has_fresh_variables_and_shared_functions():
    runner = make_runner(child='/echo /call shout($input)\n/var $leak = 1')
    src = '/func static shout($s) => "$s!"\n/var $x = "hey"\n/script run child $x\n/var $copy = $leak'
    res = await runner.handle_script(src)
    assert_error(res, "unbound variable $leak")
    assert res.output == ["hey!"]


@pytest.mark.asyncio
async def test_nesting_depth_is_limited(monkeypatch):
    monkeypatch.setenv("SLASH_MAX_SCRIPT_DEPTH", "3")
    runner = make_runner(again="/script run again")
    res = await runner.handle_script("/script run again")
    assert_error(res, "ScriptError: script nesting deeper than 3 (in script 'again')")


@pytest.mark.asyncio
async def test_unknown_script():
    runner = make_runner()
    res = await runner.handle_script("/script run ghost")
    assert_error(res, "ScriptNotFoundError: no script named 'ghost'")


@pytest.mark.asyncio
async def test_script_list_and_info():
    runner = ScriptRunner()
    runner.scripts.register("daily", "/echo standup\n/echo review", description="morning routine")
    runner.scripts.register("plain", "/echo x")
    res = await runner.handle_script("/script list")
    assert_ok(res, "daily - morning routine\nplain")

    res = await runner.handle_script("/script info daily")
    assert_ok(res, "daily: morning routine\n  /echo standup\n  /echo review")

    empty = await ScriptRunner().handle_script("/script list")
    assert_ok(empty, "(no scripts)")


# --- Error reporting ---

@pytest.mark.asyncio
async def test_error_in_nested_script_shows_its_source():
    runner = make_runner(child="/var $a = 1\n/var $v = $nope")
    res = await runner.handle_script("/script run child hello")
    msg = res.error_message
    assert msg.startswith("UnboundVariableError: unbound variable $nope (in script 'child')")
    assert "(line 2, col 1)" in msg
    assert "> 2 | /var $v = $nope" in msg
    assert "| ^" in msg
    assert 'Script stacktrace: (script:child "hello")' in msg
    assert res.format_error().startswith("Error on line 2, col 1: UnboundVariableError")


@pytest.mark.asyncio
async def test_lex_and_parse_errors_have_no_stacktrace():
    runner = ScriptRunner()
    res = await runner.handle_script('/echo "abc')
    assert_error(res, "LexError: unterminated string\n(line 1, col 7)")
    assert "Script stacktrace" not in res.error_message

    res = await runner.handle_script("/var $x")
    assert_error(res, "MissingArgument:")
    assert "Script stacktrace" not in res.error_message


@pytest.mark.asyncio
async def test_error_is_also_a_stderr_side_effect():
    res = await ScriptRunner().handle_script("/var $v = $nope")
    assert res.side_effects[-1]['topics'] == ['stderr']
    assert res.side_effects[-1]['message'] == res.error_message


@pytest.mark.asyncio
async def test_error_excerpt_follows_tab_expansion():
    res = await ScriptRunner().handle_script("/var $a = 1\n\t/var $b = $nope")
    assert_error(res, "(line 2, col 9)")
    lines = res.error_message.splitlines()
    assert "> 2 |         /var $b = $nope" in lines
    assert "    |         ^" in lines


@pytest.mark.asyncio
async def test_interleaved_runs_keep_their_own_stacktrace():
    runner = make_runner(slow="/sleep 0.2", failing="/var $v = $nope")
    slow = asyncio.create_task(runner.handle_script("/script run slow"))
    await asyncio.sleep(0.05)
    res = await runner.handle_script("/script run failing")
    assert_error(res, "Script stacktrace: (script:failing")
    assert "script:slow" not in res.error_message
    assert_ok(await slow)


def test_format_error_without_position():
    res = ExecutionResult(status='error', error_message="boom")
    assert res.format_error() == "boom"
    assert ExecutionResult(status='success').format_error() == ""
