import asyncio
import shutil
import sys

import pytest

from slashscript.slash_runtime import Capabilities, ScriptRunner
from slashscript.slash_sandbox import (
    CodeExecutionError, CodeTimeoutError, SubprocessCodeExecutor, truncate_output,
)

requires_node = pytest.mark.skipif(shutil.which("node") is None, reason="node is not installed")


def python_executor(**kwargs):
    return SubprocessCodeExecutor([sys.executable], **kwargs)


def test_truncate_output():
    assert truncate_output("") == ("", False)
    assert truncate_output("short", 100) == ("short", False)
    text, truncated = truncate_output("x" * 100, 20)
    assert truncated
    assert text.endswith("[TRUNCATED]")
    assert len(text.encode()) <= 20


def test_command_selection(monkeypatch):
    monkeypatch.setenv("SLASH_CODE_COMMAND", "python3 -I")
    executor = SubprocessCodeExecutor()
    assert executor.command == ["python3", "-I"]
    assert executor.is_python
    assert not SubprocessCodeExecutor("deno run").is_python


def test_js_wrapper_binds_parameters():
    program = SubprocessCodeExecutor(["node"]).wrap("return a + b;", {"a": 1, "b": 2})
    assert "const __fn = async (a, b) => {" in program
    assert '__fn(__params["a"], __params["b"])' in program
    assert "'{}'" in program


@pytest.mark.asyncio
async def test_python_body_returns_json_value():
    executor = python_executor()
    assert await executor.execute("return a + b", {"a": 2, "b": 3}) == 5
    assert await executor.execute("print('noise')\nreturn {'k': [n, n]}", {"n": 1}) == {"k": [1, 1]}
    assert await executor.execute("", {}) is None


@pytest.mark.asyncio
async def test_python_body_error_reports_last_line():
    with pytest.raises(CodeExecutionError) as ei:
        await python_executor().execute("raise ValueError('bad input')", {})
    assert str(ei.value) == "ValueError: bad input"
    assert ei.value.exit_code != 0
    assert "Traceback" in ei.value.stderr


@pytest.mark.asyncio
async def test_python_body_timeout():
    with pytest.raises(CodeTimeoutError):
        await python_executor(timeout=0.5).execute("import time\ntime.sleep(5)", {})


@pytest.mark.asyncio
async def test_code_function_through_script():
    runner = ScriptRunner(Capabilities(code=python_executor()))
    src = "/func code total($xs) {\n    return sum(xs)\n}\n/list @nums = [1, 2, 3]\n/var $t = /call total(@nums)\n/echo total=$t"
    res = await runner.handle_script(src)
    assert res.status == 'success', res.error_message
    assert res.output == ["total=6"]


@pytest.mark.asyncio
async def test_inline_code_body_through_script():
    runner = ScriptRunner(Capabilities(code=python_executor()))
    res = await runner.handle_script("/func code f($a) { x = a\n    return x + 1 }\n/echo /call f(1)")
    assert res.status == 'success', res.error_message
    assert res.output == ["2"]


@pytest.mark.asyncio
async def test_cancel_kills_running_body():
    runner = ScriptRunner(Capabilities(code=python_executor()))
    task = asyncio.create_task(runner.handle_script("/func code slow() {\n    import time\n    time.sleep(30)\n}\n/call slow()"))
    await asyncio.sleep(0.5)
    runner.cancel()
    res = await asyncio.wait_for(task, timeout=5)
    assert res.status == 'error'
    assert res.error_message.startswith("CancelledError:")


@requires_node
@pytest.mark.asyncio
async def test_js_body_runs_in_node():
    executor = SubprocessCodeExecutor(["node"])
    assert await executor.execute("console.log('ignored');\nreturn a * b;", {"a": 6, "b": 7}) == 42


@requires_node
@pytest.mark.asyncio
async def test_js_error_reports_first_line():
    with pytest.raises(CodeExecutionError) as ei:
        await SubprocessCodeExecutor(["node"]).execute("throw new Error('nope');", {})
    assert "nope" in str(ei.value)
