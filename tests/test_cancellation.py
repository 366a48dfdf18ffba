import asyncio

import pytest

from slashscript.slash_runtime import Capabilities, ScriptRunner, HumanInput


class FakeHuman(HumanInput):
    """Answers from a queue; an empty queue blocks until the run is cancelled."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.asked = []
        self.was_cancelled = False

    async def _answer(self, message):
        self.asked.append(message)
        if self.answers:
            return self.answers.pop(0)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.was_cancelled = True
            raise

    async def request_input(self, message):
        return await self._answer(message)

    async def request_confirmation(self, message):
        return await self._answer(message)


def assert_cancelled(res):
    assert res.status == 'error'
    assert res.error_message.startswith("CancelledError:"), res.error_message


async def cancel_soon(runner, src, delay=0.05):
    task = asyncio.create_task(runner.handle_script(src))
    await asyncio.sleep(delay)
    runner.cancel()
    return await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_cancel_interrupts_sleep():
    runner = ScriptRunner()
    loop = asyncio.get_running_loop()
    started = loop.time()
    res = await cancel_soon(runner, "/echo before\n/sleep 10\n/echo after")
    assert_cancelled(res)
    assert res.output == ["before"]
    assert loop.time() - started < 2


@pytest.mark.asyncio
async def test_cancel_interrupts_pending_prompt():
    human = FakeHuman()
    runner = ScriptRunner(Capabilities(human=human))
    res = await cancel_soon(runner, '/prompt $name "Name?"\n/echo $name')
    assert_cancelled(res)
    assert human.asked == ["Name?"]
    assert human.was_cancelled
    assert res.output == []


@pytest.mark.asyncio
async def test_cancel_stops_a_busy_loop(monkeypatch):
    monkeypatch.setenv("SLASH_MAX_LOOP_ITERS", str(10 ** 9))
    runner = ScriptRunner()
    res = await cancel_soon(runner, "/var $n = 0\n/while true { /var $n = $n + 1 }", delay=0.02)
    assert_cancelled(res)
    # bindings committed before the cancel stay visible
    res = await runner.handle_script("/echo $n")
    assert res.status == 'success'
    assert int(res.value) > 0


@pytest.mark.asyncio
async def test_cancel_before_any_run_is_harmless():
    runner = ScriptRunner()
    runner.cancel()
    res = await runner.handle_script("/echo fine")
    assert res.status == 'success'
    assert res.value == "fine"


@pytest.mark.asyncio
async def test_prompt_and_confirm_bind_answers():
    human = FakeHuman("Sam", "yes", "")
    runner = ScriptRunner(Capabilities(human=human))
    src = '/prompt $name "Name?"\n/confirm $ok "Sure?"\n/confirm $empty\n/echo $name $ok $empty'
    res = await runner.handle_script(src)
    assert res.status == 'success', res.error_message
    assert res.value == "Sam true false"
    assert human.asked == ["Name?", "Sure?", ""]


@pytest.mark.asyncio
async def test_declined_input_cancels_the_run():
    runner = ScriptRunner(Capabilities(human=FakeHuman(None)))
    res = await runner.handle_script('/confirm $ok "Proceed?"\n/echo never')
    assert_cancelled(res)
    assert "input cancelled by user" in res.error_message
    assert res.output == []


@pytest.mark.asyncio
async def test_prompt_without_human_capability():
    runner = ScriptRunner()
    res = await runner.handle_script('/prompt $name "Name?"')
    assert res.status == 'error'
    assert "no human capability is available for /prompt" in res.error_message


@pytest.mark.asyncio
async def test_sleep_validates_duration():
    runner = ScriptRunner()
    res = await runner.handle_script('/sleep "0"\n/sleep -1\n/echo ok')
    assert res.value == "ok"
    res = await runner.handle_script('/sleep "soon"')
    assert res.status == 'error'
    assert "/sleep expects a number of seconds" in res.error_message


@pytest.mark.asyncio
async def test_cancelling_one_context_leaves_other_runs_alone():
    runner = ScriptRunner()
    ctx_a, ctx_b = runner.new_context(), runner.new_context()
    task_a = asyncio.create_task(runner.handle_script("/sleep 0.5\n/echo a-done", context=ctx_a))
    task_b = asyncio.create_task(runner.handle_script("/sleep 0.5\n/echo b-done", context=ctx_b))
    await asyncio.sleep(0.05)
    ctx_b.cancel()
    res_a, res_b = await asyncio.wait_for(asyncio.gather(task_a, task_b), timeout=2)
    assert res_a.status == 'success', res_a.error_message
    assert res_a.output == ["a-done"]
    assert_cancelled(res_b)
    assert res_b.output == []


@pytest.mark.asyncio
async def test_cancel_reaches_every_run_in_flight():
    runner = ScriptRunner()
    tasks = [asyncio.create_task(runner.handle_script(f"/sleep 10\n/echo {name}")) for name in ("a", "b")]
    await asyncio.sleep(0.05)
    runner.cancel()
    for res in await asyncio.wait_for(asyncio.gather(*tasks), timeout=2):
        assert_cancelled(res)
    res = await runner.handle_script("/echo after")
    assert res.status == 'success'
    assert res.value == "after"
