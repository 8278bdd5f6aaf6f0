import asyncio

import pytest

from rexa import ScriptRunner, RexaHost, RexaConfig

SPIN = """DO FOREVER
  NOP
END
"""


class Host(RexaHost):
    pass


async def started(runner, src):
    task = asyncio.create_task(runner.handle_script(src))
    await asyncio.sleep(0.01)
    return task


@pytest.mark.asyncio
async def test_cancel_stops_a_running_script():
    runner = ScriptRunner()
    task = await started(runner, SPIN)
    assert not task.done()
    runner.cancel()
    res = await asyncio.wait_for(task, 1)
    assert res.status == 'error'
    assert res.error_kind == "CancellationError"


@pytest.mark.asyncio
async def test_halt_trap_runs_cleanup_then_reports_cancellation():
    src = """SIGNAL ON HALT
DO FOREVER
  NOP
END
HALT:
SAY "cleanup " || RC
"""
    runner = ScriptRunner()
    task = await started(runner, src)
    runner.cancel()
    res = await asyncio.wait_for(task, 1)
    assert res.error_kind == "CancellationError"
    assert res.stdout == ["cleanup 1"]


@pytest.mark.asyncio
async def test_pause_and_resume():
    runner = ScriptRunner()
    runner.pause()
    task = await started(runner, 'SAY "hi"\nRETURN 1')
    assert not task.done()
    assert runner.evaluator.paused
    runner.resume()
    res = await asyncio.wait_for(task, 1)
    assert res.value == 1
    assert res.stdout == ["hi"]


@pytest.mark.asyncio
async def test_cancel_wakes_a_paused_script():
    runner = ScriptRunner()
    runner.pause()
    task = await started(runner, 'SAY "never"')
    runner.cancel()
    res = await asyncio.wait_for(task, 1)
    assert res.error_kind == "CancellationError"
    assert res.stdout == []


@pytest.mark.asyncio
async def test_host_can_cancel_its_runs():
    host = Host()
    runner = ScriptRunner(host)
    task = await started(runner, SPIN)
    assert host.active_runners == {runner}
    assert host.cancel_runs() == 1
    res = await asyncio.wait_for(task, 1)
    assert res.error_kind == "CancellationError"
    assert host.active_runners == set()


@pytest.mark.asyncio
async def test_concurrent_runners_are_isolated():
    src = """total = 0
DO i = 1 TO n
  total = total + i
END
RETURN total
"""
    runners = [ScriptRunner(config=RexaConfig(yield_interval=1)) for _ in range(3)]
    for n, runner in enumerate(runners, start=1):
        runner.environment.write("n", n * 10)
    results = await asyncio.gather(*(r.handle_script(src) for r in runners))
    assert [r.value for r in results] == [55, 210, 465]


@pytest.mark.asyncio
async def test_side_effects_belong_to_their_run():
    first, second = ScriptRunner(config=RexaConfig(yield_interval=1)), ScriptRunner(config=RexaConfig(yield_interval=1))
    results = await asyncio.gather(
        first.handle_script('DO i = 1 TO 3\n  SAY "a" || i\nEND'),
        second.handle_script('DO i = 1 TO 3\n  SAY "b" || i\nEND'),
    )
    assert results[0].stdout == ["a1", "a2", "a3"]
    assert results[1].stdout == ["b1", "b2", "b3"]
