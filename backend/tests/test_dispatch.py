"""Tests for the asynchronous instance dispatcher."""
import asyncio
import time

import pytest

from openflow.engine.dispatch import InstanceDispatcher
from openflow.engine.errors import NotPermittedInMode
from openflow.engine.executor import ActionRuntime, InstanceRunner
from openflow.engine.instance import ExecutionState, InstanceStatus, Outcome
from openflow.engine.mode import Mode, ModePolicy


async def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def fan_out(make_graph):
    """Start fans out to two tasks that meet at End."""
    return make_graph(
        {"s": "Start", "a": "Task", "b": "Task", "e": "End"},
        [("s.out", "a.in"), ("s.out", "b.in"), ("a.out", "e.in"), ("b.out", "e.in")],
    )


class TestRunUntilSettled:
    def test_actions_run_in_pool(self, fan_out):
        def slow_task(node, ctx):
            time.sleep(0.05)
            return Outcome.success(output={"node": node.id})

        runner = InstanceRunner(ModePolicy(Mode.INSTANTIATE), ActionRuntime({"Task": slow_task}))
        dispatcher = InstanceDispatcher(runner, max_workers=2)
        instance = runner.instantiate(fan_out)

        result = asyncio.run(dispatcher.run_until_settled(instance.id))
        dispatcher.shutdown()

        assert result is instance
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.outputs["a"] == {"node": "a"}
        assert not dispatcher.is_active(instance.id)

    def test_external_outcomes(self, fan_out):
        runner = InstanceRunner(ModePolicy(Mode.INSTANTIATE))
        dispatcher = InstanceDispatcher(runner)
        instance = runner.instantiate(fan_out)

        async def scenario():
            task = asyncio.create_task(dispatcher.run_until_settled(instance.id))
            await wait_for(lambda: instance.node_states["a"] == ExecutionState.RUNNING
                           and instance.node_states["b"] == ExecutionState.RUNNING)
            dispatcher.submit(instance.id, "b", Outcome.success())
            dispatcher.submit(instance.id, "a", Outcome.failure("rejected"))
            return await asyncio.wait_for(task, timeout=2)

        result = asyncio.run(scenario())
        dispatcher.shutdown()
        assert result.status == InstanceStatus.COMPLETED
        assert result.errors == {"a": "rejected"}
        assert result.node_states["e"] == ExecutionState.COMPLETED

    def test_all_branches_failed(self, fan_out):
        runner = InstanceRunner(ModePolicy(Mode.INSTANTIATE))
        dispatcher = InstanceDispatcher(runner)
        instance = runner.instantiate(fan_out)

        async def scenario():
            task = asyncio.create_task(dispatcher.run_until_settled(instance.id))
            await wait_for(lambda: instance.node_states["a"] == ExecutionState.RUNNING
                           and instance.node_states["b"] == ExecutionState.RUNNING)
            dispatcher.submit(instance.id, "a", Outcome.failure("rejected"))
            dispatcher.submit(instance.id, "b", Outcome.failure("rejected"))
            return await asyncio.wait_for(task, timeout=2)

        result = asyncio.run(scenario())
        dispatcher.shutdown()
        assert result.status == InstanceStatus.FAILED
        assert result.node_states["e"] == ExecutionState.SKIPPED

    def test_terminate_wakes_consumer(self, fan_out):
        runner = InstanceRunner(ModePolicy(Mode.INSTANTIATE))
        dispatcher = InstanceDispatcher(runner)
        instance = runner.instantiate(fan_out)

        async def scenario():
            task = asyncio.create_task(dispatcher.run_until_settled(instance.id))
            await wait_for(lambda: instance.node_states["a"] == ExecutionState.RUNNING)
            runner.terminate(instance.id)
            dispatcher.wake(instance.id)
            return await asyncio.wait_for(task, timeout=2)

        result = asyncio.run(scenario())
        dispatcher.shutdown()
        assert result.status == InstanceStatus.TERMINATED


class TestSubmit:
    def test_direct_report_when_idle(self, runner, linear_graph):
        dispatcher = InstanceDispatcher(runner)
        instance = runner.instantiate(linear_graph)
        dispatcher.submit(instance.id, "A", Outcome.success())
        dispatcher.shutdown()
        assert instance.node_states["B"] == ExecutionState.READY

    def test_submit_needs_run_capability(self, linear_graph):
        runner = InstanceRunner(ModePolicy(Mode.VIEW))
        dispatcher = InstanceDispatcher(runner)
        with pytest.raises(NotPermittedInMode):
            dispatcher.submit("any", "A", Outcome.success())
        dispatcher.shutdown()
