"""Asynchronous action dispatch for running instances.

Actions execute in a thread pool so a long-running action never blocks the
event loop.  Their outcomes, and outcomes reported from outside, go through
one queue per instance that a single consumer drains, so outcomes for the
same instance are applied one at a time.
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from logging import getLogger

from .errors import NodeNotRunning
from .executor import InstanceRunner
from .graph import NodeInstance
from .instance import ActionContext, Instance, Outcome
from .mode import Operation

logger = getLogger(__name__)


class InstanceDispatcher:
    def __init__(self, runner: InstanceRunner, max_workers: int = 4):
        self.runner = runner
        self._pool = ThreadPoolExecutor(max_workers=max_workers)
        self._queues: dict[str, asyncio.Queue] = {}
        self._tasks: set[asyncio.Task] = set()

    def is_active(self, instance_id: str) -> bool:
        return instance_id in self._queues

    async def run_until_settled(self, instance_id: str) -> Instance:
        """Drive an instance until it is sealed.

        No timeout applies: nodes whose action returns no outcome wait for
        ``submit``.
        """
        instance = self.runner.get(instance_id)
        queue: asyncio.Queue = asyncio.Queue()
        self._queues[instance_id] = queue
        try:
            while not instance.sealed:
                for node, context in self.runner.start_ready(instance_id):
                    self._launch(queue, node, context)
                if instance.sealed:
                    break
                item = await queue.get()
                if item is None or instance.sealed:
                    continue
                node_id, outcome = item
                try:
                    self.runner.report_outcome(instance_id, node_id, outcome)
                except NodeNotRunning as exc:
                    logger.warning("instance %s: dropped stale outcome: %s", instance_id, exc)
        finally:
            del self._queues[instance_id]
        return instance

    def submit(self, instance_id: str, node_id: str, outcome: Outcome) -> None:
        """Report an outcome from outside; must be called on the event loop."""
        self.runner.policy.require(Operation.REPORT_OUTCOME)
        queue = self._queues.get(instance_id)
        if queue is None:
            self.runner.report_outcome(instance_id, node_id, outcome)
            return
        queue.put_nowait((node_id, outcome))

    def wake(self, instance_id: str) -> None:
        """Make the consumer re-check the instance, e.g. after a terminate."""
        queue = self._queues.get(instance_id)
        if queue is not None:
            queue.put_nowait(None)

    def _launch(self, queue: asyncio.Queue, node: NodeInstance, context: ActionContext) -> None:
        task = asyncio.create_task(self._perform(queue, node, context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _perform(self, queue: asyncio.Queue, node: NodeInstance, context: ActionContext) -> None:
        loop = asyncio.get_running_loop()
        outcome = await loop.run_in_executor(self._pool, self.runner.run_action, node, context)
        if outcome is not None:
            await queue.put((node.id, outcome))

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)
