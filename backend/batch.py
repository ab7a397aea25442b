"""
Bounded-concurrency batch runner and progress tracking.
Generic: tasks are zero-argument coroutine functions.
"""
import asyncio
import logging

from engine import BATCH_CONCURRENCY

logger = logging.getLogger(__name__)


async def run_with_concurrency(tasks, concurrency=BATCH_CONCURRENCY, on_settled=None):
    """Run tasks with at most `concurrency` in flight.

    Returns one {'ok', 'value', 'error'} dict per task, at the task's index.
    A failing task is recorded and never stops the other workers.
    """
    if concurrency < 1:
        raise ValueError(f'concurrency must be >= 1, got {concurrency}')

    results = [None] * len(tasks)
    # Shared cursor; next() on it never suspends, so each index is claimed once.
    claims = iter(range(len(tasks)))

    async def worker():
        for i in claims:
            try:
                value = await tasks[i]()
                results[i] = {'ok': True, 'value': value, 'error': None}
            except Exception as e:
                logger.debug(f"Batch task {i} failed: {e}")
                results[i] = {'ok': False, 'value': None, 'error': e}
            if on_settled:
                on_settled(results[i])

    await asyncio.gather(*(worker() for _ in range(concurrency)))
    return results


class ProgressTracker:
    """done/total counter fed by settled batch results."""

    def __init__(self):
        self.done = 0
        self.total = 0
        self.succeeded = 0
        self.failed = 0
        self._listeners = []

    def subscribe(self, listener):
        self._listeners.append(listener)

    def start(self, total):
        self.done = 0
        self.succeeded = 0
        self.failed = 0
        self.total = total
        self._notify()

    def record(self, result):
        # No await between read and write: increments cannot interleave.
        self.done += 1
        if result and result.get('ok'):
            self.succeeded += 1
        else:
            self.failed += 1
        self._notify()

    def snapshot(self):
        return {'done': self.done, 'total': self.total, 'succeeded': self.succeeded, 'failed': self.failed}

    def _notify(self):
        state = self.snapshot()
        for listener in self._listeners:
            listener(state)
