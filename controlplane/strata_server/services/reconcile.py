"""
Startup reconciliation loop.

A ReconcileLoop waits for a condition and then performs one write. It is
used at boot to normalize the local cluster member once the config store
has finished loading.

States:
    WAITING  polling the predicate
    DONE     the action succeeded; the loop ended
    STOPPED  ``stop()`` was called before the action succeeded

Invariants:
    - The action runs at most once successfully
    - After DONE the predicate is never evaluated again
    - A raising predicate or action is logged and retried like a false
      predicate, after the current backoff delay
    - ``stop()`` interrupts any pending wait

How to change safely:
    - Keep the action idempotent; a crash between the write and DONE
      reruns it on the next boot
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..config import ReconcileConfig
    from ..store.config_store import ConfigStore

logger = logging.getLogger(__name__)

Predicate = Callable[[], "bool | Awaitable[bool]"]
Action = Callable[[], Awaitable[Any]]


class LoopState(Enum):
    WAITING = "waiting"
    DONE = "done"
    STOPPED = "stopped"


@dataclass(frozen=True)
class BackoffPolicy:
    """Delays of a ReconcileLoop, in seconds.

    Attributes:
        initial_delay: Wait before the first poll
        delay: Wait after the first unsuccessful poll
        max_delay: Upper bound of the wait between polls
        factor: Multiplier applied after every unsuccessful poll
    """

    initial_delay: float = 5.0
    delay: float = 5.0
    max_delay: float = 60.0
    factor: float = 1.5

    @classmethod
    def from_config(cls, config: ReconcileConfig) -> BackoffPolicy:
        return cls(
            initial_delay=config.initial_delay_ms / 1000,
            delay=config.delay_ms / 1000,
            max_delay=config.max_delay_ms / 1000,
            factor=config.backoff_factor,
        )

    def next_delay(self, current: float) -> float:
        return min(current * self.factor, self.max_delay)


class ReconcileLoop:
    """Poll ``predicate`` until it holds, then run ``action`` once.

    Example:
        >>> loop = ReconcileLoop(lambda: store.is_finished_initial_load, normalize)
        >>> loop.start()
        >>> ...
        >>> await loop.stop()
    """

    def __init__(
        self,
        predicate: Predicate,
        action: Action,
        policy: BackoffPolicy | None = None,
        name: str = "reconcile",
    ) -> None:
        self.predicate = predicate
        self.action = action
        self.policy = policy or BackoffPolicy()
        self.name = name
        self.state = LoopState.WAITING
        self.attempts = 0
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def is_done(self) -> bool:
        return self.state == LoopState.DONE

    def start(self) -> asyncio.Task:
        """Schedule ``run()`` as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"reconcile-{self.name}")
        return self._task

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _wait(self, seconds: float) -> bool:
        """Sleep ``seconds``; return False if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def _evaluate(self) -> bool:
        result = self.predicate()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    async def run(self) -> LoopState:
        """Run the loop to completion and return the final state."""
        if self.state == LoopState.DONE:
            return self.state

        delay = self.policy.delay
        if not await self._wait(self.policy.initial_delay):
            self.state = LoopState.STOPPED
            return self.state

        while True:
            self.attempts += 1
            try:
                if await self._evaluate():
                    await self.action()
                    self.state = LoopState.DONE
                    logger.info(
                        "Reconcile loop finished",
                        extra={"loop": self.name, "attempts": self.attempts},
                    )
                    return self.state
                logger.debug(
                    "Reconcile condition not met yet",
                    extra={"loop": self.name, "attempt": self.attempts, "delay": delay},
                )
            except Exception as e:
                logger.warning(
                    f"Reconcile attempt failed: {e}",
                    extra={"loop": self.name, "attempt": self.attempts},
                    exc_info=True,
                )

            if not await self._wait(delay):
                self.state = LoopState.STOPPED
                logger.info("Reconcile loop stopped", extra={"loop": self.name})
                return self.state
            delay = self.policy.next_delay(delay)


def debug_level_normalizer(
    store: ConfigStore, policy: BackoffPolicy | None = None
) -> ReconcileLoop:
    """Loop that resets ``debug_level`` of the local cluster member to 0.

    Waits for the store's initial load. Without a local cluster member the
    action is a no-op, which still ends the loop.
    """

    def loaded() -> bool:
        return store.is_finished_initial_load

    async def normalize() -> None:
        cluster = store.get_local_cluster_info()
        if cluster is None:
            logger.info("No local cluster member to normalize")
            return
        await store.make_changes(
            {"update": {"clusters": [{"_id": cluster["_id"], "debug_level": 0}]}}
        )

    return ReconcileLoop(loaded, normalize, policy=policy, name="debug_level")
