"""Credit budget pacing calls against a cost-metered API.

The destination platform meters its GraphQL API with a leaky bucket: every
call costs credits and credits come back at a fixed rate. ``CreditBudget``
models that bucket locally so workers slow down before the platform starts
throttling them. It is best-effort pacing, not admission control; a real
quota breach still comes back as an ordinary remote failure.
"""

import asyncio
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BudgetSnapshot:
    """Point-in-time view of a budget."""

    capacity: int
    remaining: int
    safe_threshold: int
    consumed_total: int
    waits: int
    waited_seconds: float


class CreditBudget:
    """Process-wide allowance shared by every worker.

    ``remaining`` is a single value guarded by a lock, so it can be mutated
    from the event loop and from worker threads alike. Every mutation clamps
    it to ``[0, capacity]``.
    """

    def __init__(
        self,
        capacity: int = 20000,
        cost_per_call: int = 40,
        recovery_rate: int = 1000,
        safe_threshold: int = 2000,
        max_wait_seconds: int = 5,
        tick_seconds: float = 1.0,
        initial: int | None = None,
        sleep: SleepFunc | None = None,
    ):
        """Initialize the budget.

        Args:
            capacity: Maximum allowance
            cost_per_call: Default debit for ``consume()``
            recovery_rate: Credits restored per second
            safe_threshold: ``regulate()`` waits while remaining is below this
            max_wait_seconds: Upper bound for one ``regulate()`` sleep
            tick_seconds: Period of the optional ticking refill
            initial: Starting allowance (defaults to capacity)
            sleep: Awaitable sleep, injectable for tests
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if recovery_rate <= 0:
            raise ValueError("recovery_rate must be positive")

        self.capacity = capacity
        self.cost_per_call = cost_per_call
        self.recovery_rate = recovery_rate
        self.safe_threshold = safe_threshold
        self.max_wait_seconds = max_wait_seconds
        self.tick_seconds = tick_seconds

        self._lock = threading.Lock()
        self._remaining = self._clamp(capacity if initial is None else initial)
        self._sleep: SleepFunc = sleep or asyncio.sleep
        self._recovery_task: asyncio.Task | None = None

        self._consumed_total = 0
        self._waits = 0
        self._waited_seconds = 0.0

    @classmethod
    def from_config(cls, config, sleep: SleepFunc | None = None) -> "CreditBudget":
        """Build a budget from a ``CreditBudgetConfig``."""
        return cls(
            capacity=config.capacity,
            cost_per_call=config.cost_per_call,
            recovery_rate=config.recovery_rate,
            safe_threshold=config.safe_threshold,
            max_wait_seconds=config.max_wait_seconds,
            tick_seconds=config.tick_seconds,
            sleep=sleep,
        )

    def _clamp(self, value: int) -> int:
        return max(0, min(self.capacity, value))

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    def consume(self, cost: int | None = None) -> int:
        """Debit ``cost`` credits (default ``cost_per_call``), clamping at 0.

        Call ``regulate()`` first for the same logical call, or use ``spend()``.

        Returns:
            Remaining allowance after the debit
        """
        amount = self.cost_per_call if cost is None else cost
        if amount < 0:
            raise ValueError("cost cannot be negative")
        with self._lock:
            self._remaining = self._clamp(self._remaining - amount)
            self._consumed_total += amount
            return self._remaining

    def credit(self, amount: int) -> int:
        """Add ``amount`` credits, clamping at capacity.

        Returns:
            Remaining allowance after the credit
        """
        if amount < 0:
            raise ValueError("credit amount cannot be negative")
        with self._lock:
            self._remaining = self._clamp(self._remaining + amount)
            return self._remaining

    def compute_wait(self, remaining: int | None = None) -> int:
        """Whole seconds ``regulate()`` would sleep for the given allowance."""
        if remaining is None:
            remaining = self.remaining
        if remaining >= self.safe_threshold:
            return 0
        return min(self.max_wait_seconds, (self.capacity - remaining) // self.recovery_rate)

    async def regulate(self) -> None:
        """Suspend the calling task while the allowance is below the safe threshold.

        Each round sleeps ``min(max_wait, (capacity - remaining) // rate)``
        seconds and then credits what the platform restored meanwhile. A
        computed wait of zero lets the caller through immediately.
        """
        while True:
            remaining = self.remaining
            if remaining >= self.safe_threshold:
                return

            wait_seconds = self.compute_wait(remaining)
            if wait_seconds <= 0:
                logger.debug("credit_wait_skipped", remaining=remaining)
                return

            logger.info(
                "credit_budget_low",
                remaining=remaining,
                threshold=self.safe_threshold,
                wait_seconds=wait_seconds,
            )
            await self._sleep(wait_seconds)

            with self._lock:
                self._waits += 1
                self._waited_seconds += wait_seconds
            restored = self.credit(wait_seconds * self.recovery_rate)
            logger.debug("credit_budget_restored", remaining=restored)

    async def spend(self, cost: int | None = None) -> int:
        """Regulate, then consume. Returns the remaining allowance."""
        await self.regulate()
        return self.consume(cost)

    def replenish(self) -> int:
        """Apply one tick of the ticking refill."""
        return self.credit(int(self.recovery_rate * self.tick_seconds))

    async def _recovery_loop(self) -> None:
        while True:
            await self._sleep(self.tick_seconds)
            self.replenish()

    def start_recovery(self) -> asyncio.Task:
        """Start the background ticking refill on the running event loop."""
        if self._recovery_task is None or self._recovery_task.done():
            self._recovery_task = asyncio.get_running_loop().create_task(
                self._recovery_loop(), name="credit-budget-recovery"
            )
            logger.debug("credit_recovery_started", tick_seconds=self.tick_seconds)
        return self._recovery_task

    async def stop_recovery(self) -> None:
        """Cancel the ticking refill, if running."""
        task = self._recovery_task
        self._recovery_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("credit_recovery_stopped")

    def sync_from_throttle_status(
        self,
        currently_available: float,
        maximum_available: float | None = None,
        restore_rate: float | None = None,
    ) -> int:
        """Reset the allowance from the platform's reported throttle status.

        Args:
            currently_available: Credits the platform says are available
            maximum_available: Bucket size reported by the platform
            restore_rate: Credits restored per second reported by the platform

        Returns:
            Remaining allowance after the sync
        """
        with self._lock:
            if maximum_available:
                self.capacity = int(maximum_available)
            if restore_rate:
                self.recovery_rate = int(restore_rate)
            self._remaining = self._clamp(int(currently_available))
            remaining = self._remaining

        logger.debug(
            "credit_budget_synced",
            remaining=remaining,
            capacity=self.capacity,
            recovery_rate=self.recovery_rate,
        )
        return remaining

    def snapshot(self) -> BudgetSnapshot:
        with self._lock:
            return BudgetSnapshot(
                capacity=self.capacity,
                remaining=self._remaining,
                safe_threshold=self.safe_threshold,
                consumed_total=self._consumed_total,
                waits=self._waits,
                waited_seconds=self._waited_seconds,
            )
