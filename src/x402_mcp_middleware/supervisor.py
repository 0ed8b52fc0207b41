"""Deadline-bounded background settlement for the header-based protocol.

The legacy protocol answers the caller before settling. Each settlement
runs as a tracked task: the caller-facing wait is bounded by a deadline,
but a task that misses it is not cancelled. It keeps running under
supervision and its eventual outcome is logged and counted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from x402_mcp_middleware.backend import SettlementBackend, settle_safely
from x402_mcp_middleware.constants import SETTLEMENT_TIMEOUT_SECONDS
from x402_mcp_middleware.payloads import (
    PaymentPayload,
    PaymentRequirement,
    SettlementOutcome,
)

logger = logging.getLogger(__name__)


class SettlementSupervisor:
    def __init__(self, timeout: float = SETTLEMENT_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout
        self._tasks: set[asyncio.Task] = set()
        self._overdue: set[asyncio.Task] = set()
        self._succeeded = 0
        self._failed = 0
        self._timed_out = 0
        self._late_failures = 0

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def pending(self) -> int:
        """Settlements still in flight."""
        return len(self._tasks)

    async def settle(
        self,
        backend: SettlementBackend,
        payment: PaymentPayload,
        requirement: PaymentRequirement,
    ) -> SettlementOutcome | None:
        """Settle within the deadline.

        Returns the outcome, or None when the deadline passed first; the
        settlement then continues in the background.
        """
        task = asyncio.ensure_future(
            settle_safely(backend, payment, requirement, timeout=self._timeout)
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        try:
            return await asyncio.wait_for(asyncio.shield(task), self._timeout)
        except asyncio.TimeoutError:
            if task.done():
                return task.result()
            self._overdue.add(task)
            self._timed_out += 1
            logger.warning(
                "Settlement on %s exceeded %.1fs deadline; still running in background.",
                requirement.network, self._timeout,
            )
            return None

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        late = task in self._overdue
        self._overdue.discard(task)
        if task.cancelled():
            logger.warning("Settlement task cancelled before completion.")
            return

        outcome: SettlementOutcome = task.result()
        if outcome.success:
            self._succeeded += 1
            if late:
                logger.info("Late settlement completed: tx %s.", outcome.transaction)
            else:
                logger.info("Settlement completed successfully: tx %s.", outcome.transaction)
            return

        self._failed += 1
        if late:
            self._late_failures += 1
            logger.error(
                "Late settlement failed after response was sent: %s (%s)",
                outcome.error_reason, outcome.error_message,
            )
        else:
            logger.warning(
                "Settlement failed: %s (%s)", outcome.error_reason, outcome.error_message
            )

    def health(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "timed_out": self._timed_out,
            "late_failures": self._late_failures,
        }

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight settlements. Returns how many are still pending."""
        if self._tasks:
            logger.info("Draining %d pending settlement(s).", len(self._tasks))
            await asyncio.wait(set(self._tasks), timeout=timeout)
        return self.pending
