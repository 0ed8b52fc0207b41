"""Settlement backend interface — the boundary the gateway delegates to.

Defines the ``SettlementBackend`` Protocol that the pool and gateway depend
on. Signature verification, simulation and on-chain settlement live behind
it; ``backends.facilitator.FacilitatorBackend`` is the bundled implementation.
"""

from __future__ import annotations

import logging
from typing import Callable, Protocol, runtime_checkable

from x402_mcp_middleware.nonce_store import NonceStore
from x402_mcp_middleware.payloads import (
    PaymentPayload,
    PaymentRequirement,
    SettlementOutcome,
    SimulationOutcome,
    ValidationOutcome,
)

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Base exception for settlement backend failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@runtime_checkable
class SettlementBackend(Protocol):
    """Async validate/simulate/settle delegate bound to one network.

    Rejections are reported through the outcome objects; exceptions are
    reserved for transport or programming failures.
    """

    async def start(self) -> None: ...

    async def validate(
        self, payment: PaymentPayload, requirement: PaymentRequirement
    ) -> ValidationOutcome: ...

    async def simulate(
        self, payment: PaymentPayload, requirement: PaymentRequirement
    ) -> SimulationOutcome: ...

    async def settle(
        self,
        payment: PaymentPayload,
        requirement: PaymentRequirement,
        *,
        timeout: float | None = None,
    ) -> SettlementOutcome: ...

    async def close(self) -> None: ...


# (provider_url, signing_key, nonce_store) -> backend
BackendFactory = Callable[[str, str, NonceStore], SettlementBackend]


async def settle_safely(
    backend: SettlementBackend,
    payment: PaymentPayload,
    requirement: PaymentRequirement,
    *,
    timeout: float | None = None,
) -> SettlementOutcome:
    """Settle, converting any exception into a failed outcome."""
    try:
        return await backend.settle(payment, requirement, timeout=timeout)
    except Exception as e:
        logger.exception("Settlement raised on %s", requirement.network)
        return SettlementOutcome.failure("internal_error", str(e) or type(e).__name__)
