"""Interception gateway — the per-call payment state machine.

PASS_THROUGH -> CHALLENGE(402) -> VALIDATING -> SIMULATING -> EXECUTING
-> SETTLING -> RESPONDING

The state machine is shared by both protocol generations; everything
wire-specific lives in a ``TransportBinding`` (see ``bindings``). Responses
flow through an explicit pipeline: downstream handler -> binding settlement
stage -> transport emit. Nothing raised by a backend crosses ``handle()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, NamedTuple, Optional, Protocol

from x402_mcp_middleware.backend import SettlementBackend
from x402_mcp_middleware.cache import PaymentRequiredCache
from x402_mcp_middleware.config import GatewayConfig
from x402_mcp_middleware.constants import ErrorCode
from x402_mcp_middleware.mcp.jsonrpc import is_notification
from x402_mcp_middleware.payloads import (
    PaymentPayload,
    PaymentRequiredPayload,
    PaymentRequirement,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    """Where a payment was turned away."""

    CHALLENGE = "challenge"
    MALFORMED = "malformed"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    UNSUPPORTED_NETWORK = "unsupported_network"
    NO_MATCH = "no_match"
    VALIDATION = "validation"
    SIMULATION = "simulation"
    INTERNAL = "internal"


@dataclass(frozen=True)
class InboundCall:
    """A decoded JSON-RPC request plus its transport headers."""

    body: Any
    headers: Mapping[str, Any] = field(default_factory=dict)

    @property
    def request_id(self) -> Any:
        return self.body.get("id") if isinstance(self.body, dict) else None

    @property
    def method(self) -> Any:
        return self.body.get("method") if isinstance(self.body, dict) else None

    @property
    def params(self) -> Any:
        return self.body.get("params") if isinstance(self.body, dict) else None

    @property
    def tool_name(self) -> Any:
        params = self.params
        return params.get("name") if isinstance(params, dict) else None


@dataclass(frozen=True)
class OutboundResponse:
    """A response on its way back to the transport.

    ``content`` holds the raw downstream bytes when there are any; ``body``
    is their decoded JSON (None if they were not JSON). ``background`` is an
    async job the transport runs after the response has been sent.
    """

    body: Any
    status_code: int = 200
    headers: Mapping[str, str] = field(default_factory=dict)
    content: bytes | None = None
    background: Optional[Callable[[], Awaitable[Any]]] = None


@dataclass(frozen=True)
class SettlementContext:
    """Everything the settlement stage needs, captured at admission."""

    payment: PaymentPayload
    payload: PaymentRequiredPayload
    requirement: PaymentRequirement
    backend: SettlementBackend


@dataclass(frozen=True)
class Rejection:
    stage: Stage
    message: str
    error_code: ErrorCode
    issues: tuple[str, ...] = ()


class PaymentRejected(Exception):
    """Raised inside the admission path to short-circuit with a rejection."""

    def __init__(self, rejection: Rejection) -> None:
        super().__init__(rejection.message)
        self.rejection = rejection


class Admission(NamedTuple):
    """Outcome of admission: a short-circuit response, a context, or neither."""

    response: OutboundResponse | None
    context: SettlementContext | None


_PASS = Admission(None, None)

Handler = Callable[[InboundCall], Awaitable[OutboundResponse]]
BackendResolver = Callable[[str], Optional[SettlementBackend]]


class TransportBinding(Protocol):
    """Wire-specific half of the gateway."""

    @property
    def simulate(self) -> bool:
        """Whether to simulate before admitting the call."""
        ...

    def extract_payment(self, call: InboundCall) -> PaymentPayload | None:
        """Return the typed payment, None when absent; raise PaymentRejected if malformed."""
        ...

    def challenge(self, call: InboundCall, payload: PaymentRequiredPayload) -> OutboundResponse: ...

    def reject(
        self, call: InboundCall, payload: PaymentRequiredPayload, rejection: Rejection
    ) -> OutboundResponse: ...

    async def finalize(
        self, call: InboundCall, response: OutboundResponse, context: SettlementContext
    ) -> OutboundResponse:
        """Settlement stage: decorate, replace or schedule around *response*."""
        ...


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class PaymentGateway:
    def __init__(
        self,
        cache: PaymentRequiredCache,
        resolve_backend: BackendResolver,
        binding: TransportBinding,
        config: GatewayConfig | None = None,
    ) -> None:
        self._cache = cache
        self._resolve_backend = resolve_backend
        self._binding = binding
        self._config = config or GatewayConfig()

    @property
    def binding(self) -> TransportBinding:
        return self._binding

    async def handle(self, call: InboundCall, handler: Handler) -> OutboundResponse:
        """Run one call through admission, the handler and settlement."""
        admission = await self.admit(call)
        if admission.response is not None:
            return admission.response
        response = await handler(call)
        if admission.context is None:
            return response
        return await self.settle(call, response, admission.context)

    async def settle(
        self, call: InboundCall, response: OutboundResponse, context: SettlementContext
    ) -> OutboundResponse:
        """Settlement stage for an admitted call's downstream response."""
        return await self._binding.finalize(call, response, context)

    async def admit(self, call: InboundCall) -> Admission:
        if is_notification(call.body):
            return _PASS
        if call.method != self._config.gated_method:
            return _PASS
        name = call.tool_name
        if not isinstance(name, str) or not name:
            return _PASS

        lookup = self._cache.get(call.method, name)
        if not lookup.is_restricted:
            return _PASS
        payload = lookup.payload

        try:
            payment = self._binding.extract_payment(call)
        except PaymentRejected as e:
            logger.info("Payment for tool %s rejected: %s", name, e.rejection.error_code.value)
            return Admission(self._binding.reject(call, payload, e.rejection), None)

        if payment is None:
            logger.debug("Payment required for tool %s.", name)
            return Admission(self._binding.challenge(call, payload), None)

        try:
            context = await self._verify(payment, payload)
        except PaymentRejected as e:
            rejection = e.rejection
        except Exception as e:
            logger.exception("Payment validation for tool %s raised", name)
            rejection = Rejection(
                Stage.INTERNAL,
                f"Validation error: {e}",
                ErrorCode.INTERNAL_VALIDATION_ERROR,
            )
        else:
            return Admission(None, context)

        logger.info(
            "Payment for tool %s rejected at %s stage: %s",
            name, rejection.stage.value, rejection.error_code.value,
        )
        return Admission(self._binding.reject(call, payload, rejection), None)

    async def _verify(
        self, payment: PaymentPayload, payload: PaymentRequiredPayload
    ) -> SettlementContext:
        backend = self._resolve_backend(payment.network)
        if backend is None:
            raise PaymentRejected(Rejection(
                Stage.UNSUPPORTED_NETWORK,
                f"Unsupported payment network: {payment.network}",
                ErrorCode.NETWORK_MISMATCH,
            ))

        requirement = payload.find_match(payment)
        if requirement is None:
            raise PaymentRejected(Rejection(
                Stage.NO_MATCH,
                "No matching payment requirement",
                ErrorCode.INVALID_SCHEMA,
                (f"No accepted option for scheme {payment.scheme} on {payment.network}",),
            ))

        validation = await backend.validate(payment, requirement)
        if not validation.ok:
            raise PaymentRejected(Rejection(
                Stage.VALIDATION,
                "Payment validation failed",
                validation.error_code or ErrorCode.SIGNATURE_INVALID,
                validation.issues,
            ))

        if self._binding.simulate:
            simulation = await backend.simulate(payment, requirement)
            if not simulation.ok:
                raise PaymentRejected(Rejection(
                    Stage.SIMULATION,
                    "Payment simulation failed",
                    ErrorCode.SIMULATION_FAILED,
                    (simulation.error,) if simulation.error else (),
                ))

        return SettlementContext(payment, payload, requirement, backend)
