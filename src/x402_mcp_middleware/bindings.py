"""Transport bindings for the two x402 protocol generations.

- ``MetaBinding``: payment in ``params._meta``, every outcome as a JSON-RPC
  envelope over HTTP 200, synchronous settlement reported in
  ``result._meta``. Rejections carry ``error.data = {"errorCode", "issues"}``
  (plus ``simulationError`` when simulation failed) rather than a bare issue
  list, so clients get the same error codes as the header protocol.
- ``HeaderBinding``: payment in an ``X-PAYMENT`` header, HTTP 402 error
  bodies, settlement after the response is sent.
"""

from __future__ import annotations

import functools
import json
import logging
from dataclasses import replace
from typing import Any, Mapping

from x402_mcp_middleware.backend import settle_safely
from x402_mcp_middleware.config import GatewayConfig
from x402_mcp_middleware.constants import (
    SUPPORTED_SCHEMES,
    ErrorCode,
    JsonRpcErrorCode,
)
from x402_mcp_middleware.gateway import (
    InboundCall,
    OutboundResponse,
    PaymentRejected,
    Rejection,
    SettlementContext,
    Stage,
)
from x402_mcp_middleware.mcp import jsonrpc, meta
from x402_mcp_middleware.payloads import PayloadError, PaymentPayload, PaymentRequiredPayload
from x402_mcp_middleware.supervisor import SettlementSupervisor

logger = logging.getLogger(__name__)

# Stages reported as -32603; everything else is the caller's fault (-32602)
_INTERNAL_STAGES = frozenset({Stage.SIMULATION, Stage.INTERNAL})


# ---------------------------------------------------------------------------
# Current generation: MCP _meta
# ---------------------------------------------------------------------------


class MetaBinding:
    def __init__(self, config: GatewayConfig | None = None) -> None:
        self._config = config or GatewayConfig()

    @property
    def simulate(self) -> bool:
        return self._config.simulate_before_settle

    def extract_payment(self, call: InboundCall) -> PaymentPayload | None:
        raw, found = meta.get_payment_from_meta(call.params, self._config.payment_meta_key)
        if not found:
            return None
        try:
            return PaymentPayload.from_dict(raw)
        except PayloadError as e:
            raise PaymentRejected(Rejection(
                Stage.MALFORMED, "Invalid payment payload", ErrorCode.INVALID_SCHEMA, tuple(e.issues)
            )) from e

    def challenge(self, call: InboundCall, payload: PaymentRequiredPayload) -> OutboundResponse:
        data = meta.create_payment_required_error_data(payload.to_dict())
        return OutboundResponse(jsonrpc.payment_required_response(call.request_id, data))

    def reject(
        self, call: InboundCall, payload: PaymentRequiredPayload, rejection: Rejection
    ) -> OutboundResponse:
        code = (
            JsonRpcErrorCode.INTERNAL_ERROR
            if rejection.stage in _INTERNAL_STAGES
            else JsonRpcErrorCode.INVALID_PARAMS
        )
        data: dict[str, Any] = {
            "errorCode": rejection.error_code.value,
            "issues": list(rejection.issues),
        }
        if rejection.stage is Stage.SIMULATION and rejection.issues:
            data["simulationError"] = rejection.issues[0]
        return OutboundResponse(
            jsonrpc.error_response(call.request_id, code, rejection.message, data)
        )

    async def finalize(
        self, call: InboundCall, response: OutboundResponse, context: SettlementContext
    ) -> OutboundResponse:
        body = response.body
        if jsonrpc.is_error_response(body):
            return response
        if not isinstance(body, dict) or "result" not in body:
            logger.warning(
                "Paid call %r returned no JSON-RPC result; skipping settlement.", call.tool_name
            )
            return response

        outcome = await settle_safely(context.backend, context.payment, context.requirement)
        response_key = self._config.payment_response_meta_key

        if outcome.success:
            logger.info(
                "Settled %s on %s: tx %s.", call.tool_name, outcome.network, outcome.transaction
            )
            decorated = dict(body)
            decorated["result"] = meta.merge_payment_response_into_result(
                body["result"], outcome.to_dict(), response_key
            )
            return replace(response, body=decorated)

        logger.warning(
            "Settlement for %s failed (%s); discarding tool result.",
            call.tool_name, outcome.error_reason,
        )
        data = meta.merge_payment_response_into_error(
            context.payload.to_dict(), outcome.to_dict(), response_key
        )
        return replace(
            response,
            body=jsonrpc.payment_required_response(body.get("id", call.request_id), data),
        )


# ---------------------------------------------------------------------------
# Legacy generation: X-PAYMENT header
# ---------------------------------------------------------------------------


def _get_header(headers: Mapping[str, Any], name: str) -> Any:
    """Case-insensitive header lookup that keeps non-string values as-is."""
    value = headers.get(name)
    if value is not None:
        return value
    wanted = name.lower()
    for key, value in headers.items():
        if isinstance(key, str) and key.lower() == wanted:
            return value
    return None


def _reject_constant(token: str) -> Any:
    raise ValueError(f"Non-standard JSON constant: {token}")


class HeaderBinding:
    """Reads ``config.payment_header``; settles under ``config.settlement_timeout_seconds``."""

    def __init__(
        self,
        config: GatewayConfig | None = None,
        supervisor: SettlementSupervisor | None = None,
    ) -> None:
        self._config = config or GatewayConfig()
        self._supervisor = supervisor or SettlementSupervisor(self._config.settlement_timeout_seconds)

    @property
    def simulate(self) -> bool:
        return True

    @property
    def supervisor(self) -> SettlementSupervisor:
        return self._supervisor

    @staticmethod
    def _structural(code: ErrorCode, stage: Stage = Stage.MALFORMED) -> PaymentRejected:
        return PaymentRejected(Rejection(stage, code.message, code))

    def extract_payment(self, call: InboundCall) -> PaymentPayload | None:
        header = _get_header(call.headers, self._config.payment_header)
        if header is None:
            return None
        if not isinstance(header, str):
            raise self._structural(ErrorCode.INVALID_HEADER_TYPE)
        if header == "":
            raise self._structural(ErrorCode.EMPTY_HEADER)
        try:
            document = json.loads(header, parse_constant=_reject_constant)
        except ValueError:
            raise self._structural(ErrorCode.INVALID_JSON) from None
        try:
            payment = PaymentPayload.from_legacy(document)
        except PayloadError:
            raise self._structural(ErrorCode.INVALID_SCHEMA) from None
        if payment.scheme not in SUPPORTED_SCHEMES:
            raise self._structural(ErrorCode.UNSUPPORTED_SCHEME, Stage.UNSUPPORTED_SCHEME)
        return payment

    def challenge(self, call: InboundCall, payload: PaymentRequiredPayload) -> OutboundResponse:
        code = ErrorCode.MISSING_XPAYMENT
        return self.reject(call, payload, Rejection(Stage.CHALLENGE, code.message, code))

    def reject(
        self, call: InboundCall, payload: PaymentRequiredPayload, rejection: Rejection
    ) -> OutboundResponse:
        body = payload.to_dict()
        body["errorCode"] = rejection.error_code.value
        body["error"] = rejection.error_code.message
        return OutboundResponse(body, status_code=402)

    async def finalize(
        self, call: InboundCall, response: OutboundResponse, context: SettlementContext
    ) -> OutboundResponse:
        if not 200 <= response.status_code < 300 or jsonrpc.is_error_response(response.body):
            return response
        job = functools.partial(
            self._supervisor.settle, context.backend, context.payment, context.requirement
        )
        return replace(response, background=job)
