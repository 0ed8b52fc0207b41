"""JSON-RPC 2.0 response builders for MCP.

Mirrors the request id, emits ``result`` XOR ``error``, and never builds a
response for notifications (messages without an ``id``).
"""

from __future__ import annotations

from typing import Any

from x402_mcp_middleware.constants import JsonRpcErrorCode

JSONRPC_VERSION = "2.0"


def is_notification(request: Any) -> bool:
    """True for messages without an ``id``; malformed bodies count as well."""
    return not isinstance(request, dict) or "id" not in request


def success_response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_response(
    request_id: Any,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def payment_required_response(request_id: Any, payment_required: Any) -> dict[str, Any]:
    """402 error whose ``data`` is the payment-required payload."""
    return error_response(
        request_id,
        JsonRpcErrorCode.PAYMENT_REQUIRED,
        "Payment Required",
        payment_required,
    )


def invalid_params_response(
    request_id: Any, message: str = "Invalid params", data: Any = None
) -> dict[str, Any]:
    return error_response(request_id, JsonRpcErrorCode.INVALID_PARAMS, message, data)


def internal_error_response(
    request_id: Any, message: str = "Internal error", data: Any = None
) -> dict[str, Any]:
    return error_response(request_id, JsonRpcErrorCode.INTERNAL_ERROR, message, data)


def is_error_response(response: Any) -> bool:
    return isinstance(response, dict) and response.get("error") is not None
