"""Merge-safe helpers for the MCP ``_meta`` payment carrier.

Existing ``_meta`` keys are never dropped; every helper returns new objects
and leaves its inputs untouched.
"""

from __future__ import annotations

from typing import Any

from x402_mcp_middleware.constants import (
    DEFAULT_PAYMENT_META_KEY,
    DEFAULT_PAYMENT_RESPONSE_META_KEY,
)

_MISSING = object()


def get_payment_from_meta(
    params: Any, payment_meta_key: str = DEFAULT_PAYMENT_META_KEY
) -> tuple[Any, bool]:
    """Return ``(payment, found)`` from ``params._meta[payment_meta_key]``."""
    if not isinstance(params, dict):
        return None, False
    meta = params.get("_meta")
    if not isinstance(meta, dict):
        return None, False
    payment = meta.get(payment_meta_key, _MISSING)
    if payment is _MISSING:
        return None, False
    return payment, True


def merge_payment_response_into_result(
    result: Any,
    payment_response: dict[str, Any],
    payment_response_meta_key: str = DEFAULT_PAYMENT_RESPONSE_META_KEY,
) -> dict[str, Any]:
    """Attach the settlement outcome under ``result._meta``.

    Non-object results are wrapped as ``{"value": result}``.
    """
    merged = dict(result) if isinstance(result, dict) else {"value": result}
    existing = merged.get("_meta")
    meta = dict(existing) if isinstance(existing, dict) else {}
    meta[payment_response_meta_key] = payment_response
    merged["_meta"] = meta
    return merged


def merge_payment_response_into_error(
    error_data: Any,
    payment_response: dict[str, Any],
    payment_response_meta_key: str = DEFAULT_PAYMENT_RESPONSE_META_KEY,
) -> dict[str, Any]:
    """Attach the settlement outcome to a 402 error's ``data`` object."""
    merged = dict(error_data) if isinstance(error_data, dict) else {"originalError": error_data}
    merged[payment_response_meta_key] = payment_response
    return merged


def create_payment_required_error_data(payment_required: dict[str, Any]) -> dict[str, Any]:
    # the payload goes into error.data as-is
    return dict(payment_required)
