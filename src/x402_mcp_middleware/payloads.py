"""Typed x402 wire models — requirement payloads, payment payloads, outcomes.

Pure data model, no I/O. Client-submitted payloads are parsed exactly once at
the gateway boundary (``PaymentPayload.from_dict`` / ``from_legacy``); anything
that does not parse raises ``PayloadError`` before business logic runs.
Server-built payloads are immutable and serialize to fresh dicts, so the
cached instances can be shared by concurrent requests.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Mapping

from x402_mcp_middleware.constants import X402_LEGACY_VERSION, X402_VERSION, ErrorCode

_AUTHORIZATION_FIELDS = ("from", "to", "value", "validAfter", "validBefore", "nonce")


class PayloadError(ValueError):
    """Raised when a client-submitted payload does not match the wire schema."""

    def __init__(self, message: str, issues: list[str] | None = None) -> None:
        super().__init__(message)
        self.issues = issues or [message]


class MissingFieldsError(PayloadError):
    """The authorization object or some of its fields are absent."""


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, int) or (isinstance(value, float) and math.isfinite(value))


def _to_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not math.isfinite(value)):
        raise PayloadError(f"{name}: Must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise PayloadError(f"{name}: Must be an integer") from e


# ---------------------------------------------------------------------------
# Server-issued requirements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceInfo:
    """Description of the monetized resource (``mcp://tool/<name>``)."""

    url: str
    description: str = ""
    mime_type: str = ""

    def to_dict(self) -> dict[str, str]:
        d = {"url": self.url}
        if self.description:
            d["description"] = self.description
        if self.mime_type:
            d["mimeType"] = self.mime_type
        return d


@dataclass(frozen=True)
class PaymentRequirement:
    """One acceptable payment option inside a 402 payload.

    ``amount`` is always in the asset's smallest unit. ``resource``,
    ``description`` and ``mime_type`` are only serialized for the legacy
    protocol, which repeats them on every option.
    """

    scheme: str
    network: str
    amount: str
    asset: str
    pay_to: str
    max_timeout_seconds: int
    extra: dict[str, Any] = field(default_factory=dict)
    resource: str = ""
    description: str = ""
    mime_type: str = ""

    def to_dict(self, version: int = X402_VERSION) -> dict[str, Any]:
        if version == X402_LEGACY_VERSION:
            return {
                "scheme": self.scheme,
                "network": self.network,
                "maxAmountRequired": self.amount,
                "resource": self.resource,
                "description": self.description,
                "mimeType": self.mime_type,
                "payTo": self.pay_to,
                "maxTimeoutSeconds": self.max_timeout_seconds,
                "asset": self.asset,
                "extra": copy.deepcopy(self.extra),
            }
        return {
            "scheme": self.scheme,
            "network": self.network,
            "amount": self.amount,
            "asset": self.asset,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "extra": copy.deepcopy(self.extra),
        }


@dataclass(frozen=True)
class PaymentRequiredPayload:
    """The precomputed "payment required" body for one monetized call."""

    x402_version: int
    accepts: tuple[PaymentRequirement, ...]
    resource: ResourceInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"x402Version": self.x402_version}
        if self.resource is not None and self.x402_version != X402_LEGACY_VERSION:
            d["resource"] = self.resource.to_dict()
        d["accepts"] = [req.to_dict(self.x402_version) for req in self.accepts]
        return d

    def find_match(self, payment: PaymentPayload) -> PaymentRequirement | None:
        """Return the option the payment targets, or None.

        Options match on scheme and network. When the client echoed an asset,
        an option for that asset wins; otherwise the first candidate is
        returned and the backend reports any asset mismatch.
        """
        candidates = [
            req for req in self.accepts
            if req.scheme == payment.scheme and req.network == payment.network
        ]
        if not candidates:
            return None
        asset = (payment.accepted or {}).get("asset")
        if isinstance(asset, str):
            for req in candidates:
                if req.asset.lower() == asset.lower():
                    return req
        return candidates[0]


# ---------------------------------------------------------------------------
# Client-submitted payment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Authorization:
    """EIP-3009 ``transferWithAuthorization`` parameters signed by the payer."""

    from_address: str
    to: str
    value: int
    valid_after: int
    valid_before: int
    nonce: str

    def to_dict(self) -> dict[str, str]:
        return {
            "from": self.from_address,
            "to": self.to,
            "value": str(self.value),
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Authorization:
        if not isinstance(data, dict):
            raise MissingFieldsError("authorization: Must be an object")
        missing = [f"authorization.{k}: Is required" for k in _AUTHORIZATION_FIELDS if data.get(k) in (None, "")]
        if missing:
            raise MissingFieldsError("Authorization fields missing", missing)
        return cls(
            from_address=str(data["from"]),
            to=str(data["to"]),
            value=_to_int(data["value"], "authorization.value"),
            valid_after=_to_int(data["validAfter"], "authorization.validAfter"),
            valid_before=_to_int(data["validBefore"], "authorization.validBefore"),
            nonce=str(data["nonce"]),
        )


@dataclass(frozen=True)
class PaymentPayload:
    """A signed payment authorization, in either protocol generation.

    ``authorization``/``signature`` are None only for legacy payloads whose
    inner object lacks them; backends reject those with
    ``ERR_PAYLOAD_MISSING_FIELDS``.
    """

    x402_version: int
    scheme: str
    network: str
    authorization: Authorization | None
    signature: str | None
    accepted: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.raw)

    @classmethod
    def from_dict(cls, data: Any) -> PaymentPayload:
        """Parse a current-generation payload (``accepted`` + ``payload``)."""
        if not isinstance(data, dict):
            raise PayloadError("payment: Must be an object")

        issues: list[str] = []
        version = data.get("x402Version")
        if not _is_number(version):
            issues.append("x402Version: Must be a number")
        accepted = data.get("accepted")
        if not isinstance(accepted, dict):
            issues.append("accepted: Must be an object")
            accepted = {}
        for key in ("scheme", "network"):
            if not isinstance(accepted.get(key), str) or not accepted.get(key):
                issues.append(f"accepted.{key}: Must be a non-empty string")
        inner = data.get("payload")
        if not isinstance(inner, dict):
            issues.append("payload: Must be an object")
            inner = {}
        signature = inner.get("signature")
        if not isinstance(signature, str) or not signature:
            issues.append("payload.signature: Must be a non-empty string")

        authorization = None
        try:
            authorization = Authorization.from_dict(inner.get("authorization"))
        except PayloadError as e:
            issues.extend(f"payload.{issue}" for issue in e.issues)

        if issues:
            raise PayloadError("Invalid payment payload", issues)

        return cls(
            x402_version=_to_int(version, "x402Version"),
            scheme=accepted["scheme"],
            network=accepted["network"],
            authorization=authorization,
            signature=signature,
            accepted=dict(accepted),
            raw=copy.deepcopy(data),
        )

    @classmethod
    def from_legacy(cls, data: Any) -> PaymentPayload:
        """Parse a legacy ``X-PAYMENT`` document.

        Only the envelope shape is enforced here; a missing authorization is
        left for the backend to report. Authorization fields that are present
        but not integers (including non-finite numbers) are a schema error.
        """
        if not isinstance(data, dict):
            raise PayloadError("payment: Must be an object")

        expected = (
            ("x402Version", _is_number),
            ("scheme", lambda v: isinstance(v, str)),
            ("network", lambda v: isinstance(v, str)),
            ("payload", lambda v: isinstance(v, dict)),
        )
        issues = [f"{key}: Invalid or missing" for key, check in expected if data.get(key) is None or not check(data[key])]
        if issues:
            raise PayloadError("Invalid payment schema", issues)

        inner = data["payload"]
        try:
            authorization: Authorization | None = Authorization.from_dict(inner.get("authorization"))
        except MissingFieldsError:
            authorization = None
        signature = inner.get("signature")

        return cls(
            x402_version=_to_int(data["x402Version"], "x402Version"),
            scheme=data["scheme"],
            network=data["network"],
            authorization=authorization,
            signature=signature if isinstance(signature, str) and signature else None,
            raw=copy.deepcopy(data),
        )


# ---------------------------------------------------------------------------
# Backend outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationOutcome:
    ok: bool
    error_code: ErrorCode | None = None
    issues: tuple[str, ...] = ()
    payer: str | None = None

    @classmethod
    def valid(cls, payer: str | None = None) -> ValidationOutcome:
        return cls(ok=True, payer=payer)

    @classmethod
    def invalid(cls, error_code: ErrorCode, *issues: str) -> ValidationOutcome:
        return cls(ok=False, error_code=error_code, issues=issues or (error_code.message,))


@dataclass(frozen=True)
class SimulationOutcome:
    ok: bool
    error: str | None = None


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of one settlement attempt. Transient — never cached."""

    success: bool
    transaction: str | None = None
    network: str | None = None
    payer: str | None = None
    error_reason: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success}
        for key, value in (
            ("transaction", self.transaction),
            ("network", self.network),
            ("payer", self.payer),
            ("errorReason", self.error_reason),
            ("errorMessage", self.error_message),
        ):
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SettlementOutcome:
        return cls(
            success=bool(data.get("success", False)),
            transaction=data.get("transaction") or data.get("transactionHash"),
            network=data.get("network"),
            payer=data.get("payer"),
            error_reason=data.get("errorReason"),
            error_message=data.get("errorMessage"),
        )

    @classmethod
    def failure(cls, reason: str, message: str | None = None) -> SettlementOutcome:
        return cls(success=False, error_reason=reason, error_message=message)
