"""Middleware configuration — plain frozen dataclasses, no pydantic.

The host application builds these from its own settings (env vars, JSON
files, etc.). Catalog entries arrive as camelCase dicts and are parsed with
``from_dict``; nothing here reads the environment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from x402_mcp_middleware.constants import (
    DEFAULT_MAX_TIMEOUT_SECONDS,
    DEFAULT_PAYMENT_HEADER,
    DEFAULT_PAYMENT_META_KEY,
    DEFAULT_PAYMENT_RESPONSE_META_KEY,
    DEFAULT_RESOURCE_PREFIX,
    GATED_METHOD,
    SETTLEMENT_TIMEOUT_SECONDS,
)


class ConfigurationError(ValueError):
    """Raised at construction time for missing or malformed configuration."""

    def __init__(self, message: str, issues: list[Any] | None = None) -> None:
        super().__init__(message)
        self.issues = issues or []


@dataclass(frozen=True)
class GatewayConfig:
    payment_meta_key: str = DEFAULT_PAYMENT_META_KEY
    payment_response_meta_key: str = DEFAULT_PAYMENT_RESPONSE_META_KEY
    resource_prefix: str = DEFAULT_RESOURCE_PREFIX
    simulate_before_settle: bool = True
    default_max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS
    settlement_timeout_seconds: float = SETTLEMENT_TIMEOUT_SECONDS
    payment_header: str = DEFAULT_PAYMENT_HEADER
    gated_method: str = GATED_METHOD


def _require(data: Mapping[str, Any], key: str, where: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ConfigurationError(f"{where}.{key}: Is required")
    return value


@dataclass(frozen=True)
class ContractEntry:
    """A token contract payments are denominated in.

    ``network_id`` is None for legacy single-chain catalogs.
    """

    contract_id: str
    address: str
    decimals: int
    domain_name: str
    domain_version: str = "2"
    network_id: str | None = None
    asset_type: str = "erc20"

    @classmethod
    def from_dict(cls, contract_id: str, data: Mapping[str, Any]) -> ContractEntry:
        where = f"contractCatalog.{contract_id}"
        return cls(
            contract_id=contract_id,
            address=str(_require(data, "address", where)),
            decimals=int(_require(data, "decimals", where)),
            domain_name=str(_require(data, "domainName", where)),
            domain_version=str(data.get("domainVersion", "2")),
            network_id=data.get("paymentNetworkId"),
            asset_type=str(data.get("assetType", "erc20")),
        )


@dataclass(frozen=True)
class PaymentOption:
    """Price terms for one option; ``amount`` as configured (atomic or decimal)."""

    option_id: str
    contract_id: str
    amount: str
    pay_to: str
    max_timeout_seconds: int | None = None

    @classmethod
    def from_dict(cls, option_id: str, data: Mapping[str, Any]) -> PaymentOption:
        where = f"paymentOptionCatalog.{option_id}"
        amount = data.get("amount", data.get("maxAmountRequired"))
        if amount is None or amount == "":
            raise ConfigurationError(f"{where}.amount: Is required")
        timeout = data.get("maxTimeoutSeconds")
        return cls(
            option_id=option_id,
            contract_id=str(_require(data, "contractId", where)),
            amount=str(amount),
            pay_to=str(_require(data, "payTo", where)),
            max_timeout_seconds=int(timeout) if timeout is not None else None,
        )


@dataclass(frozen=True)
class RestrictedCall:
    """One monetized (method, name) pair and the options it accepts."""

    method: str
    name: str
    option_ids: tuple[str, ...]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RestrictedCall:
        option_ids = data.get("acceptedPaymentOptionIdList", data.get("activePaymentOptions"))
        if not isinstance(option_ids, (list, tuple)):
            raise ConfigurationError(
                f"restrictedCalls.{data.get('name')}.acceptedPaymentOptionIdList: Must be an array"
            )
        return cls(
            method=str(_require(data, "method", "restrictedCalls")),
            name=str(_require(data, "name", "restrictedCalls")),
            option_ids=tuple(str(i) for i in option_ids),
        )
