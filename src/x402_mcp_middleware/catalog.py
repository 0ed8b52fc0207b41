"""Derivation of 402 payloads from the contract and payment-option catalogs.

Pure functions, no I/O. Everything that can be wrong with a catalog is
detected here at construction time, so request handling never has to invent
or repair option terms.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from x402_mcp_middleware.config import (
    ConfigurationError,
    ContractEntry,
    PaymentOption,
    RestrictedCall,
)
from x402_mcp_middleware.constants import (
    SCHEME_EXACT,
    X402_LEGACY_VERSION,
    X402_VERSION,
)
from x402_mcp_middleware.payloads import (
    PaymentRequiredPayload,
    PaymentRequirement,
    ResourceInfo,
)

PLACEHOLDER_RE = re.compile(r"^\{\{\s*([^{}]+?)\s*\}\}$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
NETWORK_ID_RE = re.compile(r"^eip155:\d+$")
_ATOMIC_RE = re.compile(r"^\d+$")


# ---------------------------------------------------------------------------
# Option preparation
# ---------------------------------------------------------------------------


def resolve_pay_to(pay_to: str, pay_to_map: Mapping[str, str]) -> str:
    """Replace a ``{{alias}}`` placeholder with its address from *pay_to_map*."""
    match = PLACEHOLDER_RE.match(pay_to)
    if match is None:
        return pay_to
    alias = match.group(1)
    address = pay_to_map.get(alias)
    if not address:
        raise ConfigurationError(f"payTo placeholder '{{{{{alias}}}}}' has no entry in payToAddressMap")
    return address


def to_atomic_amount(amount: str, decimals: int) -> str:
    """Convert a decimal token amount (``"0.01"``) to smallest units (``"10000"``)."""
    try:
        scaled = Decimal(amount) * (Decimal(10) ** decimals)
    except InvalidOperation as e:
        raise ConfigurationError(f"Invalid amount '{amount}'") from e
    if scaled <= 0 or scaled != scaled.to_integral_value():
        raise ConfigurationError(
            f"Amount '{amount}' is not representable with {decimals} decimals"
        )
    return str(int(scaled))


def prepare_payment_options(
    options: Mapping[str, PaymentOption],
    *,
    pay_to_map: Mapping[str, str],
    contracts: Mapping[str, ContractEntry],
    default_max_timeout_seconds: int,
    decimal_amounts: bool = False,
) -> dict[str, PaymentOption]:
    """Resolve payees, default timeouts and (legacy) decimal amounts.

    Returns a new catalog; the input is not modified.
    """
    prepared: dict[str, PaymentOption] = {}
    for option_id, option in options.items():
        contract = contracts.get(option.contract_id)
        if contract is None:
            raise ConfigurationError(
                f"Payment option '{option_id}' references unknown contract '{option.contract_id}'"
            )
        amount = (
            to_atomic_amount(option.amount, contract.decimals)
            if decimal_amounts
            else option.amount
        )
        prepared[option_id] = PaymentOption(
            option_id=option_id,
            contract_id=option.contract_id,
            amount=amount,
            pay_to=resolve_pay_to(option.pay_to, pay_to_map),
            max_timeout_seconds=option.max_timeout_seconds or default_max_timeout_seconds,
        )
    return prepared


def _lookup(
    option_id: str,
    prepared_options: Mapping[str, PaymentOption],
    contracts: Mapping[str, ContractEntry],
) -> tuple[PaymentOption, ContractEntry]:
    option = prepared_options.get(option_id)
    if option is None:
        raise ConfigurationError(f"Unknown payment option '{option_id}'")
    contract = contracts.get(option.contract_id)
    if contract is None:
        raise ConfigurationError(
            f"Payment option '{option_id}' references unknown contract '{option.contract_id}'"
        )
    return option, contract


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def build_payment_required(
    resource_url: str,
    option_ids: Iterable[str],
    prepared_options: Mapping[str, PaymentOption],
    contracts: Mapping[str, ContractEntry],
) -> PaymentRequiredPayload:
    """Build the current-generation (x402 v2) payload for one resource."""
    accepts = []
    for option_id in option_ids:
        option, contract = _lookup(option_id, prepared_options, contracts)
        if not contract.network_id:
            raise ConfigurationError(
                f"Contract '{contract.contract_id}' has no paymentNetworkId"
            )
        accepts.append(
            PaymentRequirement(
                scheme=SCHEME_EXACT,
                network=contract.network_id,
                amount=option.amount,
                asset=contract.address,
                pay_to=option.pay_to,
                max_timeout_seconds=int(option.max_timeout_seconds or 0),
                extra={"name": contract.domain_name, "version": contract.domain_version},
            )
        )
    if not accepts:
        raise ConfigurationError(f"Resource '{resource_url}' accepts no payment options")
    return PaymentRequiredPayload(
        x402_version=X402_VERSION,
        accepts=tuple(accepts),
        resource=ResourceInfo(url=resource_url, mime_type="application/json"),
    )


def build_legacy_payment_required(
    resource_url: str,
    option_ids: Iterable[str],
    prepared_options: Mapping[str, PaymentOption],
    contracts: Mapping[str, ContractEntry],
    *,
    chain_id: int,
    chain_name: str,
) -> PaymentRequiredPayload:
    """Build the legacy (x402 v1) payload; the whole catalog is on one chain."""
    accepts = []
    for option_id in option_ids:
        option, contract = _lookup(option_id, prepared_options, contracts)
        accepts.append(
            PaymentRequirement(
                scheme=SCHEME_EXACT,
                network=chain_name,
                amount=option.amount,
                asset=contract.address,
                pay_to=option.pay_to,
                max_timeout_seconds=int(option.max_timeout_seconds or 0),
                extra={
                    "name": contract.domain_name,
                    "version": contract.domain_version,
                    "domain": {
                        "name": contract.domain_name,
                        "version": contract.domain_version,
                        "chainId": chain_id,
                        "verifyingContract": contract.address,
                    },
                },
                resource=resource_url,
                description=f"Access to {resource_url}",
                mime_type="application/json",
            )
        )
    if not accepts:
        raise ConfigurationError(f"Resource '{resource_url}' accepts no payment options")
    return PaymentRequiredPayload(x402_version=X402_LEGACY_VERSION, accepts=tuple(accepts))


# ---------------------------------------------------------------------------
# Parsing and validation
# ---------------------------------------------------------------------------


def parse_catalogs(
    contract_catalog: Mapping[str, Mapping[str, Any]],
    payment_option_catalog: Mapping[str, Mapping[str, Any]],
    restricted_calls: Iterable[Mapping[str, Any]],
) -> tuple[dict[str, ContractEntry], dict[str, PaymentOption], list[RestrictedCall]]:
    contracts = {cid: ContractEntry.from_dict(cid, data) for cid, data in contract_catalog.items()}
    options = {oid: PaymentOption.from_dict(oid, data) for oid, data in payment_option_catalog.items()}
    calls = [RestrictedCall.from_dict(call) for call in restricted_calls]
    return contracts, options, calls


def validate_configuration(
    contract_catalog: Mapping[str, Any],
    payment_option_catalog: Mapping[str, Any],
    restricted_calls: list[Any],
    pay_to_map: Mapping[str, str],
    *,
    legacy: bool = False,
) -> list[dict[str, str]]:
    """Return a list of ``{"path", "message"}`` issues; empty means valid."""
    issues: list[dict[str, str]] = []

    def issue(path: str, message: str) -> None:
        issues.append({"path": path, "message": message})

    for cid, contract in contract_catalog.items():
        path = f"contractCatalog.{cid}"
        if not isinstance(contract, dict):
            issue(path, "Must be an object")
            continue
        network_id = contract.get("paymentNetworkId")
        if not legacy and (not isinstance(network_id, str) or not NETWORK_ID_RE.match(network_id)):
            issue(f"{path}.paymentNetworkId", "Must be a CAIP-2 id like 'eip155:84532'")
        if not isinstance(contract.get("address"), str) or not ADDRESS_RE.match(contract["address"]):
            issue(f"{path}.address", "Must be a 0x-prefixed 20-byte hex address")
        decimals = contract.get("decimals")
        if not isinstance(decimals, int) or isinstance(decimals, bool) or decimals < 0:
            issue(f"{path}.decimals", "Must be a non-negative integer")
        if not isinstance(contract.get("domainName"), str) or not contract["domainName"]:
            issue(f"{path}.domainName", "Is required")

    for oid, option in payment_option_catalog.items():
        path = f"paymentOptionCatalog.{oid}"
        if not isinstance(option, dict):
            issue(path, "Must be an object")
            continue
        if option.get("contractId") not in contract_catalog:
            issue(f"{path}.contractId", f"Unknown contract '{option.get('contractId')}'")
        if legacy:
            amount = option.get("maxAmountRequired", option.get("amount"))
            try:
                if Decimal(str(amount)) <= 0:
                    issue(f"{path}.maxAmountRequired", "Must be positive")
            except InvalidOperation:
                issue(f"{path}.maxAmountRequired", "Must be a decimal string")
        else:
            amount = option.get("amount")
            if not isinstance(amount, str) or not _ATOMIC_RE.match(amount) or int(amount) <= 0:
                issue(f"{path}.amount", "Must be a positive integer string in smallest units")
        pay_to = option.get("payTo")
        if not isinstance(pay_to, str):
            issue(f"{path}.payTo", "Is required")
        else:
            match = PLACEHOLDER_RE.match(pay_to)
            if match is not None:
                if not pay_to_map.get(match.group(1)):
                    issue(f"{path}.payTo", f"Placeholder '{match.group(1)}' missing from payToAddressMap")
            elif not ADDRESS_RE.match(pay_to):
                issue(f"{path}.payTo", "Must be an address or a {{placeholder}}")
        timeout = option.get("maxTimeoutSeconds")
        if timeout is not None and (not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0):
            issue(f"{path}.maxTimeoutSeconds", "Must be a positive integer")

    for index, call in enumerate(restricted_calls):
        path = f"restrictedCalls[{index}]"
        if not isinstance(call, dict):
            issue(path, "Must be an object")
            continue
        for key in ("method", "name"):
            if not isinstance(call.get(key), str) or not call[key]:
                issue(f"{path}.{key}", "Is required")
        list_key = "activePaymentOptions" if legacy else "acceptedPaymentOptionIdList"
        option_ids = call.get(list_key)
        if not isinstance(option_ids, list) or not option_ids:
            issue(f"{path}.{list_key}", "Must be a non-empty array")
            continue
        for option_id in option_ids:
            if option_id not in payment_option_catalog:
                issue(f"{path}.{list_key}", f"Unknown payment option '{option_id}'")

    return issues
