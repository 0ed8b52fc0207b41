"""Build-once cache of 402 payloads keyed by (method, name).

Built at startup from the restricted-call rules; read-only afterwards, so
concurrent requests read it without locks.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, NamedTuple

from x402_mcp_middleware.catalog import build_payment_required
from x402_mcp_middleware.config import ContractEntry, PaymentOption, RestrictedCall
from x402_mcp_middleware.constants import DEFAULT_RESOURCE_PREFIX
from x402_mcp_middleware.payloads import PaymentRequiredPayload

logger = logging.getLogger(__name__)

PayloadBuilder = Callable[
    [str, Iterable[str], Mapping[str, PaymentOption], Mapping[str, ContractEntry]],
    PaymentRequiredPayload,
]


class CacheLookup(NamedTuple):
    payload: PaymentRequiredPayload | None
    is_restricted: bool


_NOT_RESTRICTED = CacheLookup(None, False)


class PaymentRequiredCache:
    """Two-level map method -> name -> ``PaymentRequiredPayload``.

    - ``build()`` computes every payload once and freezes the map.
    - ``get()`` never raises; unknown keys are simply not restricted.
    - Rebuilding replaces the whole map, so identical input gives an
      identical cache.
    """

    def __init__(self) -> None:
        self._entries: Mapping[str, Mapping[str, PaymentRequiredPayload]] = MappingProxyType({})

    def build(
        self,
        restricted_calls: Iterable[RestrictedCall],
        prepared_options: Mapping[str, PaymentOption],
        contracts: Mapping[str, ContractEntry],
        resource_prefix: str = DEFAULT_RESOURCE_PREFIX,
        *,
        builder: PayloadBuilder = build_payment_required,
    ) -> int:
        """Compute and store a payload per rule. Returns the entry count."""
        entries: dict[str, dict[str, PaymentRequiredPayload]] = {}
        for call in restricted_calls:
            resource_url = f"{resource_prefix}{call.name}"
            payload = builder(resource_url, call.option_ids, prepared_options, contracts)
            entries.setdefault(call.method, {})[call.name] = payload

        self._entries = MappingProxyType(
            {method: MappingProxyType(names) for method, names in entries.items()}
        )
        size = self.size
        logger.info("PaymentRequired cache built for %d restricted tool(s).", size)
        return size

    def get(self, method: str, name: str) -> CacheLookup:
        names = self._entries.get(method)
        if names is None:
            return _NOT_RESTRICTED
        payload = names.get(name)
        if payload is None:
            return _NOT_RESTRICTED
        return CacheLookup(payload, True)

    @property
    def size(self) -> int:
        """Total number of cached (method, name) entries."""
        return sum(len(names) for names in self._entries.values())
