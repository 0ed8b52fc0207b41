"""Per-network pool of settlement backends.

One backend (plus its own replay-nonce store) per configured network id.
Initialization is all-or-nothing: the pool is either fully populated or
empty.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Mapping, NamedTuple

from x402_mcp_middleware.backend import BackendFactory, SettlementBackend
from x402_mcp_middleware.backends.facilitator import FacilitatorBackend
from x402_mcp_middleware.config import ConfigurationError
from x402_mcp_middleware.nonce_store import NonceStore

logger = logging.getLogger(__name__)


class PoolLookup(NamedTuple):
    backend: SettlementBackend | None
    nonce_store: NonceStore | None
    found: bool


class _PoolEntry(NamedTuple):
    backend: SettlementBackend
    nonce_store: NonceStore


_NOT_FOUND = PoolLookup(None, None, False)


class SettlementBackendPool:
    """Write-once map network id -> (backend, nonce store)."""

    def __init__(self, backend_factory: BackendFactory = FacilitatorBackend) -> None:
        self._backend_factory = backend_factory
        self._entries: Mapping[str, _PoolEntry] = MappingProxyType({})

    async def init(
        self,
        provider_url_by_network: Mapping[str, str],
        signing_key_by_network: Mapping[str, str],
    ) -> int:
        """Create and start one backend per network. Returns the pool size.

        Raises ConfigurationError if any network lacks a signing key; no
        backend is created in that case.
        """
        for network_id in provider_url_by_network:
            if not signing_key_by_network.get(network_id):
                raise ConfigurationError(
                    f'Missing facilitator private key for network "{network_id}"'
                )

        entries: dict[str, _PoolEntry] = {}
        try:
            for network_id, provider_url in provider_url_by_network.items():
                nonce_store = NonceStore()
                backend = self._backend_factory(
                    provider_url, signing_key_by_network[network_id], nonce_store
                )
                entries[network_id] = _PoolEntry(backend, nonce_store)
                await backend.start()
        except Exception:
            logger.error("Backend pool initialization failed; closing %d backend(s).", len(entries))
            await _close_all(entries.values())
            raise

        self._entries = MappingProxyType(entries)
        logger.info("Settlement backend pool initialized for %d network(s).", len(entries))
        return len(entries)

    def get(self, network_id: str) -> PoolLookup:
        entry = self._entries.get(network_id)
        if entry is None:
            return _NOT_FOUND
        return PoolLookup(entry.backend, entry.nonce_store, True)

    def network_ids(self) -> tuple[str, ...]:
        return tuple(self._entries)

    @property
    def size(self) -> int:
        return len(self._entries)

    async def close(self) -> None:
        """Close every backend and empty the pool."""
        entries, self._entries = self._entries, MappingProxyType({})
        await _close_all(entries.values())


async def _close_all(entries) -> None:
    for entry in entries:
        try:
            await entry.backend.close()
        except Exception:
            logger.exception("Error closing settlement backend")
