"""Tests for SettlementBackendPool: all-or-nothing init, lookup, shutdown."""

from unittest.mock import AsyncMock

import pytest

from factories import HEX_KEY, NETWORK, OTHER_NETWORK, PROVIDER_URL, RecordingFactory
from x402_mcp_middleware.config import ConfigurationError
from x402_mcp_middleware.nonce_store import NonceStore
from x402_mcp_middleware.pool import SettlementBackendPool

_URLS = {NETWORK: PROVIDER_URL, OTHER_NETWORK: "https://fuji.example.com"}
_KEYS = {NETWORK: HEX_KEY, OTHER_NETWORK: "0x" + "2" * 64}


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


class TestPoolInit:
    @pytest.mark.asyncio
    async def test_one_backend_per_network(self) -> None:
        factory = RecordingFactory()
        pool = SettlementBackendPool(factory)
        assert await pool.init(_URLS, _KEYS) == 2
        assert pool.size == 2
        assert set(pool.network_ids()) == {NETWORK, OTHER_NETWORK}
        for backend in factory.backends:
            backend.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_factory_receives_url_key_and_own_nonce_store(self) -> None:
        factory = RecordingFactory()
        pool = SettlementBackendPool(factory)
        await pool.init(_URLS, _KEYS)
        (url_a, key_a, store_a), (url_b, key_b, store_b) = factory.calls
        assert (url_a, key_a) == (PROVIDER_URL, HEX_KEY)
        assert isinstance(store_a, NonceStore)
        assert store_a is not store_b
        assert pool.get(NETWORK).nonce_store is store_a

    @pytest.mark.asyncio
    async def test_missing_key_aborts_before_any_backend(self) -> None:
        factory = RecordingFactory()
        pool = SettlementBackendPool(factory)
        with pytest.raises(ConfigurationError, match=f'network "{OTHER_NETWORK}"'):
            await pool.init(_URLS, {NETWORK: HEX_KEY})
        assert factory.calls == []
        assert pool.get(NETWORK).found is False
        assert pool.get(OTHER_NETWORK).found is False
        assert pool.size == 0

    @pytest.mark.asyncio
    async def test_empty_key_counts_as_missing(self) -> None:
        pool = SettlementBackendPool(RecordingFactory())
        with pytest.raises(ConfigurationError):
            await pool.init({NETWORK: PROVIDER_URL}, {NETWORK: ""})

    @pytest.mark.asyncio
    async def test_start_failure_closes_started_backends(self) -> None:
        factory = RecordingFactory()

        def failing_factory(url, key, store):
            backend = factory(url, key, store)
            if url != PROVIDER_URL:
                backend.start = AsyncMock(side_effect=ConfigurationError("bad key"))
            return backend

        pool = SettlementBackendPool(failing_factory)
        with pytest.raises(ConfigurationError, match="bad key"):
            await pool.init(_URLS, _KEYS)
        for backend in factory.backends:
            backend.close.assert_awaited_once()
        assert pool.network_ids() == ()


# ---------------------------------------------------------------------------
# get / close
# ---------------------------------------------------------------------------


class TestPoolLookup:
    @pytest.mark.asyncio
    async def test_found(self) -> None:
        factory = RecordingFactory()
        pool = SettlementBackendPool(factory)
        await pool.init({NETWORK: PROVIDER_URL}, {NETWORK: HEX_KEY})
        lookup = pool.get(NETWORK)
        assert lookup.found is True
        assert lookup.backend is factory.backends[0]

    def test_unknown_network_never_raises(self) -> None:
        lookup = SettlementBackendPool(RecordingFactory()).get("eip155:1")
        assert lookup == (None, None, False)

    @pytest.mark.asyncio
    async def test_network_ids_is_a_snapshot(self) -> None:
        pool = SettlementBackendPool(RecordingFactory())
        await pool.init(_URLS, _KEYS)
        ids = pool.network_ids()
        await pool.close()
        assert len(ids) == 2
        assert pool.network_ids() == ()

    @pytest.mark.asyncio
    async def test_close_closes_every_backend(self) -> None:
        factory = RecordingFactory()
        pool = SettlementBackendPool(factory)
        await pool.init(_URLS, _KEYS)
        factory.backends[0].close = AsyncMock(side_effect=RuntimeError("already closed"))
        await pool.close()
        factory.backends[1].close.assert_awaited_once()
        assert pool.get(NETWORK).found is False
