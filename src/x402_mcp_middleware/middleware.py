"""Middleware construction: validate configuration, build cache and backends.

``X402Middleware`` serves the current protocol (payment in MCP ``_meta``,
one backend per network). ``LegacyX402Middleware`` serves the header-based
protocol on a single chain. Both fail fast with ``ConfigurationError`` at
startup; once built, nothing they expose raises on bad client input.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from starlette.types import ASGIApp

from x402_mcp_middleware.asgi import PaymentMiddleware
from x402_mcp_middleware.backend import BackendFactory, SettlementBackend
from x402_mcp_middleware.backends.facilitator import FacilitatorBackend
from x402_mcp_middleware.bindings import HeaderBinding, MetaBinding
from x402_mcp_middleware.cache import PaymentRequiredCache
from x402_mcp_middleware.catalog import (
    build_legacy_payment_required,
    parse_catalogs,
    prepare_payment_options,
    validate_configuration,
)
from x402_mcp_middleware.config import ConfigurationError, GatewayConfig
from x402_mcp_middleware.constants import (
    DEFAULT_MAX_TIMEOUT_SECONDS,
    DEFAULT_PAYMENT_HEADER,
    DEFAULT_PAYMENT_META_KEY,
    DEFAULT_PAYMENT_RESPONSE_META_KEY,
    DEFAULT_RESOURCE_PREFIX,
    SETTLEMENT_TIMEOUT_SECONDS,
)
from x402_mcp_middleware.gateway import PaymentGateway
from x402_mcp_middleware.nonce_store import NonceStore
from x402_mcp_middleware.pool import SettlementBackendPool
from x402_mcp_middleware.supervisor import SettlementSupervisor

logger = logging.getLogger(__name__)


def _is_object(value: Any) -> bool:
    return isinstance(value, dict)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _raise_on_issues(issues: list[dict[str, str]]) -> None:
    if issues:
        raise ConfigurationError(
            f"Configuration validation failed: {json.dumps(issues)}", issues
        )


# ---------------------------------------------------------------------------
# Current generation
# ---------------------------------------------------------------------------


def _validate_create(configuration: Any, server: Any, mcp: Any) -> list[str]:
    messages: list[str] = []

    if configuration is None:
        messages.append("configuration: Is required")
    elif not _is_object(configuration):
        messages.append("configuration: Must be an object")
    else:
        for key in ("contractCatalog", "paymentOptionCatalog"):
            if configuration.get(key) is None:
                messages.append(f"configuration.{key}: Is required")
            elif not _is_object(configuration[key]):
                messages.append(f"configuration.{key}: Must be an object")
        if configuration.get("restrictedCalls") is None:
            messages.append("configuration.restrictedCalls: Is required")
        elif not isinstance(configuration["restrictedCalls"], list):
            messages.append("configuration.restrictedCalls: Must be an array")

    if server is None:
        messages.append("server: Is required")
    elif not _is_object(server):
        messages.append("server: Must be an object")
    else:
        for key in (
            "payToAddressMap",
            "providerUrlByPaymentNetworkId",
            "facilitatorPrivateKeyByPaymentNetworkId",
        ):
            if server.get(key) is None:
                messages.append(f"server.{key}: Is required")
            elif not _is_object(server[key]):
                messages.append(f"server.{key}: Must be an object")

    if mcp is not None and not _is_object(mcp):
        messages.append("mcp: Must be an object")

    return messages


class X402Middleware:
    """Payment gating for MCP ``tools/call`` over the ``_meta`` carrier.

    Build with ``await X402Middleware.create(...)``, then either mount
    ``asgi(app)`` or drive ``gateway`` from your own transport.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        cache: PaymentRequiredCache,
        pool: SettlementBackendPool,
        config: GatewayConfig,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._pool = pool
        self._config = config

    @classmethod
    async def create(
        cls,
        configuration: Mapping[str, Any],
        server: Mapping[str, Any],
        mcp: Mapping[str, Any] | None = None,
        *,
        backend_factory: BackendFactory = FacilitatorBackend,
    ) -> X402Middleware:
        messages = _validate_create(configuration, server, mcp)
        if messages:
            raise ConfigurationError(f"X402Middleware.create: {', '.join(messages)}", messages)

        mcp = mcp or {}
        pay_to_map = server["payToAddressMap"]
        _raise_on_issues(validate_configuration(
            configuration["contractCatalog"],
            configuration["paymentOptionCatalog"],
            configuration["restrictedCalls"],
            pay_to_map,
        ))

        config = GatewayConfig(
            payment_meta_key=mcp.get("paymentMetaKey", DEFAULT_PAYMENT_META_KEY),
            payment_response_meta_key=mcp.get(
                "paymentResponseMetaKey", DEFAULT_PAYMENT_RESPONSE_META_KEY
            ),
            resource_prefix=mcp.get("resourcePrefix", DEFAULT_RESOURCE_PREFIX),
            simulate_before_settle=bool(server.get("simulateBeforeSettle", True)),
            default_max_timeout_seconds=int(
                server.get("defaultMaxTimeoutSeconds", DEFAULT_MAX_TIMEOUT_SECONDS)
            ),
        )

        contracts, options, calls = parse_catalogs(
            configuration["contractCatalog"],
            configuration["paymentOptionCatalog"],
            configuration["restrictedCalls"],
        )
        prepared = prepare_payment_options(
            options,
            pay_to_map=pay_to_map,
            contracts=contracts,
            default_max_timeout_seconds=config.default_max_timeout_seconds,
        )

        cache = PaymentRequiredCache()
        cache.build(calls, prepared, contracts, config.resource_prefix)

        pool = SettlementBackendPool(backend_factory)
        await pool.init(
            server["providerUrlByPaymentNetworkId"],
            server["facilitatorPrivateKeyByPaymentNetworkId"],
        )

        gateway = PaymentGateway(
            cache,
            lambda network_id: pool.get(network_id).backend,
            MetaBinding(config),
            config,
        )
        return cls(gateway, cache, pool, config)

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway

    @property
    def cache(self) -> PaymentRequiredCache:
        return self._cache

    @property
    def pool(self) -> SettlementBackendPool:
        return self._pool

    @property
    def config(self) -> GatewayConfig:
        return self._config

    def asgi(self, app: ASGIApp) -> PaymentMiddleware:
        """Wrap an ASGI app (e.g. a Starlette-mounted MCP server)."""
        return PaymentMiddleware(app, self._gateway)

    async def close(self) -> None:
        await self._pool.close()


# ---------------------------------------------------------------------------
# Legacy generation
# ---------------------------------------------------------------------------


def _validate_legacy_create(
    chain_id: Any,
    chain_name: Any,
    contracts: Any,
    payment_options: Any,
    restricted_calls: Any,
    credentials: Any,
    private_key: Any,
) -> list[str]:
    messages: list[str] = []
    if not _is_number(chain_id):
        messages.append("chain_id: Must be a number")
    if not isinstance(chain_name, str):
        messages.append("chain_name: Must be a string")
    if not _is_object(contracts):
        messages.append("contracts: Must be an object")
    if not _is_object(payment_options):
        messages.append("payment_options: Must be an object")
    if not isinstance(restricted_calls, list):
        messages.append("restricted_calls: Must be an array")
    if not _is_object(credentials):
        messages.append("credentials: Must be an object")
    elif not isinstance(credentials.get("serverProviderUrl"), str) or not credentials["serverProviderUrl"]:
        messages.append("credentials.serverProviderUrl: Is required")
    if not isinstance(private_key, str):
        messages.append("private_key: Must be a string")
    return messages


class LegacyX402Middleware:
    """Header-based (``X-PAYMENT``) payment gating on a single chain."""

    def __init__(
        self,
        gateway: PaymentGateway,
        cache: PaymentRequiredCache,
        backend: SettlementBackend,
        supervisor: SettlementSupervisor,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._backend = backend
        self._supervisor = supervisor

    @classmethod
    async def create(
        cls,
        *,
        chain_id: int,
        chain_name: str,
        contracts: Mapping[str, Any],
        payment_options: Mapping[str, Any],
        restricted_calls: list[Mapping[str, Any]],
        credentials: Mapping[str, str],
        private_key: str,
        payment_header: str = DEFAULT_PAYMENT_HEADER,
        settlement_timeout_seconds: float = SETTLEMENT_TIMEOUT_SECONDS,
        backend_factory: BackendFactory = FacilitatorBackend,
    ) -> LegacyX402Middleware:
        messages = _validate_legacy_create(
            chain_id, chain_name, contracts, payment_options,
            restricted_calls, credentials, private_key,
        )
        if messages:
            raise ConfigurationError(
                f"LegacyX402Middleware.create: {', '.join(messages)}", messages
            )

        _raise_on_issues(validate_configuration(
            contracts, payment_options, restricted_calls, credentials, legacy=True
        ))

        parsed_contracts, options, calls = parse_catalogs(contracts, payment_options, restricted_calls)
        prepared = prepare_payment_options(
            options,
            pay_to_map=credentials,
            contracts=parsed_contracts,
            default_max_timeout_seconds=DEFAULT_MAX_TIMEOUT_SECONDS,
            decimal_amounts=True,
        )

        def builder(resource_url, option_ids, prepared_options, contract_entries):
            return build_legacy_payment_required(
                resource_url, option_ids, prepared_options, contract_entries,
                chain_id=int(chain_id), chain_name=chain_name,
            )

        cache = PaymentRequiredCache()
        cache.build(calls, prepared, parsed_contracts, builder=builder)

        backend = backend_factory(credentials["serverProviderUrl"], private_key, NonceStore())
        await backend.start()
        logger.info("Legacy settlement backend ready for %s (chain %s).", chain_name, chain_id)

        config = GatewayConfig(
            payment_header=payment_header,
            settlement_timeout_seconds=settlement_timeout_seconds,
        )
        binding = HeaderBinding(config)
        gateway = PaymentGateway(cache, lambda network_id: backend, binding, config)
        return cls(gateway, cache, backend, binding.supervisor)

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway

    @property
    def cache(self) -> PaymentRequiredCache:
        return self._cache

    @property
    def supervisor(self) -> SettlementSupervisor:
        return self._supervisor

    def asgi(self, app: ASGIApp) -> PaymentMiddleware:
        return PaymentMiddleware(app, self._gateway)

    async def close(self, drain_timeout: float | None = None) -> None:
        """Wait for background settlements, then close the backend."""
        remaining = await self._supervisor.drain(drain_timeout)
        if remaining:
            logger.warning("Closing with %d settlement(s) still pending.", remaining)
        await self._backend.close()
