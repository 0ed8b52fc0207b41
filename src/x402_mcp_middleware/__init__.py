"""x402 MCP Middleware — pay-per-call gating for MCP tool calls.

x402 payment challenges, validation and settlement for JSON-RPC
``tools/call`` requests.
"""

__version__ = "0.2.0"

from x402_mcp_middleware.backend import BackendError, SettlementBackend
from x402_mcp_middleware.backends import FacilitatorBackend, FacilitatorError
from x402_mcp_middleware.cache import PaymentRequiredCache
from x402_mcp_middleware.config import ConfigurationError, GatewayConfig
from x402_mcp_middleware.constants import ErrorCode, JsonRpcErrorCode, X402_VERSION
from x402_mcp_middleware.gateway import InboundCall, OutboundResponse, PaymentGateway
from x402_mcp_middleware.bindings import HeaderBinding, MetaBinding
from x402_mcp_middleware.middleware import LegacyX402Middleware, X402Middleware
from x402_mcp_middleware.asgi import PaymentMiddleware
from x402_mcp_middleware.nonce_store import NonceStore
from x402_mcp_middleware.payloads import PaymentPayload, PaymentRequiredPayload, SettlementOutcome
from x402_mcp_middleware.pool import SettlementBackendPool
from x402_mcp_middleware.supervisor import SettlementSupervisor

__all__ = [
    "BackendError",
    "SettlementBackend",
    "FacilitatorBackend",
    "FacilitatorError",
    "PaymentRequiredCache",
    "ConfigurationError",
    "GatewayConfig",
    "ErrorCode",
    "JsonRpcErrorCode",
    "X402_VERSION",
    "InboundCall",
    "OutboundResponse",
    "PaymentGateway",
    "HeaderBinding",
    "MetaBinding",
    "LegacyX402Middleware",
    "X402Middleware",
    "PaymentMiddleware",
    "NonceStore",
    "PaymentPayload",
    "PaymentRequiredPayload",
    "SettlementOutcome",
    "SettlementBackendPool",
    "SettlementSupervisor",
]
