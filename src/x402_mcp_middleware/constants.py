"""Constants for x402 payment gating of MCP tool calls."""

from enum import Enum, IntEnum


X402_VERSION = 2
X402_LEGACY_VERSION = 1

SCHEME_EXACT = "exact"
SUPPORTED_SCHEMES = frozenset({SCHEME_EXACT})

GATED_METHOD = "tools/call"

DEFAULT_PAYMENT_META_KEY = "x402/payment"
DEFAULT_PAYMENT_RESPONSE_META_KEY = "x402/payment-response"
DEFAULT_RESOURCE_PREFIX = "mcp://tool/"
DEFAULT_PAYMENT_HEADER = "x-payment"

DEFAULT_MAX_TIMEOUT_SECONDS = 300
SETTLEMENT_TIMEOUT_SECONDS = 5.0  # legacy post-response settlement deadline


class JsonRpcErrorCode(IntEnum):
    """JSON-RPC 2.0 error codes plus the reserved x402 payment code."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    PAYMENT_REQUIRED = 402


class ErrorCode(str, Enum):
    """Payment rejection codes reported by the header-based protocol."""

    MISSING_XPAYMENT = "ERR_MISSING_XPAYMENT"
    INVALID_HEADER_TYPE = "ERR_INVALID_HEADER_TYPE"
    EMPTY_HEADER = "ERR_EMPTY_HEADER"
    INVALID_JSON = "ERR_INVALID_JSON"
    INVALID_SCHEMA = "ERR_INVALID_SCHEMA"
    UNSUPPORTED_SCHEME = "ERR_UNSUPPORTED_SCHEME"
    PAYLOAD_MISSING_FIELDS = "ERR_PAYLOAD_MISSING_FIELDS"
    SIGNATURE_INVALID = "ERR_SIGNATURE_INVALID"
    AUTHORIZATION_EXPIRED = "ERR_AUTHORIZATION_EXPIRED"
    AUTHORIZATION_VALUE_INVALID = "ERR_AUTHORIZATION_VALUE_INVALID"
    AUTHORIZATION_TO_MISMATCH = "ERR_AUTHORIZATION_TO_MISMATCH"
    NONCE_ALREADY_USED = "ERR_NONCE_ALREADY_USED"
    ASSET_MISMATCH = "ERR_ASSET_MISMATCH"
    NETWORK_MISMATCH = "ERR_NETWORK_MISMATCH"
    SIMULATION_FAILED = "ERR_SIMULATION_FAILED"
    INTERNAL_VALIDATION_ERROR = "ERR_INTERNAL_VALIDATION_ERROR"

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self]


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.MISSING_XPAYMENT: "X-PAYMENT header is missing",
    ErrorCode.INVALID_HEADER_TYPE: "X-PAYMENT header must be a string",
    ErrorCode.EMPTY_HEADER: "X-PAYMENT header is empty",
    ErrorCode.INVALID_JSON: "X-PAYMENT header contains invalid JSON",
    ErrorCode.INVALID_SCHEMA: "X-PAYMENT header schema invalid",
    ErrorCode.UNSUPPORTED_SCHEME: "Unsupported payment scheme",
    ErrorCode.PAYLOAD_MISSING_FIELDS: "Payload or authorization fields missing",
    ErrorCode.SIGNATURE_INVALID: "Signature verification failed",
    ErrorCode.AUTHORIZATION_EXPIRED: "Authorization time window invalid",
    ErrorCode.AUTHORIZATION_VALUE_INVALID: "Authorization value too low",
    ErrorCode.AUTHORIZATION_TO_MISMATCH: "Authorization recipient does not match",
    ErrorCode.NONCE_ALREADY_USED: "Nonce already used",
    ErrorCode.ASSET_MISMATCH: "Asset address mismatch",
    ErrorCode.NETWORK_MISMATCH: "Network mismatch",
    ErrorCode.SIMULATION_FAILED: "Transaction simulation failed",
    ErrorCode.INTERNAL_VALIDATION_ERROR: "Internal validation error",
}
