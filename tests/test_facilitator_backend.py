"""Tests for FacilitatorBackend: signing keys, JWT auth, pre-checks, HTTP mapping."""

import time
from unittest.mock import AsyncMock

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from factories import HEX_KEY, NETWORK, NONCE, PAY_TO, PAYER, PROVIDER_URL, TX_HASH, USDC, legacy_payment, payment
from x402_mcp_middleware.backends.facilitator import (
    FacilitatorAuthError,
    FacilitatorBackend,
    FacilitatorConnectionError,
    FacilitatorError,
    FacilitatorServerError,
    FacilitatorTimeoutError,
    FacilitatorValidationError,
    load_signing_key,
)
from x402_mcp_middleware.config import ConfigurationError
from x402_mcp_middleware.constants import ErrorCode
from x402_mcp_middleware.payloads import PaymentPayload, PaymentRequirement


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_response(status: int = 200, json_data: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code=status,
        json=json_data or {},
        request=httpx.Request("POST", "https://example.com"),
    )


def _requirement(**overrides) -> PaymentRequirement:
    fields = dict(
        scheme="exact", network=NETWORK, amount="10000", asset=USDC,
        pay_to=PAY_TO, max_timeout_seconds=300,
    )
    fields.update(overrides)
    return PaymentRequirement(**fields)


def _ed25519_pem() -> str:
    key = Ed25519PrivateKey.generate()
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


async def _started(signing_key: str = HEX_KEY) -> FacilitatorBackend:
    backend = FacilitatorBackend(PROVIDER_URL, signing_key)
    await backend.start()
    return backend


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


class TestLoadSigningKey:
    def test_hex_evm_key(self) -> None:
        key, algorithm = load_signing_key(HEX_KEY)
        assert algorithm == "ES256K"
        assert key.curve.name == "secp256k1"

    def test_hex_key_without_prefix(self) -> None:
        _, algorithm = load_signing_key("1" * 64)
        assert algorithm == "ES256K"

    def test_ed25519_pem(self) -> None:
        _, algorithm = load_signing_key(_ed25519_pem())
        assert algorithm == "EdDSA"

    def test_bare_base64_body(self) -> None:
        pem = _ed25519_pem()
        body = "".join(line for line in pem.splitlines() if not line.startswith("-----"))
        _, algorithm = load_signing_key(body)
        assert algorithm == "EdDSA"

    def test_garbage_rejected(self) -> None:
        with pytest.raises(ValueError):
            load_signing_key("not-a-key")


# ---------------------------------------------------------------------------
# Init / auth
# ---------------------------------------------------------------------------


class TestFacilitatorInit:
    def test_trailing_slash_stripped(self) -> None:
        backend = FacilitatorBackend(PROVIDER_URL + "/", HEX_KEY)
        assert str(backend._client.base_url).rstrip("/") == PROVIDER_URL

    def test_timeout_configured(self) -> None:
        t = FacilitatorBackend(PROVIDER_URL, HEX_KEY)._client.timeout
        assert (t.connect, t.read, t.write, t.pool) == (5.0, 15.0, 10.0, 5.0)

    @pytest.mark.asyncio
    async def test_bad_key_fails_start(self) -> None:
        backend = FacilitatorBackend(PROVIDER_URL, "not-a-key")
        with pytest.raises(ConfigurationError, match="Invalid signing key"):
            await backend.start()

    @pytest.mark.asyncio
    async def test_request_before_start(self) -> None:
        backend = FacilitatorBackend(PROVIDER_URL, HEX_KEY)
        backend._client.request = AsyncMock(return_value=_mock_response())
        with pytest.raises(FacilitatorError, match="before start"):
            await backend.simulate(PaymentPayload.from_dict(payment()), _requirement())

    @pytest.mark.asyncio
    async def test_bearer_token_signed_with_network_key(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(200, {"success": True}))
        await backend.simulate(PaymentPayload.from_dict(payment()), _requirement())

        headers = backend._client.request.call_args.kwargs["headers"]
        token = headers["Authorization"].removeprefix("Bearer ")
        claims = jwt.decode(token, backend._key.public_key(), algorithms=["ES256K"])
        assert claims["uri"] == "POST /simulate"
        assert claims["exp"] - claims["iat"] == 60

    @pytest.mark.asyncio
    async def test_eddsa_token(self) -> None:
        backend = await _started(_ed25519_pem())
        backend._client.request = AsyncMock(return_value=_mock_response(200, {"success": True}))
        await backend.simulate(PaymentPayload.from_dict(payment()), _requirement())
        token = backend._client.request.call_args.kwargs["headers"]["Authorization"][7:]
        assert jwt.get_unverified_header(token)["alg"] == "EdDSA"


# ---------------------------------------------------------------------------
# validate: local pre-checks
# ---------------------------------------------------------------------------


class TestValidatePreChecks:
    async def _validate(self, raw: dict, requirement: PaymentRequirement | None = None, backend=None):
        backend = backend or await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(200, {"isValid": True}))
        outcome = await backend.validate(PaymentPayload.from_dict(raw), requirement or _requirement())
        return outcome, backend

    @pytest.mark.asyncio
    async def test_missing_fields(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock()
        outcome = await backend.validate(PaymentPayload.from_legacy(legacy_payment(payload={})), _requirement())
        assert outcome.error_code is ErrorCode.PAYLOAD_MISSING_FIELDS
        backend._client.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_network_mismatch(self) -> None:
        outcome, backend = await self._validate(payment(), _requirement(network="eip155:1"))
        assert outcome.error_code is ErrorCode.NETWORK_MISMATCH
        backend._client.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_asset_mismatch(self) -> None:
        outcome, _ = await self._validate(payment(), _requirement(asset="0x" + "9" * 40))
        assert outcome.error_code is ErrorCode.ASSET_MISMATCH

    @pytest.mark.asyncio
    async def test_recipient_mismatch(self) -> None:
        outcome, _ = await self._validate(payment(to="0x" + "f" * 40))
        assert outcome.error_code is ErrorCode.AUTHORIZATION_TO_MISMATCH

    @pytest.mark.asyncio
    async def test_recipient_compared_case_insensitively(self) -> None:
        outcome, _ = await self._validate(payment(to=PAY_TO.upper().replace("0X", "0x")))
        assert outcome.ok is True

    @pytest.mark.asyncio
    async def test_value_too_low(self) -> None:
        outcome, _ = await self._validate(payment(value="9999"))
        assert outcome.error_code is ErrorCode.AUTHORIZATION_VALUE_INVALID

    @pytest.mark.asyncio
    async def test_recipient_checked_before_value(self) -> None:
        outcome, _ = await self._validate(payment(to="0x" + "f" * 40, value="1"))
        assert outcome.error_code is ErrorCode.AUTHORIZATION_TO_MISMATCH

    @pytest.mark.asyncio
    async def test_expired(self) -> None:
        outcome, _ = await self._validate(payment(validBefore=str(int(time.time()) - 1)))
        assert outcome.error_code is ErrorCode.AUTHORIZATION_EXPIRED

    @pytest.mark.asyncio
    async def test_not_yet_valid(self) -> None:
        outcome, _ = await self._validate(payment(validAfter=str(int(time.time()) + 300)))
        assert outcome.error_code is ErrorCode.AUTHORIZATION_EXPIRED

    @pytest.mark.asyncio
    async def test_nonce_replay(self) -> None:
        backend = await _started()
        backend.nonce_store.check_and_record(NONCE, time.time() + 600)
        outcome, _ = await self._validate(payment(), backend=backend)
        assert outcome.error_code is ErrorCode.NONCE_ALREADY_USED
        backend._client.request.assert_not_called()


# ---------------------------------------------------------------------------
# validate / simulate / settle against the facilitator
# ---------------------------------------------------------------------------


class TestFacilitatorCalls:
    @pytest.mark.asyncio
    async def test_verify_ok(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(
            return_value=_mock_response(200, {"isValid": True, "payer": PAYER})
        )
        outcome = await backend.validate(PaymentPayload.from_dict(payment()), _requirement())
        assert outcome.ok is True
        assert outcome.payer == PAYER

        args, kwargs = backend._client.request.call_args
        assert args == ("POST", "/verify")
        assert kwargs["json"]["x402Version"] == 2
        assert kwargs["json"]["paymentRequirements"]["amount"] == "10000"
        assert kwargs["json"]["paymentPayload"]["payload"]["signature"]

    @pytest.mark.asyncio
    async def test_verify_rejected_maps_reason(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(
            200, {"isValid": False, "invalidReason": "invalid_exact_evm_payload_signature"}
        ))
        outcome = await backend.validate(PaymentPayload.from_dict(payment()), _requirement())
        assert outcome.ok is False
        assert outcome.error_code is ErrorCode.SIGNATURE_INVALID
        assert outcome.issues == ("invalid_exact_evm_payload_signature",)

    @pytest.mark.asyncio
    async def test_verify_unknown_reason_is_signature_failure(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(200, {"isValid": False}))
        outcome = await backend.validate(PaymentPayload.from_dict(payment()), _requirement())
        assert outcome.error_code is ErrorCode.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_simulate_failure(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(
            200, {"success": False, "errorReason": "insufficient_funds"}
        ))
        outcome = await backend.simulate(PaymentPayload.from_dict(payment()), _requirement())
        assert outcome.ok is False
        assert outcome.error == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_settle_success_records_nonce(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(
            200, {"success": True, "transaction": TX_HASH}
        ))
        outcome = await backend.settle(PaymentPayload.from_dict(payment()), _requirement(), timeout=5.0)
        assert outcome.success is True
        assert outcome.transaction == TX_HASH
        assert outcome.network == NETWORK
        assert outcome.payer == PAYER
        assert backend.nonce_store.is_used(NONCE) is True
        assert backend._client.request.call_args.kwargs["timeout"] == 5.0

    @pytest.mark.asyncio
    async def test_settle_replay_never_reaches_facilitator(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(
            200, {"success": True, "transaction": TX_HASH}
        ))
        await backend.settle(PaymentPayload.from_dict(payment()), _requirement())
        second = await backend.settle(PaymentPayload.from_dict(payment()), _requirement())
        assert second.success is False
        assert second.error_reason == "nonce_already_used"
        assert backend._client.request.await_count == 1

    @pytest.mark.asyncio
    async def test_settle_refused_releases_nonce(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(
            200, {"success": False, "errorReason": "transaction_reverted"}
        ))
        outcome = await backend.settle(PaymentPayload.from_dict(payment()), _requirement())
        assert outcome.success is False
        assert outcome.error_reason == "transaction_reverted"
        assert backend.nonce_store.is_used(NONCE) is False

    @pytest.mark.asyncio
    async def test_settle_http_error_releases_nonce(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(502, {"error": "down"}))
        with pytest.raises(FacilitatorServerError):
            await backend.settle(PaymentPayload.from_dict(payment()), _requirement())
        assert backend.nonce_store.is_used(NONCE) is False


class TestFacilitatorErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,exc_cls",
        [
            (400, FacilitatorValidationError),
            (401, FacilitatorAuthError),
            (403, FacilitatorAuthError),
            (422, FacilitatorValidationError),
            (500, FacilitatorServerError),
        ],
    )
    async def test_status_mapping(self, status, exc_cls) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(status))
        with pytest.raises(exc_cls) as exc_info:
            await backend.simulate(PaymentPayload.from_dict(payment()), _requirement())
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_unmapped_4xx(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(return_value=_mock_response(418))
        with pytest.raises(FacilitatorError) as exc_info:
            await backend.simulate(PaymentPayload.from_dict(payment()), _requirement())
        assert type(exc_info.value) is FacilitatorError

    @pytest.mark.asyncio
    async def test_connect_error(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(FacilitatorConnectionError):
            await backend.simulate(PaymentPayload.from_dict(payment()), _requirement())

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        backend = await _started()
        backend._client.request = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(FacilitatorTimeoutError):
            await backend.simulate(PaymentPayload.from_dict(payment()), _requirement())

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        backend = FacilitatorBackend(PROVIDER_URL, HEX_KEY)
        backend._client.aclose = AsyncMock()
        await backend.close()
        backend._client.aclose.assert_awaited_once()
