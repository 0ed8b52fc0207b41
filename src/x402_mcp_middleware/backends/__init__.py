"""Bundled settlement backends."""

from x402_mcp_middleware.backends.facilitator import (
    FacilitatorBackend,
    FacilitatorError,
    load_signing_key,
)

__all__ = ["FacilitatorBackend", "FacilitatorError", "load_signing_key"]
