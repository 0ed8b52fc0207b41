"""JSON-RPC envelope and MCP ``_meta`` carrier helpers."""

from x402_mcp_middleware.mcp import jsonrpc, meta

__all__ = ["jsonrpc", "meta"]
