"""ASGI adapter that puts a ``PaymentGateway`` in front of an MCP server.

Only POST requests with a JSON body are inspected. Calls the gateway does
not gate are forwarded untouched and keep streaming. For admitted paid
calls the downstream response is buffered so the settlement stage can
rewrite it; a legacy post-response settlement job runs as a Starlette
``BackgroundTask``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from x402_mcp_middleware.gateway import InboundCall, OutboundResponse, PaymentGateway

logger = logging.getLogger(__name__)

# Recomputed by Starlette when the body is re-rendered
_DROPPED_HEADERS = frozenset({"content-length", "content-type"})


def _replay_receive(body: bytes, receive: Receive) -> Receive:
    """Hand the already-read body to the downstream app, then defer to *receive*."""
    delivered = False

    async def replay() -> Message:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


def _decode_json(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


class PaymentMiddleware:
    def __init__(self, app: ASGIApp, gateway: PaymentGateway) -> None:
        self.app = app
        self.gateway = gateway

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("method") != "POST":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        raw = await request.body()
        downstream_receive = _replay_receive(raw, receive)
        body = _decode_json(raw)
        if not isinstance(body, dict):
            await self.app(scope, downstream_receive, send)
            return

        call = InboundCall(body, request.headers)
        admission = await self.gateway.admit(call)
        if admission.response is not None:
            await self._emit(admission.response, scope, receive, send)
            return
        if admission.context is None:
            await self.app(scope, downstream_receive, send)
            return

        downstream = await self._capture(scope, downstream_receive)
        final = await self.gateway.settle(call, downstream, admission.context)
        await self._emit(final, scope, receive, send, original=downstream)

    async def _capture(self, scope: Scope, receive: Receive) -> OutboundResponse:
        """Run the downstream app and buffer its whole response."""
        status_code = 500
        headers: dict[str, str] = {}
        chunks: list[bytes] = []

        async def capture(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                for key, value in message.get("headers", []):
                    headers[key.decode("latin-1").lower()] = value.decode("latin-1")
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b""))

        await self.app(scope, receive, capture)

        content = b"".join(chunks)
        body = _decode_json(content)
        if body is None and content:
            logger.warning(
                "Downstream response for a paid call is not JSON (%s).",
                headers.get("content-type", "unknown content type"),
            )
        return OutboundResponse(body, status_code, headers, content)

    async def _emit(
        self,
        response: OutboundResponse,
        scope: Scope,
        receive: Receive,
        send: Send,
        *,
        original: OutboundResponse | None = None,
    ) -> None:
        background = BackgroundTask(response.background) if response.background else None
        headers = {k: v for k, v in response.headers.items() if k.lower() not in _DROPPED_HEADERS}

        unchanged = original is not None and response.body is original.body
        if response.content is not None and (unchanged or response.body is None):
            out: Response = Response(
                response.content,
                status_code=response.status_code,
                headers=headers,
                media_type=response.headers.get("content-type"),
                background=background,
            )
        else:
            out = JSONResponse(
                response.body,
                status_code=response.status_code,
                headers=headers,
                background=background,
            )
        await out(scope, receive, send)
