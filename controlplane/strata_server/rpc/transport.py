"""
HTTP transport for RPC calls between members.

Server side: an aiohttp application exposing every locally hosted service.
Client side: an httpx-based RpcTransport that forwards calls for services
hosted on a peer.

Wire format:
    POST /rpc/{service}/{method}
        request:  {"params": {...}, "auth_token": "..."}
                  (the token may also come as "Authorization: Bearer ...")
        success:  200 {"reply": ...}
        failure:  4xx/5xx {"error": {"code", "message", "details", "retryable"}}
    GET /health
        200 {"healthy": true, ...} or 503 while the config store is loading

Invariants:
    - The server only dispatches to local services (no forwarding loops)
    - Unknown exceptions become INTERNAL with a logged traceback
    - Transport failures on the client side become EXTERNAL_DEPENDENCY

How to change safely:
    - Keep the wire format stable; peers may run different versions during upgrades
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import httpx
from aiohttp import web

from ..errors import (
    HTTP_STATUS,
    ControlPlaneError,
    ExternalDependencyError,
    NotFoundError,
    ValidationError,
    error_from_dict,
)

if TYPE_CHECKING:
    from .registry import RpcRegistry

logger = logging.getLogger(__name__)


def _error_response(err: ControlPlaneError) -> web.Response:
    return web.json_response(
        {"error": err.to_dict()},
        status=HTTP_STATUS.get(err.code, 500),
    )


def create_rpc_app(
    registry: RpcRegistry,
    health_check: Callable[[], dict[str, Any]] | None = None,
) -> web.Application:
    """Create the aiohttp application serving ``registry``'s local services.

    Args:
        registry: Registry holding the local implementations
        health_check: Returns the health payload; ``healthy: False`` answers 503
    """
    app = web.Application()

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ControlPlaneError as e:
            return _error_response(e)
        except asyncio.TimeoutError:
            return _error_response(ExternalDependencyError("Call timed out"))
        except Exception as e:
            logger.error(f"RPC handler error: {e}", exc_info=True)
            return _error_response(ControlPlaneError(str(e)))

    app.middlewares.append(error_middleware)

    async def handle_rpc(request: web.Request) -> web.Response:
        service = request.match_info["service"]
        method = request.match_info["method"]
        try:
            body = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError:
            raise ValidationError("Request body is not valid JSON") from None
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")

        auth_token = body.get("auth_token")
        header = request.headers.get("Authorization", "")
        if not auth_token and header.startswith("Bearer "):
            auth_token = header[len("Bearer "):]

        reply = await registry.call_local(
            service, method, body.get("params"), auth_token=auth_token
        )
        return web.json_response({"reply": reply})

    async def handle_health(request: web.Request) -> web.Response:
        payload = {"healthy": True, "services": registry.local_services}
        if health_check is not None:
            payload.update(health_check())
        return web.json_response(payload, status=200 if payload.get("healthy") else 503)

    app.router.add_post("/rpc/{service}/{method}", handle_rpc)
    app.router.add_get("/health", handle_health)
    return app


class HttpRpcTransport:
    """Forwards calls to the peer that hosts a service.

    Attributes:
        peers: Service id -> base URL of the hosting peer
        timeout: Per-request HTTP timeout in seconds

    Example:
        >>> transport = HttpRpcTransport({"hosted_agents_api": "http://agents:5001"})
        >>> await transport.call("hosted_agents_api", "create_agent", params, token)
    """

    def __init__(
        self,
        peers: dict[str, str],
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.peers = dict(peers)
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def call(
        self,
        service: str,
        method: str,
        params: Any,
        auth_token: str | None,
    ) -> Any:
        """POST the call to the hosting peer.

        Raises:
            NotFoundError: No peer is configured for ``service``
            ExternalDependencyError: The peer could not be reached or answered garbage
            ControlPlaneError: The error the peer reported, rebuilt by code
        """
        base_url = self.peers.get(service)
        if base_url is None:
            raise NotFoundError(
                f"No peer hosts service {service}", resource_type="rpc_service", resource_id=service
            )
        url = f"{base_url.rstrip('/')}/rpc/{service}/{method}"

        try:
            response = await self._get_client().post(
                url, json={"params": params, "auth_token": auth_token}
            )
        except httpx.HTTPError as e:
            logger.warning(
                "RPC peer unreachable",
                extra={"service": service, "method": method, "url": url, "error": str(e)},
            )
            raise ExternalDependencyError(f"Peer for {service} unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise ExternalDependencyError(
                f"Invalid response from {service}.{method} (HTTP {response.status_code})"
            ) from e

        if isinstance(body, dict) and "error" in body:
            raise error_from_dict(body["error"] or {})
        if response.status_code >= 400 or not isinstance(body, dict):
            raise ExternalDependencyError(
                f"Unexpected response from {service}.{method} (HTTP {response.status_code})"
            )
        return body.get("reply")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class RpcServer:
    """Runs the RPC application on a TCP site.

    Example:
        >>> server = RpcServer(app, "0.0.0.0", 5001)
        >>> await server.start()
    """

    def __init__(self, app: web.Application, host: str, port: int) -> None:
        self.app = app
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"RPC server running on http://{self.host}:{self.bound_port}")

    @property
    def bound_port(self) -> int | None:
        """Port actually listened on; differs from ``port`` when that is 0."""
        if self._runner is None or not self._runner.addresses:
            return None
        return self._runner.addresses[0][1]

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("RPC server stopped")
