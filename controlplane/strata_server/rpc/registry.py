"""
RPC service registry and client.

The registry holds every API table this process knows about. Services
registered with an implementation are local: calls run in-process after
params validation and the auth check. Services declared without an
implementation are remote: params are still validated here, then the call
goes out through the RpcTransport to the peer that hosts the service.
Callers use the same ``call`` either way.

Invariants:
    - A local handler never runs with params that fail its schema
    - A local handler never runs for a session that fails its auth rule
    - ``timeout`` bounds the whole call, local or remote
    - Errors cross the transport as their ControlPlaneError code and are
      rebuilt into the same type on the calling side

How to change safely:
    - Keep handler signature ``async def <method>(self, req: RpcRequest)``
    - New auth rule kinds go into rpc/schema.AuthRule and rpc/auth.authorize
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from ..errors import AuthError, ControlPlaneError, NotFoundError
from .auth import Session, SessionManager, authorize
from .schema import ApiSchema

if TYPE_CHECKING:
    from ..store.config_store import ConfigStore

logger = logging.getLogger(__name__)


@dataclass
class RpcRequest:
    """What a handler receives.

    Attributes:
        service: Service id
        method: Method name
        params: Validated params (never None)
        auth_token: Raw token the caller sent
        session: Resolved session, if any
    """

    service: str
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    auth_token: str | None = None
    session: Session | None = None

    @property
    def account(self) -> dict[str, Any] | None:
        return self.session.account if self.session else None

    @property
    def system(self) -> dict[str, Any] | None:
        return self.session.system if self.session else None

    @property
    def role(self) -> str | None:
        return self.session.role if self.session else None

    @property
    def srv(self) -> str:
        return f"{self.service}.{self.method}"


class RpcTransport(Protocol):
    """Sends a call to the peer hosting ``service``."""

    async def call(
        self,
        service: str,
        method: str,
        params: Any,
        auth_token: str | None,
    ) -> Any: ...


class RpcRegistry:
    """Locality-transparent dispatch over declared API tables.

    Example:
        >>> registry = RpcRegistry(store, sessions, transport)
        >>> registry.register_service(POOL_API, PoolService(store))
        >>> await registry.call("pool_api", "read_pool", {"name": "default_pool"},
        ...                     auth_token=token, timeout=10)
    """

    def __init__(
        self,
        store: ConfigStore,
        sessions: SessionManager | None = None,
        transport: RpcTransport | None = None,
        default_timeout: float | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.transport = transport
        self.default_timeout = default_timeout
        self._apis: dict[str, ApiSchema] = {}
        self._impls: dict[str, Any] = {}

    def declare(self, api: ApiSchema) -> None:
        """Register a table whose implementation lives on a peer."""
        if api.id in self._apis:
            raise ValueError(f"Service already registered: {api.id}")
        self._apis[api.id] = api
        logger.debug("Declared remote service", extra={"service": api.id})

    def register_service(self, api: ApiSchema, implementation: Any) -> None:
        """Bind ``api`` to a local implementation.

        Raises:
            TypeError: If the implementation lacks a method of the table
            ValueError: If the service id is already registered
        """
        if api.id in self._apis:
            raise ValueError(f"Service already registered: {api.id}")
        missing = [
            name
            for name in api.methods
            if not inspect.iscoroutinefunction(getattr(implementation, name, None))
        ]
        if missing:
            raise TypeError(
                f"{type(implementation).__name__} does not implement {api.id} "
                f"methods: {', '.join(sorted(missing))}"
            )
        self._apis[api.id] = api
        self._impls[api.id] = implementation
        logger.info(
            "Registered service",
            extra={"service": api.id, "methods": len(api.methods)},
        )

    def is_local(self, service: str) -> bool:
        return service in self._impls

    def api(self, service: str) -> ApiSchema:
        try:
            return self._apis[service]
        except KeyError:
            raise NotFoundError(
                f"Unknown service {service}", resource_type="rpc_service", resource_id=service
            ) from None

    @property
    def services(self) -> list[str]:
        return sorted(self._apis)

    @property
    def local_services(self) -> list[str]:
        return sorted(self._impls)

    async def call(
        self,
        service: str,
        method: str,
        params: Any = None,
        *,
        auth_token: str | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Call ``service.method`` wherever it is hosted.

        Raises:
            NotFoundError: Unknown service or method
            ValidationError: Params failed the method's schema
            AuthError: Session missing, invalid or lacking scope
            asyncio.TimeoutError: The deadline expired
            ControlPlaneError: Whatever the handler raised
        """
        return await self._bounded(
            self._dispatch(service, method, params, auth_token, local_only=False), timeout
        )

    async def call_local(
        self,
        service: str,
        method: str,
        params: Any = None,
        *,
        auth_token: str | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Like ``call`` but never forwards; used by the RPC server."""
        return await self._bounded(
            self._dispatch(service, method, params, auth_token, local_only=True), timeout
        )

    async def _bounded(self, coro: Any, timeout: float | None) -> Any:
        timeout = timeout if timeout is not None else self.default_timeout
        if timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout)

    async def _dispatch(
        self,
        service: str,
        method: str,
        params: Any,
        auth_token: str | None,
        local_only: bool,
    ) -> Any:
        api = self._apis.get(service)
        if api is None and self.transport is not None and not local_only:
            # the peer owns the table; it reports unknown methods itself
            return await self.transport.call(service, method, params, auth_token)
        if api is None:
            raise NotFoundError(
                f"Unknown service {service}", resource_type="rpc_service", resource_id=service
            )

        method_def = api.method(method)
        api.validate_params(method, params)

        if service not in self._impls:
            if local_only or self.transport is None:
                raise NotFoundError(
                    f"Service {service} is not hosted here",
                    resource_type="rpc_service",
                    resource_id=service,
                )
            return await self.transport.call(service, method, params, auth_token)

        session = self._resolve_session(auth_token, method_def.auth_rule.anonymous)
        authorize(method_def.auth_rule, session, self.store)

        req = RpcRequest(
            service=service,
            method=method,
            params=dict(params or {}),
            auth_token=auth_token,
            session=session,
        )
        handler = getattr(self._impls[service], method)
        reply = await handler(req)

        errors = api.reply_errors(method, reply)
        if errors:
            logger.error(
                "Handler reply failed validation",
                extra={"service": service, "method": method, "errors": errors},
            )
            raise ControlPlaneError(
                f"Invalid reply from {service}.{method}", details={"errors": errors}
            )
        return reply

    def _resolve_session(self, auth_token: str | None, anonymous: bool) -> Session | None:
        if not auth_token or self.sessions is None:
            return None
        try:
            return self.sessions.resolve(auth_token)
        except AuthError:
            if anonymous:
                logger.debug("Ignoring invalid token on anonymous method")
                return None
            raise
