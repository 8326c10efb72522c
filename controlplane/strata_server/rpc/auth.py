"""
Session tokens and auth checks for RPC calls.

A session token is an HS256 JWT signed with the server secret. Claims:
    account_id  owning account (optional for system-bound agent tokens)
    system_id   system the session is bound to (optional)
    role        role the token was issued for (informational)
    iat         issue time

Tokens are resolved against the current config snapshot on every call, so a
removed role or a deleted system takes effect immediately.

Invariants:
    - Secrets and tokens are never logged
    - Support accounts pass every system role check
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import jwt

from ..errors import AuthError
from .schema import AuthRule

if TYPE_CHECKING:
    from ..store.config_store import ConfigStore

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


@dataclass
class Session:
    """A resolved session.

    Attributes:
        account: Account document, if the token names an existing account
        system: System document, if the token names an existing system
        role: Role claim of the token
        claims: Raw verified claims
    """

    account: dict[str, Any] | None = None
    system: dict[str, Any] | None = None
    role: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def is_support(self) -> bool:
        return bool(self.account and self.account.get("is_support"))


class SessionManager:
    """Issues and resolves session tokens.

    Example:
        >>> sessions = SessionManager(store, secret="s3cr3t")
        >>> token = sessions.issue(account_id, system_id, "admin")
        >>> session = sessions.resolve(token)
    """

    def __init__(
        self,
        store: ConfigStore,
        secret: str,
        ttl_seconds: int | None = None,
    ) -> None:
        if not secret:
            raise ValueError("Session secret must not be empty")
        self.store = store
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    def issue(
        self,
        account_id: str | None,
        system_id: str | None = None,
        role: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {"iat": now}
        if account_id:
            claims["account_id"] = account_id
        if system_id:
            claims["system_id"] = system_id
        if role:
            claims["role"] = role
        if self.ttl_seconds:
            claims["exp"] = now + self.ttl_seconds
        if extra:
            claims.update(extra)
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def resolve(self, token: str) -> Session:
        """Verify ``token`` and look its subjects up in the store.

        Raises:
            AuthError: If the token is invalid or names a missing account
        """
        try:
            claims = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError as e:
            raise AuthError("Session expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthError("Invalid session token") from e

        data = self.store.data
        account = None
        if claims.get("account_id"):
            account = data.get("accounts", claims["account_id"])
            if account is None:
                raise AuthError("Session account no longer exists")
        system = data.get("systems", claims["system_id"]) if claims.get("system_id") else None
        return Session(account=account, system=system, role=claims.get("role"), claims=claims)


def authorize(rule: AuthRule, session: Session | None, store: ConfigStore) -> None:
    """Check ``session`` against ``rule``.

    Raises:
        AuthError: If the session does not satisfy the rule
    """
    if rule.anonymous:
        return
    if session is None:
        raise AuthError("Authentication required")
    if rule.account and session.account is None:
        raise AuthError("Account session required")
    if rule.system and session.system is None:
        raise AuthError("System session required")
    if rule.system_role and not session.is_support:
        view = store.data.system_view(session.system["_id"])
        roles = view.roles_by_account.get(session.account["_id"], []) if view else []
        if rule.system_role not in roles:
            raise AuthError(
                f"Role '{rule.system_role}' required",
                details={"system": session.system["name"]},
            )
