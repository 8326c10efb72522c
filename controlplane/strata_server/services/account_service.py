"""
account_api implementation.

Accounts are cluster-wide; access to a system is granted through Role
documents. ``create_account`` runs anonymously only while a system is being
provisioned, in which case it also makes the new account the system's admin.

Invariants:
    - The anonymous path is accepted only for the account id recorded as the
      system's owner, before that account or any Role of the system exists

"""

from __future__ import annotations

import logging
import secrets
import string
from typing import TYPE_CHECKING, Any

import bcrypt

from ..errors import AuthError, NotFoundError, ValidationError
from ..rpc.auth import authorize
from ..rpc.schema import AuthRule

if TYPE_CHECKING:
    from ..rpc.auth import SessionManager
    from ..rpc.registry import RpcRequest
    from ..store.config_store import ConfigStore

logger = logging.getLogger(__name__)

_ADMIN_RULE = AuthRule()
_KEY_ALPHABET = string.ascii_uppercase + string.digits
_SECRET_ALPHABET = string.ascii_letters + string.digits + "+/"


def generate_access_keys() -> dict[str, str]:
    return {
        "access_key": "".join(secrets.choice(_KEY_ALPHABET) for _ in range(20)),
        "secret_key": "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(40)),
    }


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


class AccountService:
    """Handlers of ``account_api``."""

    def __init__(
        self,
        store: ConfigStore,
        sessions: SessionManager,
        bcrypt_rounds: int = 12,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.bcrypt_rounds = bcrypt_rounds

    async def create_account(self, req: RpcRequest) -> dict[str, Any]:
        params = req.params
        new_system = params.get("new_system_parameters")
        if new_system:
            account_id = new_system["account_id"]
            system_id = new_system["new_system_id"]
            allowed_buckets = list(new_system["allowed_buckets"])
            self._check_new_system_owner(account_id, system_id)
        else:
            # outside provisioning the caller must administer the target system
            authorize(_ADMIN_RULE, req.session, self.store)
            account_id = self.store.generate_id()
            system_id = req.system["_id"]
            allowed_buckets = list(params.get("allowed_buckets") or [])

        if self.store.data.find_account_by_email(params["email"]) is not None:
            raise ValidationError(
                "Account already exists",
                errors=[f"email '{params['email']}' is already registered"],
            )

        access_keys = params.get("access_keys") or [generate_access_keys()]
        account = {
            "_id": account_id,
            "name": params["name"],
            "email": params["email"],
            "password": hash_password(params["password"], self.bcrypt_rounds),
            "has_login": True,
            "access_keys": access_keys,
            "allowed_buckets": allowed_buckets,
        }
        role = {
            "_id": self.store.generate_id(),
            "account": account_id,
            "system": system_id,
            "role": "admin",
        }
        await self.store.make_changes({"insert": {"accounts": [account], "roles": [role]}})
        logger.info(
            "Account created",
            extra={"account_id": account_id, "system_id": system_id, "provisioning": bool(new_system)},
        )

        token = self.sessions.issue(account_id, system_id, "admin")
        return {"token": token, "access_keys": access_keys}

    def _check_new_system_owner(self, account_id: str, system_id: str) -> None:
        """Only the pending owner of a freshly committed system may sign up anonymously."""
        data = self.store.data
        system = data.get("systems", system_id)
        if system is None:
            raise NotFoundError(
                "System of the new account not found",
                resource_type="system",
                resource_id=system_id,
            )
        view = data.system_view(system_id)
        if (
            system.get("owner") != account_id
            or data.get("accounts", account_id) is not None
            or (view is not None and view.roles_by_account)
        ):
            logger.warning(
                "Rejected anonymous account creation",
                extra={"account_id": account_id, "system_id": system_id},
            )
            raise AuthError("System already has an owner account")

    async def list_accounts(self, req: RpcRequest) -> dict[str, Any]:
        data = self.store.data
        view = data.system_view(req.system["_id"])
        member_ids = set(view.roles_by_account) if view else set()
        accounts = [a for a in data.accounts if a["_id"] in member_ids]
        if req.session and req.session.is_support:
            accounts = data.accounts
        accounts.sort(key=lambda a: a["email"].lower())
        return {"accounts": [self._account_info(a) for a in accounts]}

    async def read_account(self, req: RpcRequest) -> dict[str, Any]:
        account = self.store.data.find_account_by_email(req.params["email"])
        if account is None:
            raise NotFoundError(
                "Account not found", resource_type="account", resource_id=req.params["email"]
            )
        return self._account_info(account)

    def _account_info(self, account: dict[str, Any]) -> dict[str, Any]:
        data = self.store.data
        systems: dict[str, list[str]] = {}
        for role in data.roles_of(account["_id"]):
            system = data.get("systems", role["system"])
            if system is not None:
                systems.setdefault(system["name"], []).append(role["role"])

        bucket_names = []
        for bucket_id in account.get("allowed_buckets") or []:
            bucket = data.get("buckets", bucket_id)
            if bucket is not None:
                bucket_names.append(bucket["name"])

        return {
            "name": account["name"],
            "email": account["email"],
            "is_support": bool(account.get("is_support")),
            "has_login": bool(account.get("has_login", True)),
            "allowed_buckets": bucket_names,
            "systems": [
                {"name": name, "roles": sorted(roles)} for name, roles in sorted(systems.items())
            ],
        }
