"""
RPC API tables.

An ApiSchema declares a service id and its methods. Every method carries a
JSON schema for its params and, optionally, its reply, plus an auth rule.
Validators are compiled once per table with jsonschema's Draft 2020-12
validator; shared sub-schemas live under ``definitions`` and are referenced
as ``{"$ref": "#/$defs/<name>"}``.

Auth rules:
    False                   anonymous
    {"system": "admin"}     account holding the named role in the token's system
    {"system": False}       any authenticated account, no system needed
    {"account": False, "system": False}
                            any valid session token

How to change safely:
    - Adding an optional param is safe; adding a required one breaks callers
    - Method names are part of the wire format; never rename them
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft202012Validator

from ..errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthRule:
    """Normalized auth requirement of one method.

    Attributes:
        anonymous: No session needed at all
        account: Session must carry a valid account
        system: Session must be bound to an existing system
        system_role: Role the account must hold in that system
    """

    anonymous: bool = False
    account: bool = True
    system: bool = True
    system_role: str | None = "admin"

    @classmethod
    def parse(cls, auth: Any) -> AuthRule:
        if auth is False:
            return cls(anonymous=True, account=False, system=False, system_role=None)
        if auth is None or auth is True:
            return cls()
        if not isinstance(auth, dict):
            raise ValueError(f"Invalid auth rule: {auth!r}")
        system = auth.get("system", "admin")
        account = bool(auth.get("account", True))
        if isinstance(system, str):
            return cls(account=True, system=True, system_role=system)
        return cls(account=account, system=bool(system), system_role=None)


@dataclass
class MethodDef:
    """One RPC method.

    Attributes:
        name: snake_case wire name
        params: JSON schema for params (None = accept anything)
        reply: JSON schema for the reply (None = not validated)
        auth: Raw auth rule (see module docstring)
        doc: Human description
    """

    name: str
    params: dict[str, Any] | None = None
    reply: dict[str, Any] | None = None
    auth: Any = field(default_factory=lambda: {"system": "admin"})
    doc: str = ""
    auth_rule: AuthRule = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.auth_rule = AuthRule.parse(self.auth)


class ApiSchema:
    """A service's method table with compiled validators.

    Example:
        >>> api = ApiSchema.from_dict({
        ...     "id": "pool_api",
        ...     "methods": {"read_pool": {"params": {...}, "auth": {"system": "admin"}}},
        ... })
        >>> api.validate_params("read_pool", {"name": "default_pool"})
    """

    def __init__(
        self,
        id: str,
        methods: dict[str, MethodDef],
        definitions: dict[str, Any] | None = None,
    ) -> None:
        self.id = id
        self.methods = methods
        self.definitions = definitions or {}
        self._params_validators: dict[str, Draft202012Validator] = {}
        self._reply_validators: dict[str, Draft202012Validator] = {}
        for name, method in methods.items():
            if method.params is not None:
                self._params_validators[name] = self._compile(method.params)
            if method.reply is not None:
                self._reply_validators[name] = self._compile(method.reply)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApiSchema:
        methods = {
            name: MethodDef(
                name=name,
                params=entry.get("params"),
                reply=entry.get("reply"),
                auth=entry.get("auth", {"system": "admin"}),
                doc=entry.get("doc", ""),
            )
            for name, entry in data["methods"].items()
        }
        return cls(data["id"], methods, data.get("definitions"))

    def _compile(self, schema: dict[str, Any]) -> Draft202012Validator:
        full = dict(schema)
        if self.definitions:
            full["$defs"] = {**self.definitions, **schema.get("$defs", {})}
        Draft202012Validator.check_schema(full)
        return Draft202012Validator(full)

    def method(self, name: str) -> MethodDef:
        try:
            return self.methods[name]
        except KeyError:
            raise NotFoundError(
                f"Unknown method {self.id}.{name}",
                resource_type="rpc_method",
                resource_id=f"{self.id}.{name}",
            ) from None

    def validate_params(self, name: str, params: Any) -> None:
        """Raises ValidationError listing every schema violation."""
        validator = self._params_validators.get(name)
        if validator is None:
            return
        errors = _collect(validator, {} if params is None else params)
        if errors:
            raise ValidationError(f"Invalid params for {self.id}.{name}", errors=errors)

    def reply_errors(self, name: str, reply: Any) -> list[str]:
        validator = self._reply_validators.get(name)
        if validator is None:
            return []
        return _collect(validator, reply)

    def __repr__(self) -> str:
        return f"ApiSchema(id={self.id!r}, methods={sorted(self.methods)})"


def _collect(validator: Draft202012Validator, instance: Any) -> list[str]:
    errors = []
    for err in sorted(validator.iter_errors(instance), key=lambda e: [str(p) for p in e.path]):
        where = "/".join(str(p) for p in err.path)
        errors.append(f"{where}: {err.message}" if where else err.message)
    return errors
