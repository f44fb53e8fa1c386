"""
Repository interfaces the engine persists through.

The engine never talks to a database directly; it only calls these
protocols. ``loauth2.storage`` ships a SQLAlchemy implementation.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


# ----------------------
# Token entities
# ----------------------
@dataclass
class AccessTokenEntity:
    identifier: str
    client_id: str
    user_id: str | None
    scopes: list[str]
    expires_at: int
    enabled: bool = True


@dataclass
class AuthCodeEntity:
    identifier: str
    client_id: str
    user_id: str
    scopes: list[str]
    redirect_uri: str | None
    expires_at: int
    enabled: bool = True


@dataclass
class RefreshTokenEntity:
    identifier: str
    access_token_identifier: str
    client_id: str
    user_id: str | None
    scopes: list[str]
    expires_at: int
    enabled: bool = True


# ----------------------
# Protocols
# ----------------------
class ClientRepository(Protocol):
    """Clients must implement Authlib's ``ClientMixin`` plus:

    ``require_consent`` (bool), ``client_credentials_grant_user_id``,
    ``get_defined_scope_identifiers()`` and
    ``get_auto_applied_scope_identifiers()``.
    """

    def get_client(self, client_id: str) -> Any | None:
        ...


class ScopeRepository(Protocol):
    def get_scope(self, identifier: str) -> Any | None:
        ...

    def get_scopes(self, identifiers: list[str]) -> list[Any]:
        ...


class UserRepository(Protocol):
    """Users must expose ``get_identifier()``."""

    def get_user(self, user_id: str) -> Any | None:
        ...

    def authenticate(self, username: str, password: str) -> Any | None:
        ...


class UserClientRepository(Protocol):
    def is_client_authorized(self, user_id: str, client_id: str) -> bool:
        ...

    def get_approved_scope_identifiers(self, user_id: str, client_id: str) -> list[str]:
        ...

    def save_client_authorization(self, user_id: str, client_id: str, scope_identifiers: list[str]) -> None:
        ...


class AccessTokenRepository(Protocol):
    def save_access_token(self, token: AccessTokenEntity) -> None:
        ...

    def is_access_token_revoked(self, identifier: str) -> bool:
        ...

    def revoke_access_token(self, identifier: str) -> None:
        ...


class AuthCodeRepository(Protocol):
    def save_auth_code(self, code: AuthCodeEntity) -> None:
        ...

    def is_auth_code_revoked(self, identifier: str) -> bool:
        ...

    def revoke_auth_code(self, identifier: str) -> None:
        ...


class RefreshTokenRepository(Protocol):
    def save_refresh_token(self, token: RefreshTokenEntity) -> None:
        ...

    def is_refresh_token_revoked(self, identifier: str) -> bool:
        ...

    def revoke_refresh_token(self, identifier: str) -> None:
        ...


@dataclass
class Repositories:
    """Bundle of collaborators handed to the module and the servers."""
    clients: ClientRepository
    scopes: ScopeRepository
    users: UserRepository
    user_clients: UserClientRepository
    access_tokens: AccessTokenRepository
    auth_codes: AuthCodeRepository
    refresh_tokens: RefreshTokenRepository

    @classmethod
    def from_storage(cls, storage) -> 'Repositories':
        """Use one object implementing every protocol for all of them."""
        return cls(storage, storage, storage, storage, storage, storage, storage)
