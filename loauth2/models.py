"""SQLAlchemy models used by the reference storage."""
from __future__ import annotations

import secrets
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base
from werkzeug.security import check_password_hash

from authlib.oauth2.rfc6749.util import scope_to_list

Base = declarative_base()


def _split(value):
    if not value:
        return []
    return [u.strip() for u in value.replace("\n", " ").split(" ") if u.strip()]


class User(Base):
    __tablename__ = 'user'
    id = Column(Integer, primary_key=True)
    username = Column(String(40), unique=True, nullable=False)
    password_hash = Column(String(200), nullable=False)
    email = Column(String(120), unique=True)
    email_verified = Column(Boolean, default=False)
    name = Column(String(120))
    given_name = Column(String(80))
    family_name = Column(String(80))
    phone_number = Column(String(40))

    def verify_password(self, pw: str) -> bool:
        return check_password_hash(self.password_hash, pw)

    def get_identifier(self) -> str:
        return str(self.id)


class OAuth2Client(Base):
    __tablename__ = 'oauth2_client'
    id = Column(Integer, primary_key=True)
    client_id = Column(String(48), unique=True, nullable=False)
    client_secret = Column(Text, nullable=True)  # encrypted with a storage key; public clients have none
    client_name = Column(String(120))
    client_uri = Column(String(256))
    logo_uri = Column(String(256))
    grant_types = Column(String(120))  # space separated
    redirect_uris = Column(Text)       # space/newline separated
    response_types = Column(String(120))
    scope = Column(Text)               # scopes defined for this client, space separated
    auto_applied_scope = Column(Text)  # subset of `scope` granted without consent
    token_endpoint_auth_method = Column(String(120), default="client_secret_basic")
    require_consent = Column(Boolean, default=True)
    client_credentials_grant_user_id = Column(Integer, ForeignKey('user.id'), nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    # Set by the storage when the client is loaded
    encryptor = None

    def check_redirect_uri(self, uri: str) -> bool:
        return uri in _split(self.redirect_uris)

    def get_default_redirect_uri(self) -> str | None:
        allowed = _split(self.redirect_uris)
        return allowed[0] if allowed else None

    def get_allowed_scope(self, scope: str) -> str:
        # Undefined scopes are kept so the caller can reject them with invalid_scope
        if not scope:
            return ''
        return ' '.join(scope_to_list(scope))

    def get_defined_scope_identifiers(self) -> list[str]:
        return scope_to_list(self.scope) or []

    def get_auto_applied_scope_identifiers(self) -> list[str]:
        return scope_to_list(self.auto_applied_scope) or []

    def get_plain_client_secret(self) -> str | None:
        if not self.client_secret:
            return None
        if self.encryptor is None:
            raise RuntimeError('Client secret is encrypted but no encryptor is attached.')
        return self.encryptor.decrypt(self.client_secret)

    def check_client_secret(self, secret: str | None) -> bool:
        plain = self.get_plain_client_secret()
        if plain is None:
            return False
        return bool(secret and secrets.compare_digest(plain, secret))

    def check_endpoint_auth_method(self, method: str, endpoint: str) -> bool:
        """
        Authlib calls this to verify the client's allowed auth method for a given endpoint.
        We only store a single setting (`token_endpoint_auth_method`) and use it for the token endpoint.
        """
        configured = (self.token_endpoint_auth_method or '').strip() or 'client_secret_basic'
        if endpoint == 'token':
            if not self.client_secret:
                return method == 'none'
            return method == configured
        return False

    def check_response_type(self, response_type: str) -> bool:
        return response_type in _split(self.response_types)

    def check_grant_type(self, grant_type: str) -> bool:
        return grant_type in _split(self.grant_types)

    def get_client_id(self):
        return self.client_id


class Scope(Base):
    __tablename__ = 'scope'
    identifier = Column(String(120), primary_key=True)
    description = Column(String(256))


class UserClient(Base):
    """A user has authorized a client."""
    __tablename__ = 'user_client'
    __table_args__ = (UniqueConstraint('user_id', 'client_id'),)
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('user.id'), nullable=False)
    client_id = Column(String(48), nullable=False)
    enabled = Column(Boolean, default=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


class UserClientScope(Base):
    """A scope the user approved for a client."""
    __tablename__ = 'user_client_scope'
    __table_args__ = (UniqueConstraint('user_client_id', 'scope'),)
    id = Column(Integer, primary_key=True)
    user_client_id = Column(Integer, ForeignKey('user_client.id'), nullable=False)
    scope = Column(String(120), nullable=False)


class AccessToken(Base):
    __tablename__ = 'oauth2_access_token'
    id = Column(Integer, primary_key=True)
    identifier = Column(String(128), unique=True, nullable=False)
    client_id = Column(String(48), nullable=False)
    user_id = Column(String(64))
    scope = Column(Text)
    expires_at = Column(Integer, nullable=False)
    enabled = Column(Boolean, default=True)


class AuthCode(Base):
    __tablename__ = 'oauth2_auth_code'
    id = Column(Integer, primary_key=True)
    identifier = Column(String(128), unique=True, nullable=False)
    client_id = Column(String(48), nullable=False)
    user_id = Column(String(64), nullable=False)
    scope = Column(Text)
    redirect_uri = Column(String(256))
    expires_at = Column(Integer, nullable=False)
    enabled = Column(Boolean, default=True)


class RefreshToken(Base):
    __tablename__ = 'oauth2_refresh_token'
    id = Column(Integer, primary_key=True)
    identifier = Column(String(128), unique=True, nullable=False)
    access_token_identifier = Column(String(128), nullable=False)
    client_id = Column(String(48), nullable=False)
    user_id = Column(String(64))
    scope = Column(Text)
    expires_at = Column(Integer, nullable=False)
    enabled = Column(Boolean, default=True)
