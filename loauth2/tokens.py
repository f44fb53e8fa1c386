"""
Token issuance.

Access tokens are RS256 JWTs signed with the private key. Authorization
codes and refresh tokens are opaque to clients: JSON payloads encrypted
with the codes key. Every issued token is recorded through the repositories
so it can be revoked before it expires.
"""
from __future__ import annotations

import json
import logging
import secrets
import time

from authlib.jose import JsonWebToken
from authlib.oauth2.rfc6749.util import list_to_scope, scope_to_list
from cryptography.fernet import InvalidToken

from .audit import _audit
from .repositories import AccessTokenEntity, AuthCodeEntity, RefreshTokenEntity

log = logging.getLogger(__name__)

jwt = JsonWebToken(['RS256'])


def new_identifier() -> str:
    return secrets.token_hex(40)


class AuthorizationCodeCredential:
    """Decrypted authorization code, in the shape Authlib's grants expect."""

    def __init__(self, payload: dict):
        self.identifier = payload['auth_code_id']
        self.client_id = payload['client_id']
        self.user_id = payload['user_id']
        self.scope = list_to_scope(payload.get('scopes') or []) or ''
        self.redirect_uri = payload.get('redirect_uri')
        self.expires_at = payload['expire_time']
        self.code_challenge = payload.get('code_challenge')
        self.code_challenge_method = payload.get('code_challenge_method')
        self.nonce = payload.get('nonce')
        self.auth_time = payload.get('auth_time')

    def get_redirect_uri(self):
        return self.redirect_uri

    def get_scope(self):
        return self.scope

    def get_nonce(self):
        return self.nonce

    def get_auth_time(self):
        return self.auth_time

    def is_expired(self, now=None):
        return (now or time.time()) >= self.expires_at


class RefreshTokenCredential:
    def __init__(self, payload: dict, repository=None):
        self.identifier = payload['refresh_token_id']
        self.access_token_identifier = payload['access_token_id']
        self.client_id = payload['client_id']
        self.user_id = payload.get('user_id')
        self.scope = list_to_scope(payload.get('scopes') or []) or ''
        self.expires_at = payload['expire_time']
        self._repository = repository

    def get_scope(self):
        return self.scope

    def check_client(self, client) -> bool:
        return self.client_id == getattr(client, 'client_id', None)

    def is_expired(self, now=None):
        return (now or time.time()) >= self.expires_at

    def is_revoked(self):
        return self._repository.is_refresh_token_revoked(self.identifier)


class TokenIssuer:
    """Authlib token generator backed by the key manager and repositories.

    Register it as the server's default generator; it is called as
    ``issuer(grant_type=..., client=..., user=..., scope=..., expires_in=...,
    include_refresh_token=...)`` and returns the token response dict.
    """

    def __init__(self, key_manager, repositories, settings, clock=time.time):
        self.key_manager = key_manager
        self.repositories = repositories
        self.settings = settings
        self.clock = clock
        self.access_token_ttls = {}

    def now(self) -> int:
        return int(self.clock())

    def set_access_token_ttl(self, grant_type, ttl):
        self.access_token_ttls[grant_type] = ttl

    def get_access_token_ttl(self, grant_type) -> int:
        ttl = self.access_token_ttls.get(grant_type)
        if ttl is None:
            ttl = self.settings.access_token_ttl_seconds
        return int(ttl)

    def __call__(self, grant_type, client, user=None, scope=None, expires_in=None,
                 include_refresh_token=True):
        scopes = scope_to_list(scope) or []
        if expires_in is None:
            expires_in = self.get_access_token_ttl(grant_type)
        user_id = user.get_identifier() if user is not None else None
        access_token, entity = self.create_access_token(client.client_id, user_id, scopes, expires_in)
        token = {
            'token_type': 'Bearer',
            'access_token': access_token,
            'expires_in': expires_in,
        }
        if scopes:
            token['scope'] = list_to_scope(scopes)
        if include_refresh_token and self.should_issue_refresh_token(scopes):
            token['refresh_token'] = self.create_refresh_token(entity)
        _audit('access_token_issued', grant_type=grant_type, client_id=client.client_id,
               user_id=user_id, scopes=scopes, access_token_id=entity.identifier)
        return token

    def should_issue_refresh_token(self, scopes) -> bool:
        s = self.settings
        if not s.enable_open_id_connect or 'openid' not in scopes:
            return True
        if 'offline_access' in scopes:
            return True
        return bool(s.open_id_connect_issue_refresh_token_without_offline_access_scope)

    # ----------------------
    # Access tokens
    # ----------------------
    def create_access_token(self, client_id, user_id, scopes, expires_in):
        now = self.now()
        entity = AccessTokenEntity(
            identifier=new_identifier(),
            client_id=client_id,
            user_id=user_id,
            scopes=list(scopes),
            expires_at=now + int(expires_in),
        )
        key = self.key_manager.load_private_key()
        header = {'alg': 'RS256', 'kid': key.kid}
        payload = {
            'aud': client_id,
            'jti': entity.identifier,
            'iat': now,
            'nbf': now,
            'exp': entity.expires_at,
            'sub': user_id or '',
            'scopes': list(scopes),
            'client_id': client_id,
        }
        value = jwt.encode(header, payload, key).decode()
        self.repositories.access_tokens.save_access_token(entity)
        log.debug('Issued access token %s for client %s', entity.identifier, client_id)
        return value, entity

    # ----------------------
    # Refresh tokens
    # ----------------------
    def create_refresh_token(self, access_token: AccessTokenEntity) -> str:
        entity = RefreshTokenEntity(
            identifier=new_identifier(),
            access_token_identifier=access_token.identifier,
            client_id=access_token.client_id,
            user_id=access_token.user_id,
            scopes=list(access_token.scopes),
            expires_at=self.now() + self.settings.refresh_token_ttl_seconds,
        )
        self.repositories.refresh_tokens.save_refresh_token(entity)
        return self._encrypt({
            'refresh_token_id': entity.identifier,
            'access_token_id': entity.access_token_identifier,
            'client_id': entity.client_id,
            'user_id': entity.user_id,
            'scopes': entity.scopes,
            'expire_time': entity.expires_at,
        })

    def read_refresh_token(self, value: str) -> RefreshTokenCredential | None:
        """Decrypt a refresh token. Returns None when it is unusable."""
        payload = self._decrypt(value)
        if payload is None:
            return None
        try:
            credential = RefreshTokenCredential(payload, self.repositories.refresh_tokens)
        except KeyError:
            return None
        if credential.is_expired(self.now()) or credential.is_revoked():
            return None
        return credential

    # ----------------------
    # Authorization codes
    # ----------------------
    def create_authorization_code(self, client_id, user_id, scopes, redirect_uri, ttl,
                                  code_challenge=None, code_challenge_method=None, nonce=None,
                                  auth_time=None) -> str:
        entity = AuthCodeEntity(
            identifier=new_identifier(),
            client_id=client_id,
            user_id=user_id,
            scopes=list(scopes),
            redirect_uri=redirect_uri,
            expires_at=self.now() + int(ttl),
        )
        self.repositories.auth_codes.save_auth_code(entity)
        return self._encrypt({
            'auth_code_id': entity.identifier,
            'client_id': client_id,
            'user_id': user_id,
            'scopes': entity.scopes,
            'redirect_uri': redirect_uri,
            'expire_time': entity.expires_at,
            'code_challenge': code_challenge,
            'code_challenge_method': code_challenge_method,
            'nonce': nonce,
            'auth_time': auth_time,
        })

    def read_authorization_code(self, value: str, client_id: str) -> AuthorizationCodeCredential | None:
        payload = self._decrypt(value)
        if payload is None:
            return None
        try:
            credential = AuthorizationCodeCredential(payload)
        except KeyError:
            return None
        if credential.client_id != client_id:
            return None
        if credential.is_expired(self.now()):
            return None
        if self.repositories.auth_codes.is_auth_code_revoked(credential.identifier):
            return None
        return credential

    # ----------------------
    # Codes key
    # ----------------------
    def _encrypt(self, payload: dict) -> str:
        data = json.dumps(payload).encode()
        return self.key_manager.resolve_codes_key().encrypt(data).decode()

    def _decrypt(self, value: str) -> dict | None:
        try:
            data = self.key_manager.resolve_codes_key().decrypt(value.encode())
        except (InvalidToken, AttributeError):
            return None
        try:
            payload = json.loads(data)
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None
