"""
Resource server façade: validates bearer access tokens issued by the
authorization server.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from authlib.integrations.flask_oauth2 import ResourceProtector
from authlib.integrations.flask_oauth2.requests import FlaskJsonRequest
from authlib.jose import JsonWebToken
from authlib.jose.errors import BadSignatureError, JoseError
from authlib.oauth2.rfc6749.util import list_to_scope
from authlib.oauth2.rfc6750 import BearerTokenValidator, InsufficientScopeError, InvalidTokenError
from flask import request as flask_req

from .errors import ConfigurationError

log = logging.getLogger(__name__)

jwt = JsonWebToken(['RS256'])


class JwtAccessToken:
    """A verified access token. Authlib's validators call the ``get_scope`` /
    ``is_expired`` / ``is_revoked`` trio."""

    def __init__(self, claims, repository, clock=time.time):
        self.claims = dict(claims)
        self.identifier = claims['jti']
        self.client_id = claims['client_id']
        self.user_id = claims.get('sub') or None
        self.scopes = list(claims.get('scopes') or [])
        self.expires_at = int(claims['exp'])
        self._repository = repository
        self._clock = clock

    def __repr__(self):
        return f'<JwtAccessToken {self.identifier} client={self.client_id!r}>'

    def get_scope(self):
        return list_to_scope(self.scopes)

    def is_expired(self):
        return self._clock() >= self.expires_at

    def is_revoked(self):
        return self._repository.is_access_token_revoked(self.identifier)


class JwtBearerTokenValidator(BearerTokenValidator):

    def __init__(self, key_manager, repositories, check_revocation=True, clock=time.time,
                 realm=None, **extra_attributes):
        super().__init__(realm, **extra_attributes)
        self.key_manager = key_manager
        self.repositories = repositories
        self.check_revocation = check_revocation
        self.clock = clock

    def _invalid(self, description):
        return InvalidTokenError(description=description, realm=self.realm,
                                 extra_attributes=self.extra_attributes)

    def authenticate_token(self, token_string):
        try:
            claims = jwt.decode(token_string, self.key_manager.load_public_key())
        except BadSignatureError as e:
            log.debug('Access token signature rejected: %s', e)
            raise self._invalid('Access token could not be verified.') from e
        except JoseError as e:
            log.debug('Access token rejected: %s', e)
            raise self._invalid('Access token is malformed.') from e
        try:
            return JwtAccessToken(claims, self.repositories.access_tokens, clock=self.clock)
        except (KeyError, TypeError, ValueError) as e:
            raise self._invalid('Access token is missing required claims.') from e

    def validate_token(self, token, scopes, request):
        if not token:
            raise self._invalid('Access token is missing.')
        # Expiry is checked before and independently of revocation
        if token.is_expired():
            raise self._invalid('Access token is expired.')
        if self.check_revocation and token.is_revoked():
            raise self._invalid('Access token has been revoked.')
        if self.scope_insufficient(token.get_scope(), scopes):
            raise InsufficientScopeError()


@dataclass
class AuthenticatedRequest:
    oauth_access_token_id: str
    oauth_client_id: str
    oauth_user_id: str | None
    oauth_scopes: list = field(default_factory=list)
    oauth_expires_at: int | None = None
    token: JwtAccessToken | None = None

    @classmethod
    def from_token(cls, token: JwtAccessToken) -> 'AuthenticatedRequest':
        return cls(
            oauth_access_token_id=token.identifier,
            oauth_client_id=token.client_id,
            oauth_user_id=token.user_id,
            oauth_scopes=list(token.scopes),
            oauth_expires_at=token.expires_at,
            token=token,
        )


class Oauth2ResourceServer(ResourceProtector):
    """``require_oauth``-style protector plus ``validate_authenticated_request``."""

    def __init__(self, settings, key_manager, repositories, clock=time.time):
        super().__init__()
        if not settings.public_key:
            raise ConfigurationError('public_key must be set.')
        key_manager.validate(require_private=False)
        self.settings = settings
        self.key_manager = key_manager
        self.repositories = repositories
        self.register_token_validator(JwtBearerTokenValidator(
            key_manager,
            repositories,
            check_revocation=settings.resource_server_access_token_revocation_validation,
            clock=clock,
        ))

    def validate_authenticated_request(self, request=None, scopes=None) -> AuthenticatedRequest:
        """Validate the bearer token of ``request`` (default: the current Flask request).

        Raises an Authlib ``OAuth2Error`` when the token is missing or unusable.
        """
        if request is None:
            request = FlaskJsonRequest(flask_req)
        token = self.validate_request(scopes, request)
        return AuthenticatedRequest.from_token(token)
