"""
Grant type plugins and grant type configuration.

Grant configuration values are normalized once, at server construction,
into one of three variants:

- ``ExplicitGrant``: an Authlib grant class, registered as is
- ``FactoryReference``: a ``GrantTypeFactory`` (by registry name, numeric
  shorthand, class, instance or dotted import path)
- ``GrantCallback``: ``callback(server, module)`` doing its own registration
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from authlib.oauth2.rfc6749 import grants
from authlib.oauth2.rfc6749.errors import InvalidScopeError
from authlib.oauth2.rfc6749.hooks import hooked
from authlib.oauth2.rfc6749.util import list_to_scope, scope_to_list
from authlib.oauth2.rfc7636 import CodeChallenge
from werkzeug.utils import ImportStringError, import_string

from .authorization import ClientAuthorizationRequest
from .errors import ConfigurationError, ServerError

log = logging.getLogger(__name__)


class Oauth2GrantMixin:
    TOKEN_ENDPOINT_AUTH_METHODS = ["none", "client_secret_basic", "client_secret_post"]

    @property
    def repositories(self):
        return self.server.repositories

    def validate_requested_scope(self):
        super().validate_requested_scope()
        client = self.request.client
        scope = self.request.payload.scope
        if not scope or client is None:
            return
        defined = set(client.get_defined_scope_identifiers())
        undefined = [s for s in scope_to_list(scope) if s not in defined]
        if undefined:
            raise InvalidScopeError(
                f"Scope(s) {', '.join(undefined)} not defined for client {client.client_id}.")


class GrantedScopeMixin:
    """Lets the server narrow the scope after the user's consent.

    Authlib validates the authorization request again when the response is
    created, which resets ``request.scope`` to the requested scope.
    """
    granted_scopes = None

    def validate_authorization_request(self):
        redirect_uri = super().validate_authorization_request()
        if self.granted_scopes is not None:
            self.request.scope = list_to_scope(self.granted_scopes)
        return redirect_uri


class AuthorizationCodeGrant(GrantedScopeMixin, Oauth2GrantMixin, grants.AuthorizationCodeGrant):

    def generate_authorization_code(self):
        req = self.request
        data = req.payload.data
        return self.server.token_issuer.create_authorization_code(
            client_id=req.client.client_id,
            user_id=req.user.get_identifier(),
            scopes=scope_to_list(req.scope) or [],
            redirect_uri=req.payload.redirect_uri,
            ttl=self.server.settings.authorization_code_ttl_seconds,
            code_challenge=data.get('code_challenge'),
            code_challenge_method=data.get('code_challenge_method'),
            nonce=data.get('nonce'),
            auth_time=self.server.token_issuer.now(),
        )

    def save_authorization_code(self, code, request):
        # Recorded by the token issuer when the code is generated
        return code

    def query_authorization_code(self, code, client):
        return self.server.token_issuer.read_authorization_code(code, client.client_id)

    def delete_authorization_code(self, authorization_code):
        self.repositories.auth_codes.revoke_auth_code(authorization_code.identifier)

    def authenticate_user(self, authorization_code):
        return self.repositories.users.get_user(authorization_code.user_id)


class RefreshTokenGrant(Oauth2GrantMixin, grants.RefreshTokenGrant):
    INCLUDE_NEW_REFRESH_TOKEN = True  # rotation

    def authenticate_refresh_token(self, refresh_token):
        return self.server.token_issuer.read_refresh_token(refresh_token)

    def authenticate_user(self, credential):
        if credential.user_id is None:
            return None
        return self.repositories.users.get_user(credential.user_id)

    def revoke_old_credential(self, credential):
        self.repositories.refresh_tokens.revoke_refresh_token(credential.identifier)
        self.repositories.access_tokens.revoke_access_token(credential.access_token_identifier)


class ClientCredentialsGrant(Oauth2GrantMixin, grants.ClientCredentialsGrant):
    """Client credentials, optionally acting for the client's default user.

    When the client has a ``client_credentials_grant_user_id`` the token is
    issued for that user, limited to the scopes the user approved earlier
    plus the client's automatic scopes. Anything still needing consent is a
    deployment error.
    """
    TOKEN_ENDPOINT_AUTH_METHODS = ["client_secret_basic", "client_secret_post"]

    @hooked
    def create_token_response(self):
        client = self.request.client
        scope = self.request.payload.scope
        user = None
        if getattr(client, 'client_credentials_grant_user_id', None) is not None:
            user, scope = self.resolve_default_user(client, scope)
            self.request.user = user
        token = self.generate_token(user=user, scope=scope, include_refresh_token=False)
        log.debug('Issue client credentials token to %r', client)
        self.save_token(token)
        return 200, token, self.TOKEN_RESPONSE_HEADER

    def resolve_default_user(self, client, scope):
        user_id = client.client_credentials_grant_user_id
        prefix = (f'User id "{user_id}" is set as default "client credentials grant user" '
                  f'for client "{client.client_id}"')
        user = self.repositories.users.get_user(user_id)
        if user is None:
            raise ServerError(f'{prefix} but the user does not exist.')

        req = ClientAuthorizationRequest(
            client.client_id,
            scope_to_list(scope) or [],
            grant_type=self.GRANT_TYPE,
        ).bind(self.repositories)
        req.set_user_identity(user)

        if req.is_client_authorization_needed():
            raise ServerError(f'{prefix} but the client is not authorized for this user.')
        resolution = req.get_scope_resolution()
        if resolution.pending:
            raise ServerError(f'{prefix} but the following scopes are not approved: '
                              + ', '.join(resolution.pending))

        allowed = set(resolution.previously_approved) | set(resolution.auto_applied)
        scopes = [s for s in resolution.requested if s in allowed]
        return user, list_to_scope(scopes)


class ImplicitGrant(GrantedScopeMixin, Oauth2GrantMixin, grants.ImplicitGrant):
    pass


class PasswordGrant(Oauth2GrantMixin, grants.ResourceOwnerPasswordCredentialsGrant):

    def authenticate_user(self, username, password):
        return self.repositories.users.authenticate(username, password)


# ----------------------
# Grant type factories
# ----------------------
class GrantTypeFactory:
    """Builds a grant type registration. ``access_token_ttl`` overrides the default TTL."""
    grant_cls = None
    access_token_ttl = None

    def __init__(self, access_token_ttl=None):
        if access_token_ttl is not None:
            self.access_token_ttl = access_token_ttl

    def get_grant_type(self):
        return self.grant_cls

    def get_extensions(self):
        return []


class AuthorizationCodeGrantFactory(GrantTypeFactory):
    grant_cls = AuthorizationCodeGrant

    def get_extensions(self):
        return [CodeChallenge(required=False)]


class ClientCredentialsGrantFactory(GrantTypeFactory):
    grant_cls = ClientCredentialsGrant


class RefreshTokenGrantFactory(GrantTypeFactory):
    grant_cls = RefreshTokenGrant


class ImplicitGrantFactory(GrantTypeFactory):
    grant_cls = ImplicitGrant


class PasswordGrantFactory(GrantTypeFactory):
    grant_cls = PasswordGrant


GRANT_TYPE_AUTH_CODE = 1
GRANT_TYPE_CLIENT_CREDENTIALS = 2
GRANT_TYPE_REFRESH_TOKEN = 3
GRANT_TYPE_IMPLICIT = 4
GRANT_TYPE_PASSWORD = 5

DEFAULT_GRANT_TYPE_FACTORIES = {
    GRANT_TYPE_AUTH_CODE: AuthorizationCodeGrantFactory,
    GRANT_TYPE_CLIENT_CREDENTIALS: ClientCredentialsGrantFactory,
    GRANT_TYPE_REFRESH_TOKEN: RefreshTokenGrantFactory,
    GRANT_TYPE_IMPLICIT: ImplicitGrantFactory,
    GRANT_TYPE_PASSWORD: PasswordGrantFactory,
}

GRANT_TYPE_NAMES = {
    'authorization_code': GRANT_TYPE_AUTH_CODE,
    'client_credentials': GRANT_TYPE_CLIENT_CREDENTIALS,
    'refresh_token': GRANT_TYPE_REFRESH_TOKEN,
    'implicit': GRANT_TYPE_IMPLICIT,
    'password': GRANT_TYPE_PASSWORD,
}


# ----------------------
# Configuration variants
# ----------------------
@dataclass(frozen=True)
class ExplicitGrant:
    grant_cls: type
    access_token_ttl: Any = None
    extensions: tuple = ()


@dataclass(frozen=True)
class FactoryReference:
    factory: GrantTypeFactory


@dataclass(frozen=True)
class GrantCallback:
    callback: Callable


def _unknown(value):
    if isinstance(value, (str, int, float, bool)):
        return ConfigurationError(f'Unknown grant type "{value}" ({type(value).__name__}).')
    return ConfigurationError(f'Unknown grant type {value!r} with data type {type(value).__name__}.')


def normalize_grant_type(value):
    if isinstance(value, (ExplicitGrant, FactoryReference, GrantCallback)):
        return value
    if isinstance(value, GrantTypeFactory):
        return FactoryReference(value)
    if isinstance(value, type):
        if issubclass(value, GrantTypeFactory):
            return FactoryReference(value())
        if issubclass(value, grants.BaseGrant):
            return ExplicitGrant(value)
        raise _unknown(value)
    if isinstance(value, bool):
        raise _unknown(value)
    if isinstance(value, int):
        if value in DEFAULT_GRANT_TYPE_FACTORIES:
            return FactoryReference(DEFAULT_GRANT_TYPE_FACTORIES[value]())
        raise _unknown(value)
    if isinstance(value, str):
        if value.isdigit():
            return normalize_grant_type(int(value))
        if value in GRANT_TYPE_NAMES:
            return normalize_grant_type(GRANT_TYPE_NAMES[value])
        if '.' in value or ':' in value:
            try:
                imported = import_string(value)
            except ImportStringError as e:
                raise ConfigurationError(f'Unknown grant type "{value}": {e}') from e
            return normalize_grant_type(imported)
        raise _unknown(value)
    if callable(value):
        return GrantCallback(value)
    raise _unknown(value)


def normalize_grant_types(value) -> list:
    """Turn a grant type configuration value into a list of variants."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [normalize_grant_type(v) for v in value]
    return [normalize_grant_type(value)]
