"""
``Oauth2Module``: wires settings, keys, repositories and the session store
into the two server façades and exposes them to a Flask app.
"""
from __future__ import annotations

import logging
import secrets
import time

from flask import current_app, g, jsonify, redirect, session
from flask import request as flask_req

from .authorization import ClientAuthorizationRequestStore
from .authorization_server import Oauth2AuthorizationServer
from .errors import ConfigurationError, InvalidCallError, Oauth2ServerError
from .keys import EncryptionKeyManager
from .oidc import OidcScopeCollection, get_userinfo
from .resource_server import Oauth2ResourceServer
from .session import FlaskSessionStore
from .settings import SERVER_ROLE_AUTHORIZATION_SERVER, SERVER_ROLE_RESOURCE_SERVER

log = logging.getLogger(__name__)

GENERIC_ERROR_DESCRIPTION = 'An internal server error occurred.'


class Oauth2Module:
    """Entry point of the engine.

    The façades are built lazily, once, and only for the roles enabled in
    ``settings.server_role``.
    """

    def __init__(self, settings, repositories, session_store=None, oidc_scopes=None,
                 key_manager=None, clock=time.time):
        self.settings = settings
        self.repositories = repositories
        self.session_store = session_store or FlaskSessionStore()
        self.key_manager = key_manager or EncryptionKeyManager.from_settings(settings)
        self.clock = clock
        self.client_authorization_requests = ClientAuthorizationRequestStore(self.session_store, repositories)
        self._oidc_scopes = oidc_scopes
        self._oidc_scope_collection = None
        self._authorization_server = None
        self._resource_server = None

    # ----------------------
    # Façades
    # ----------------------
    def get_authorization_server(self) -> Oauth2AuthorizationServer:
        if not self.settings.has_role(SERVER_ROLE_AUTHORIZATION_SERVER):
            raise InvalidCallError('Oauth2 server role does not include authorization server.')
        if self._authorization_server is None:
            self._authorization_server = Oauth2AuthorizationServer(
                self.settings,
                self.key_manager,
                self.repositories,
                self.client_authorization_requests,
                module=self,
                clock=self.clock,
            )
        return self._authorization_server

    def get_resource_server(self) -> Oauth2ResourceServer:
        if not self.settings.has_role(SERVER_ROLE_RESOURCE_SERVER):
            raise InvalidCallError('Oauth2 server role does not include resource server.')
        if self._resource_server is None:
            self._resource_server = Oauth2ResourceServer(
                self.settings, self.key_manager, self.repositories, clock=self.clock)
        return self._resource_server

    def get_oidc_scope_collection(self) -> OidcScopeCollection:
        if self._oidc_scope_collection is None:
            value = self._oidc_scopes
            if callable(value) and not isinstance(value, OidcScopeCollection):
                value = value(self)
            if value is None:
                collection = OidcScopeCollection()
            elif isinstance(value, OidcScopeCollection):
                collection = value
            elif isinstance(value, (dict, list, tuple)):
                collection = OidcScopeCollection(value)
            else:
                raise ConfigurationError(
                    f'OpenID Connect scopes must be a collection, dict, list or callable, '
                    f'got {type(value).__name__}.')
            self._oidc_scope_collection = collection
        return self._oidc_scope_collection

    # ----------------------
    # Current user
    # ----------------------
    def get_current_user(self):
        """The user logged in to this server, from ``session['user']``."""
        info = session.get('user')
        if not info:
            return None
        return self.repositories.users.get_user(info['id'])

    # ----------------------
    # Client authorization requests
    # ----------------------
    def get_client_auth_request(self, request_id):
        return self.client_authorization_requests.get(request_id)

    def set_client_auth_request(self, req):
        self.client_authorization_requests.set(req)

    def remove_client_auth_request(self, request_id):
        self.client_authorization_requests.remove(request_id)

    def set_user_authenticated_during_client_auth_request(self, request_id, authenticated=True):
        req = self.get_client_auth_request(request_id)
        if req is None:
            return False
        req.set_user_authenticated_during_request(authenticated)
        self.set_client_auth_request(req)
        return True

    def set_client_auth_request_user_identity(self, request_id, user):
        req = self.get_client_auth_request(request_id)
        if req is None:
            return False
        req.set_user_identity(user)
        self.set_client_auth_request(req)
        return True

    def generate_client_auth_req_completed_redirect_response(self, req):
        """Finalize ``req`` and send the browser back to the authorize endpoint."""
        req.process_authorization()
        self.set_client_auth_request(req)
        return redirect(req.get_authorization_request_url())

    # ----------------------
    # Resource server helpers
    # ----------------------
    def validate_authenticated_request(self, request=None, scopes=None):
        authenticated = self.get_resource_server().validate_authenticated_request(request, scopes)
        g.loauth2_oauth_claims = {
            'oauth_access_token_id': authenticated.oauth_access_token_id,
            'oauth_client_id': authenticated.oauth_client_id,
            'oauth_user_id': authenticated.oauth_user_id,
            'oauth_scopes': authenticated.oauth_scopes,
            'oauth_expires_at': authenticated.oauth_expires_at,
        }
        g.loauth2_oauth_authorization_header = flask_req.headers.get('Authorization')
        return authenticated

    def find_identity_by_access_token(self, token):
        header = g.get('loauth2_oauth_authorization_header') or ''
        scheme, _, value = header.partition(' ')
        if scheme.lower() != 'bearer' or not secrets.compare_digest(value.strip(), token or ''):
            raise InvalidCallError(
                'validate_authenticated_request() must be called before find_identity_by_access_token().')
        user_id = self.get_request_oauth_user_id()
        if not user_id:
            return None
        return self.repositories.users.get_user(user_id)

    def get_request_oauth_claim(self, name, default=None):
        header = g.get('loauth2_oauth_authorization_header')
        if not header:
            raise InvalidCallError('validate_authenticated_request() must be called before reading claims.')
        if flask_req.headers.get('Authorization') != header:
            raise InvalidCallError('Request Authorization header does not match the processed Oauth header.')
        return g.loauth2_oauth_claims.get(name, default)

    def get_request_oauth_user_id(self):
        return self.get_request_oauth_claim('oauth_user_id')

    def get_request_oauth_client_id(self):
        return self.get_request_oauth_claim('oauth_client_id')

    def get_request_oauth_scopes(self):
        return self.get_request_oauth_claim('oauth_scopes', [])

    def get_request_oauth_access_token_id(self):
        return self.get_request_oauth_claim('oauth_access_token_id')

    def get_oidc_userinfo(self, authenticated):
        user = self.repositories.users.get_user(authenticated.oauth_user_id)
        if user is None:
            return None
        return get_userinfo(user, authenticated.oauth_scopes, self.get_oidc_scope_collection())

    # ----------------------
    # Flask
    # ----------------------
    def init_app(self, app):
        from .views import create_blueprint, register_discovery

        # Build the façades now so configuration errors surface at startup
        if self.settings.has_role(SERVER_ROLE_AUTHORIZATION_SERVER):
            self.get_authorization_server()
        if self.settings.has_role(SERVER_ROLE_RESOURCE_SERVER):
            self.get_resource_server()

        app.register_blueprint(create_blueprint(self), url_prefix=self.settings.url_rules_prefix or None)
        register_discovery(app, self)
        app.register_error_handler(Oauth2ServerError, self.handle_server_error)
        app.extensions['loauth2'] = self
        return self

    def display_confidential_exception_messages(self) -> bool:
        value = self.settings.display_confidential_exception_messages
        if value is None:
            return bool(current_app.debug)
        return bool(value)

    def handle_server_error(self, error):
        log.error('Oauth2 server error: %s', error, exc_info=error)
        if self.display_confidential_exception_messages():
            description = str(error)
        else:
            description = GENERIC_ERROR_DESCRIPTION
        return jsonify({'error': 'server_error', 'error_description': description}), 500
