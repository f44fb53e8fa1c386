"""
Authorization server façade.

Wraps Authlib's Flask ``AuthorizationServer``: token generation goes through
``TokenIssuer``, clients come from the client repository, and the
authorize endpoint drives a ``ClientAuthorizationRequest`` through login
and consent before a code or token is issued.
"""
from __future__ import annotations

import logging
import time

from authlib.common.urls import add_params_to_uri
from authlib.integrations.flask_oauth2 import AuthorizationServer
from authlib.oauth2 import OAuth2Error
from authlib.oauth2.rfc6749.util import scope_to_list
from flask import request as flask_req
from flask import redirect, url_for

from .audit import _audit
from .authorization import REQUEST_ID_PARAM, ClientAuthorizationRequest
from .errors import ConfigurationError
from .grants import ExplicitGrant, FactoryReference, normalize_grant_types
from .oidc import create_id_token
from .settings import parse_duration
from .tokens import TokenIssuer

log = logging.getLogger(__name__)


def validate_authorization_server_settings(settings):
    """Fail fast, naming the first missing setting."""
    if not settings.codes_encryption_key:
        raise ConfigurationError('codes_encryption_key must be set.')
    if not settings.storage_encryption_keys:
        raise ConfigurationError('storage_encryption_keys must be set.')
    default = settings.default_storage_encryption_key
    if not default:
        raise ConfigurationError('default_storage_encryption_key must be set.')
    if default not in settings.storage_encryption_keys:
        raise ConfigurationError(
            f'default_storage_encryption_key "{default}" is not a key of storage_encryption_keys.')
    if not settings.private_key:
        raise ConfigurationError('private_key must be set.')
    if not settings.public_key:
        raise ConfigurationError('public_key must be set.')


class Oauth2AuthorizationServer(AuthorizationServer):

    def __init__(self, settings, key_manager, repositories, request_store, module=None,
                 clock=time.time):
        super().__init__()
        validate_authorization_server_settings(settings)
        key_manager.validate()
        self.settings = settings
        self.key_manager = key_manager
        self.repositories = repositories
        self.request_store = request_store
        self.module = module
        self.clock = clock
        self.token_issuer = TokenIssuer(key_manager, repositories, settings, clock=clock)
        self.register_token_generator('default', self.token_issuer)
        self.grant_types_supported = []
        self.response_types_supported = []
        self.configure_grant_types(settings.grant_types)

    def load_config(self, config):
        # The token generator is ours; only pick up the error URIs
        self._error_uris = config.get('OAUTH2_ERROR_URIS')

    def query_client(self, client_id):
        return self.repositories.clients.get_client(client_id)

    def save_token(self, token, request):
        """Tokens are recorded when generated. Adds the ID token for OpenID Connect."""
        if not self.settings.enable_open_id_connect:
            return
        user = request.user
        scopes = scope_to_list(token.get('scope')) or []
        if user is None or 'openid' not in scopes:
            return
        code = request.authorization_code
        if code is not None:
            nonce, auth_time = code.get_nonce(), code.get_auth_time()
        else:
            nonce, auth_time = request.payload.data.get('nonce'), None
        token['id_token'] = create_id_token(
            self.key_manager.load_private_key(),
            self.get_issuer(),
            user,
            request.client.client_id,
            token.get('expires_in'),
            access_token=token.get('access_token'),
            nonce=nonce,
            auth_time=auth_time,
            now=self.clock(),
        )

    def get_issuer(self) -> str:
        if self.settings.issuer:
            return self.settings.issuer
        return flask_req.host_url.rstrip('/')

    # ----------------------
    # Grant types
    # ----------------------
    def enable_grant_type(self, grant_cls, access_token_ttl=None, extensions=None):
        ttl = parse_duration(access_token_ttl)
        if ttl is None:
            ttl = self.settings.access_token_ttl_seconds
        self.register_grant(grant_cls, list(extensions or []) or None)
        self.token_issuer.set_access_token_ttl(grant_cls.GRANT_TYPE, ttl)
        if hasattr(grant_cls, 'check_token_endpoint') and grant_cls.GRANT_TYPE not in self.grant_types_supported:
            self.grant_types_supported.append(grant_cls.GRANT_TYPE)
        for response_type in sorted(getattr(grant_cls, 'RESPONSE_TYPES', ())):
            if response_type not in self.response_types_supported:
                self.response_types_supported.append(response_type)
        log.debug('Enabled grant type %s (access token ttl %ss)', grant_cls.GRANT_TYPE, ttl)

    def configure_grant_types(self, value):
        for item in normalize_grant_types(value):
            if isinstance(item, ExplicitGrant):
                self.enable_grant_type(item.grant_cls, item.access_token_ttl, item.extensions)
            elif isinstance(item, FactoryReference):
                factory = item.factory
                self.enable_grant_type(factory.get_grant_type(), factory.access_token_ttl,
                                       factory.get_extensions())
            else:
                item.callback(self, self.module)

    # ----------------------
    # Endpoints
    # ----------------------
    def issue_token_response(self, request=None):
        return self.create_token_response(request)

    def issue_authorization_response(self, request=None, end_user=None):
        """Handle a request to the authorize endpoint.

        Redirects to the login page or the consent page while the client
        authorization request needs the user, and issues the response once
        nothing is left to decide.
        """
        try:
            grant = self.get_consent_grant(request, end_user=end_user)
        except OAuth2Error as error:
            return self.handle_error_response(request, error)

        oauth_request = grant.request
        req = self._resume_client_authorization_request(oauth_request, grant.client, end_user)

        if req.user_identifier is None:
            self.request_store.set(req)
            return redirect(add_params_to_uri(self.settings.login_url,
                                              [('next', req.get_authorization_request_url())]))

        if req.completed:
            self.request_store.remove(req.request_id)
            if not req.is_approved():
                return self.create_authorization_response(oauth_request, grant_user=None, grant=grant)
            return self._issue(grant, req, end_user)

        if req.is_authorization_needed():
            self.request_store.set(req)
            return redirect(self.get_client_authorization_url(req))

        return self._issue(grant, req, end_user)

    def _issue(self, grant, req, end_user):
        grant.granted_scopes = req.get_approved_scope_identifiers()
        user = end_user if end_user is not None else req.user_identity
        return self.create_authorization_response(grant.request, grant_user=user, grant=grant)

    def _resume_client_authorization_request(self, oauth_request, client, end_user):
        user_id = end_user.get_identifier() if end_user is not None else None
        request_id = oauth_request.payload.data.get(REQUEST_ID_PARAM)
        req = self.request_store.get(request_id) if request_id else None
        if req is not None:
            if req.client_identifier != client.client_id:
                log.warning('Client authorization request "%s" belongs to another client.', request_id)
                req = None
            elif user_id is not None and req.user_identifier not in (None, str(user_id)):
                log.warning('Client authorization request "%s" belongs to another user.', request_id)
                req = None

        if req is None:
            req = ClientAuthorizationRequest(
                client.client_id,
                scope_to_list(oauth_request.payload.scope) or [],
                grant_type=oauth_request.payload.response_type,
                authorize_url=oauth_request.uri,
                redirect_uri=oauth_request.payload.redirect_uri,
                state=oauth_request.payload.state,
            ).bind(self.repositories)
            _audit('client_authorization_requested', client_id=client.client_id,
                   request_id=req.request_id, scopes=req.requested_scope_identifiers)

        if end_user is not None and req.user_identifier is None:
            req.set_user_identity(end_user)
        return req

    def get_client_authorization_url(self, req) -> str:
        base = self.settings.client_authorization_url or url_for('loauth2.client_authorization')
        return add_params_to_uri(base, [(REQUEST_ID_PARAM, req.request_id)])
