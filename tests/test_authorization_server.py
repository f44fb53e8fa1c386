import json
import logging
import re

import pytest
from authlib.jose import JsonWebToken
from flask import Flask

from loauth2 import Oauth2Module
from loauth2.errors import ConfigurationError, InvalidCallError, ServerError
from loauth2.grants import (
    ClientCredentialsGrant,
    ClientCredentialsGrantFactory,
    ExplicitGrant,
    FactoryReference,
    GrantCallback,
    PasswordGrant,
    PasswordGrantFactory,
    RefreshTokenGrantFactory,
    normalize_grant_types,
)
from loauth2.settings import SERVER_ROLE_RESOURCE_SERVER

jwt = JsonWebToken(['RS256'])


@pytest.fixture
def flask_app():
    return Flask(__name__)


def request_token(flask_app, server, **form):
    with flask_app.test_request_context('/access-token', method='POST', data=form):
        response = server.issue_token_response()
        return response.status_code, response.get_json()


class TestConstruction:
    def test_builds_once(self, module):
        assert module.get_authorization_server() is module.get_authorization_server()

    @pytest.mark.parametrize('field, message', [
        ('codes_encryption_key', 'codes_encryption_key must be set'),
        ('storage_encryption_keys', 'storage_encryption_keys must be set'),
        ('private_key', 'private_key must be set'),
        ('public_key', 'public_key must be set'),
    ])
    def test_missing_setting(self, settings, repositories, field, message):
        setattr(settings, field, {} if field == 'storage_encryption_keys' else None)
        with pytest.raises(ConfigurationError, match=message):
            Oauth2Module(settings, repositories).get_authorization_server()

    def test_default_storage_key_must_exist(self, settings, repositories):
        settings.default_storage_encryption_key = 'k9'
        with pytest.raises(ConfigurationError, match='"k9" is not a key of storage_encryption_keys'):
            Oauth2Module(settings, repositories).get_authorization_server()

    def test_missing_private_key_file(self, settings, repositories, tmp_path):
        settings.private_key = f'@{tmp_path}/missing.pem'
        with pytest.raises(ConfigurationError, match='Could not read private_key'):
            Oauth2Module(settings, repositories).get_authorization_server()

    def test_role_gate(self, settings, repositories):
        settings.server_role = SERVER_ROLE_RESOURCE_SERVER
        module = Oauth2Module(settings, repositories)
        with pytest.raises(InvalidCallError, match='does not include authorization server'):
            module.get_authorization_server()
        assert module.get_resource_server() is not None

    def test_supported_types(self, module):
        server = module.get_authorization_server()
        assert server.grant_types_supported == ['authorization_code', 'refresh_token',
                                                'client_credentials', 'password']
        assert server.response_types_supported == ['code']


class TestGrantTypeNormalization:
    def test_forms(self):
        def callback(server, module):
            server.enable_grant_type(PasswordGrant)

        items = normalize_grant_types([
            1, '3', 'client_credentials', 'loauth2.grants.PasswordGrantFactory',
            RefreshTokenGrantFactory, ClientCredentialsGrantFactory(access_token_ttl=60),
            PasswordGrant, callback,
        ])
        assert [type(i) for i in items] == [FactoryReference] * 6 + [ExplicitGrant, GrantCallback]
        assert isinstance(items[3].factory, PasswordGrantFactory)
        assert items[5].factory.access_token_ttl == 60
        assert items[6].grant_cls is PasswordGrant

    def test_single_value(self):
        assert normalize_grant_types(PasswordGrant) == [ExplicitGrant(PasswordGrant)]
        assert normalize_grant_types(None) == []

    @pytest.mark.parametrize('value, message', [
        ('nope', 'Unknown grant type "nope"'),
        (42, 'Unknown grant type "42"'),
        (object(), 'Unknown grant type <object object at 0x'),
        ('loauth2.grants.Nothing', 'Unknown grant type "loauth2.grants.Nothing"'),
        (dict, "Unknown grant type <class 'dict'> with data type type"),
    ])
    def test_unknown(self, value, message):
        with pytest.raises(ConfigurationError, match=re.escape(message)):
            normalize_grant_types([value])

    def test_callback_receives_server_and_module(self, settings, repositories):
        seen = []

        def callback(server, module):
            seen.append((server, module))
            server.enable_grant_type(PasswordGrant)

        settings.grant_types = callback
        module = Oauth2Module(settings, repositories)
        server = module.get_authorization_server()
        assert seen == [(server, module)]
        assert server.grant_types_supported == ['password']


class TestAccessTokenTtl:
    def test_default_ttl(self, settings, repositories, seeded, flask_app):
        settings.default_access_token_ttl = 'PT2H'
        settings.grant_types = [2]
        server = Oauth2Module(settings, repositories).get_authorization_server()
        status, body = request_token(flask_app, server, grant_type='client_credentials',
                                     client_id='machine', client_secret='machine-secret')
        assert status == 200
        assert body['expires_in'] == 7200

    def test_factory_ttl_wins(self, settings, repositories, seeded, flask_app):
        settings.default_access_token_ttl = 'PT2H'
        settings.grant_types = [ClientCredentialsGrantFactory(access_token_ttl='PT5M')]
        server = Oauth2Module(settings, repositories).get_authorization_server()
        status, body = request_token(flask_app, server, grant_type='client_credentials',
                                     client_id='machine', client_secret='machine-secret')
        assert body['expires_in'] == 300

    def test_explicit_grant_ttl(self, settings, repositories, seeded, flask_app):
        settings.grant_types = [ExplicitGrant(ClientCredentialsGrant, access_token_ttl=42)]
        server = Oauth2Module(settings, repositories).get_authorization_server()
        status, body = request_token(flask_app, server, grant_type='client_credentials',
                                     client_id='machine', client_secret='machine-secret')
        assert body['expires_in'] == 42


class TestClientCredentials:
    def test_machine_client_has_no_user(self, module, seeded, flask_app, key_manager):
        server = module.get_authorization_server()
        status, body = request_token(flask_app, server, grant_type='client_credentials',
                                     client_id='machine', client_secret='machine-secret', scope='read')
        assert status == 200
        assert 'refresh_token' not in body
        claims = jwt.decode(body['access_token'], key_manager.load_public_key())
        assert claims['sub'] == ''
        assert claims['scopes'] == ['read']
        assert claims['client_id'] == 'machine'

    def test_wrong_secret(self, module, seeded, flask_app):
        status, body = request_token(flask_app, module.get_authorization_server(),
                                     grant_type='client_credentials', client_id='machine',
                                     client_secret='nope')
        assert status == 401
        assert body['error'] == 'invalid_client'

    def test_undefined_scope_is_rejected(self, module, seeded, flask_app):
        status, body = request_token(flask_app, module.get_authorization_server(),
                                     grant_type='client_credentials', client_id='machine',
                                     client_secret='machine-secret', scope='read admin')
        assert status == 400
        assert body['error'] == 'invalid_scope'
        assert body['error_description'] == 'Scope(s) admin not defined for client machine.'

    def test_default_user_gets_previous_and_automatic_scopes(self, module, seeded, storage, flask_app,
                                                             key_manager):
        alice = seeded['alice']
        storage.save_client_authorization(alice.get_identifier(), 'service', ['read'])
        status, body = request_token(flask_app, module.get_authorization_server(),
                                     grant_type='client_credentials', client_id='service',
                                     client_secret='service-secret', scope='read write')
        assert status == 200
        assert body['scope'] == 'read write'
        claims = jwt.decode(body['access_token'], key_manager.load_public_key())
        assert claims['sub'] == alice.get_identifier()
        assert claims['scopes'] == ['read', 'write']

    def test_default_user_not_authorized(self, module, seeded, flask_app):
        with pytest.raises(ServerError) as exc:
            request_token(flask_app, module.get_authorization_server(),
                          grant_type='client_credentials', client_id='service',
                          client_secret='service-secret', scope='read')
        message = str(exc.value)
        assert '"service"' in message
        assert f'"{seeded["alice"].get_identifier()}"' in message
        assert 'not authorized for this user' in message

    def test_default_user_with_unapproved_scope(self, module, seeded, storage, flask_app):
        storage.save_client_authorization(seeded['alice'].get_identifier(), 'service', [])
        with pytest.raises(ServerError, match='following scopes are not approved: read'):
            request_token(flask_app, module.get_authorization_server(),
                          grant_type='client_credentials', client_id='service',
                          client_secret='service-secret', scope='read write')


class TestServerErrorResponse:
    form = {'grant_type': 'client_credentials', 'client_id': 'service',
            'client_secret': 'service-secret', 'scope': 'read'}

    def test_message_is_hidden(self, client):
        resp = client.post('/access-token', data=self.form)
        assert resp.status_code == 500
        assert resp.get_json() == {'error': 'server_error',
                                   'error_description': 'An internal server error occurred.'}

    def test_message_is_displayed(self, client, settings):
        settings.display_confidential_exception_messages = True
        resp = client.post('/access-token', data=self.form)
        assert resp.status_code == 500
        assert 'not authorized for this user' in resp.get_json()['error_description']


def test_token_issue_is_audited(module, seeded, flask_app, caplog):
    with caplog.at_level(logging.INFO, logger='loauth2.audit'):
        request_token(flask_app, module.get_authorization_server(), grant_type='client_credentials',
                      client_id='machine', client_secret='machine-secret')
    entries = [json.loads(r.getMessage()) for r in caplog.records if r.name == 'loauth2.audit']
    assert [e['event'] for e in entries] == ['access_token_issued']
    assert entries[0]['client_id'] == 'machine'
    assert 'access_token' not in entries[0]
