import logging

import pytest

from loauth2.authorization import (
    REQUEST_ID_PARAM,
    ClientAuthorizationRequest,
    ClientAuthorizationRequestState,
    ClientAuthorizationRequestStore,
)
from loauth2.errors import InvalidCallError
from loauth2.models import OAuth2Client


def make_request(repositories, scopes='read write profile', **kwargs):
    kwargs.setdefault('authorize_url', 'https://auth.example.com/authorize?client_id=web&response_type=code')
    return ClientAuthorizationRequest('web', scopes, grant_type='code', **kwargs).bind(repositories)


class TestWorkflow:
    def test_awaits_authentication_without_user(self, repositories, seeded):
        req = make_request(repositories)
        assert req.workflow_state is ClientAuthorizationRequestState.AWAITING_AUTHENTICATION

    def test_unbound_request_stays_created(self):
        req = ClientAuthorizationRequest('web', 'read')
        assert req.workflow_state is ClientAuthorizationRequestState.CREATED
        with pytest.raises(InvalidCallError):
            req.client

    def test_awaits_scope_approval(self, repositories, seeded):
        req = make_request(repositories)
        req.set_user_identity(seeded['alice'])
        assert req.workflow_state is ClientAuthorizationRequestState.AWAITING_SCOPE_APPROVAL
        assert req.is_client_authorization_needed()
        assert list(req.get_approval_pending_scopes()) == ['read', 'write']
        assert list(req.get_scopes_applied_automatically()) == ['profile']
        pending = req.get_approval_pending_scopes()['read']
        assert pending.scope.description == 'Read your data'

    def test_approve_and_process(self, repositories, seeded, storage):
        alice = seeded['alice']
        req = make_request(repositories)
        request_id = req.request_id
        req.set_user_identity(alice)
        req.set_selected_scope_identifiers(['read'])
        req.set_authorization_status(ClientAuthorizationRequest.AUTHORIZATION_APPROVED)
        assert req.workflow_state is ClientAuthorizationRequestState.READY
        assert req.get_approved_scope_identifiers() == ['read', 'profile']

        req.process_authorization()
        assert req.workflow_state is ClientAuthorizationRequestState.FINALIZED_APPROVED
        assert req.request_id == request_id
        assert storage.is_client_authorized(alice.get_identifier(), 'web')
        assert storage.get_approved_scope_identifiers(alice.get_identifier(), 'web') == ['read']

        # A later request only needs consent for what is still new
        again = make_request(repositories)
        again.set_user_identity(alice)
        assert not again.is_client_authorization_needed()
        assert list(again.get_previously_approved_scopes()) == ['read']
        assert list(again.get_approval_pending_scopes()) == ['write']

    def test_deny(self, repositories, seeded, storage):
        req = make_request(repositories)
        req.set_user_identity(seeded['bob'])
        req.set_authorization_status(ClientAuthorizationRequest.AUTHORIZATION_DENIED)
        req.process_authorization()
        assert req.workflow_state is ClientAuthorizationRequestState.FINALIZED_DENIED
        assert not storage.is_client_authorized(seeded['bob'].get_identifier(), 'web')

    def test_process_twice(self, repositories, seeded):
        req = make_request(repositories)
        req.set_user_identity(seeded['alice'])
        req.set_authorization_status(ClientAuthorizationRequest.AUTHORIZATION_DENIED)
        req.process_authorization()
        with pytest.raises(InvalidCallError, match='already been processed'):
            req.process_authorization()
        with pytest.raises(InvalidCallError):
            req.set_authorization_status(ClientAuthorizationRequest.AUTHORIZATION_APPROVED)

    def test_process_without_decision(self, repositories, seeded):
        req = make_request(repositories)
        req.set_user_identity(seeded['alice'])
        with pytest.raises(InvalidCallError, match='no authorization status'):
            req.process_authorization()

    def test_unknown_status(self, repositories, seeded):
        req = make_request(repositories)
        with pytest.raises(ValueError):
            req.set_authorization_status('maybe')

    def test_denied_scopes(self, repositories, seeded):
        req = make_request(repositories, scopes='read admin')
        assert req.get_denied_scope_identifiers() == ['admin']

    def test_authorization_request_url(self, repositories, seeded):
        req = make_request(repositories, authorize_url=f'https://a.example/authorize?x=1&{REQUEST_ID_PARAM}=old')
        url = req.get_authorization_request_url()
        assert url == f'https://a.example/authorize?x=1&{REQUEST_ID_PARAM}={req.request_id}'


class TestStore:
    def test_round_trip_keeps_request_id(self, repositories, seeded, session_store):
        store = ClientAuthorizationRequestStore(session_store, repositories)
        req = make_request(repositories, state='xyz')
        req.set_user_identity(seeded['alice'])
        store.set(req)

        loaded = store.get(req.request_id)
        assert loaded.request_id == req.request_id
        assert loaded.user_identifier == seeded['alice'].get_identifier()
        assert loaded.state == 'xyz'
        assert loaded.workflow_state is ClientAuthorizationRequestState.AWAITING_SCOPE_APPROVAL

        store.remove(req.request_id)
        assert store.get(req.request_id) is None

    def test_mismatched_id_is_not_found(self, repositories, seeded, session_store, caplog):
        store = ClientAuthorizationRequestStore(session_store, repositories)
        req = make_request(repositories)
        session_store.set(store.key('other'), req.to_dict())
        with caplog.at_level(logging.WARNING, logger='loauth2.authorization'):
            assert store.get('other') is None
        assert 'mismatch' in caplog.text

    def test_foreign_value_is_not_found(self, repositories, session_store):
        store = ClientAuthorizationRequestStore(session_store, repositories)
        session_store.set(store.key('abc'), {'something': 'else'})
        assert store.get('abc') is None

    def test_request_for_deleted_client_is_discarded(self, repositories, seeded, storage, session_store,
                                                     caplog):
        store = ClientAuthorizationRequestStore(session_store, repositories)
        req = make_request(repositories)
        req.set_user_identity(seeded['alice'])
        store.set(req)
        delete_client(storage, 'web')

        with caplog.at_level(logging.WARNING, logger='loauth2.authorization'):
            assert store.get(req.request_id) is None
        assert 'no longer exists' in caplog.text
        assert session_store.get(store.key(req.request_id)) is None

    @pytest.mark.parametrize('request_id', ['', None])
    def test_remove_needs_request_id(self, repositories, session_store, request_id):
        store = ClientAuthorizationRequestStore(session_store, repositories)
        with pytest.raises(InvalidCallError):
            store.remove(request_id)


def delete_client(storage, client_id):
    db = storage.SessionLocal()
    try:
        db.query(OAuth2Client).filter_by(client_id=client_id).delete()
        db.commit()
    finally:
        db.close()
