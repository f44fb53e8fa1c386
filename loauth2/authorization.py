"""
Client authorization (consent) requests.

A ``ClientAuthorizationRequest`` tracks one client asking to act for one
user with a set of scopes. It lives in the user's session between the
authorize call, the login page and the consent page, and is finalized with
``process_authorization()``.

Concurrent completions of the same request are not serialized: the last
write to the session store wins. A legitimate client never runs its own
consent flow twice in parallel.
"""
from __future__ import annotations

import enum
import logging
import secrets
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .audit import _audit
from .errors import InvalidCallError
from .scopes import (
    ScopeAuthorizationRequest,
    ScopeStatus,
    normalize_scope_identifiers,
    resolve_scopes,
)

log = logging.getLogger(__name__)

REQUEST_ID_PARAM = 'clientAuthorizationRequestId'
SESSION_KEY_PREFIX = 'OAUTH2_CLIENT_AUTHORIZATION_REQUEST_'
SERIALIZED_TYPE = 'loauth2.ClientAuthorizationRequest'


class ClientAuthorizationRequestState(str, enum.Enum):
    CREATED = 'created'
    AWAITING_AUTHENTICATION = 'awaiting_authentication'
    AWAITING_SCOPE_APPROVAL = 'awaiting_scope_approval'
    READY = 'ready'
    FINALIZED_APPROVED = 'finalized_approved'
    FINALIZED_DENIED = 'finalized_denied'


class ClientAuthorizationRequest:
    AUTHORIZATION_APPROVED = 'approved'
    AUTHORIZATION_DENIED = 'denied'

    def __init__(self, client_identifier, requested_scope_identifiers=None, grant_type=None,
                 user_identifier=None, authorize_url=None, redirect_uri=None, state=None,
                 request_id=None):
        self._request_id = request_id or secrets.token_urlsafe(32)
        self.client_identifier = client_identifier
        self.requested_scope_identifiers = normalize_scope_identifiers(requested_scope_identifiers)
        self.grant_type = grant_type
        self.user_identifier = str(user_identifier) if user_identifier is not None else None
        self.authorize_url = authorize_url
        self.redirect_uri = redirect_uri
        self.state = state
        self.user_authenticated_during_request = None
        self.authorization_status = None
        self.selected_scope_identifiers = []
        self.completed = False
        self.workflow_state = ClientAuthorizationRequestState.CREATED
        self._repositories = None
        self._client = None
        self._user = None

    def __repr__(self):
        return (f'<ClientAuthorizationRequest {self._request_id} client={self.client_identifier!r} '
                f'user={self.user_identifier!r} state={self.workflow_state.value}>')

    @property
    def request_id(self) -> str:
        return self._request_id

    # ----------------------
    # Collaborators
    # ----------------------
    def bind(self, repositories) -> 'ClientAuthorizationRequest':
        self._repositories = repositories
        self._client = None
        self.evaluate()
        return self

    @property
    def repositories(self):
        if self._repositories is None:
            raise InvalidCallError('Client authorization request is not bound to repositories.')
        return self._repositories

    @property
    def client(self):
        if self._client is None:
            self._client = self.repositories.clients.get_client(self.client_identifier)
        return self._client

    @property
    def user_identity(self):
        if self.user_identifier is None:
            return None
        if self._user is None:
            self._user = self.repositories.users.get_user(self.user_identifier)
        return self._user

    # ----------------------
    # Mutations
    # ----------------------
    def set_user_identity(self, user):
        if user is None:
            self.user_identifier = None
            self._user = None
        else:
            self.user_identifier = str(user.get_identifier())
            self._user = user
        self.evaluate()

    def set_user_authenticated_during_request(self, authenticated: bool):
        self.user_authenticated_during_request = bool(authenticated)

    def is_user_authenticated_during_request(self):
        return self.user_authenticated_during_request

    def set_authorization_status(self, status):
        if status not in (self.AUTHORIZATION_APPROVED, self.AUTHORIZATION_DENIED):
            raise ValueError(f'Unknown authorization status "{status}".')
        if self.completed:
            raise InvalidCallError(f'Client authorization request "{self.request_id}" is already finalized.')
        self.authorization_status = status
        self.evaluate()

    def set_selected_scope_identifiers(self, identifiers):
        self.selected_scope_identifiers = normalize_scope_identifiers(identifiers)
        self.evaluate()

    def evaluate(self) -> ClientAuthorizationRequestState:
        """Recompute the workflow state from the current data."""
        if self.completed:
            return self.workflow_state
        if self._repositories is None or self.client is None:
            return self.workflow_state
        if self.user_identifier is None:
            state = ClientAuthorizationRequestState.AWAITING_AUTHENTICATION
        elif self.authorization_status is None and self.is_authorization_needed():
            state = ClientAuthorizationRequestState.AWAITING_SCOPE_APPROVAL
        else:
            state = ClientAuthorizationRequestState.READY
        self.workflow_state = state
        return state

    # ----------------------
    # Decisions
    # ----------------------
    def _require_user(self):
        if self.user_identifier is None:
            raise InvalidCallError('The user identity must be set before evaluating the authorization.')

    def get_scope_resolution(self):
        client = self.client
        previous = []
        if self.user_identifier is not None:
            previous = self.repositories.user_clients.get_approved_scope_identifiers(
                self.user_identifier, self.client_identifier)
        approved_now = []
        if self.authorization_status == self.AUTHORIZATION_APPROVED:
            approved_now = self.selected_scope_identifiers
        return resolve_scopes(
            self.requested_scope_identifiers,
            client.get_defined_scope_identifiers(),
            previous,
            client.get_auto_applied_scope_identifiers(),
            approved_now,
        )

    def is_client_authorization_needed(self) -> bool:
        self._require_user()
        if not getattr(self.client, 'require_consent', True):
            return False
        return not self.repositories.user_clients.is_client_authorized(
            self.user_identifier, self.client_identifier)

    def is_scope_authorization_needed(self) -> bool:
        return bool(self.get_scope_resolution().pending)

    def is_authorization_needed(self) -> bool:
        return self.is_client_authorization_needed() or self.is_scope_authorization_needed()

    def _scope_requests(self, identifiers, status):
        scopes = {}
        found = {s.identifier: s for s in self.repositories.scopes.get_scopes(list(identifiers))}
        for identifier in identifiers:
            scopes[identifier] = ScopeAuthorizationRequest(found.get(identifier, identifier), status)
        return scopes

    def get_approval_pending_scopes(self):
        return self._scope_requests(self.get_scope_resolution().pending, ScopeStatus.PENDING)

    def get_previously_approved_scopes(self):
        return self._scope_requests(self.get_scope_resolution().previously_approved,
                                    ScopeStatus.PREVIOUSLY_APPROVED)

    def get_scopes_applied_automatically(self):
        return self._scope_requests(self.get_scope_resolution().auto_applied, ScopeStatus.AUTO_APPLIED)

    def get_denied_scope_identifiers(self):
        return list(self.get_scope_resolution().denied)

    def get_approved_scope_identifiers(self):
        return list(self.get_scope_resolution().granted)

    def is_approved(self):
        return self.authorization_status == self.AUTHORIZATION_APPROVED

    def process_authorization(self):
        """Finalize the request. Can only be done once."""
        if self.completed:
            raise InvalidCallError(f'Client authorization request "{self.request_id}" has already been processed.')
        if self.authorization_status is None:
            raise InvalidCallError(
                f'Client authorization request "{self.request_id}" has no authorization status.')
        self._require_user()
        if self.is_approved():
            resolution = self.get_scope_resolution()
            self.repositories.user_clients.save_client_authorization(
                self.user_identifier,
                self.client_identifier,
                list(resolution.previously_approved) + list(resolution.approved_now),
            )
            self.workflow_state = ClientAuthorizationRequestState.FINALIZED_APPROVED
            _audit('client_authorization_approved', client_id=self.client_identifier,
                   user_id=self.user_identifier, scopes=list(resolution.granted))
        else:
            self.workflow_state = ClientAuthorizationRequestState.FINALIZED_DENIED
            _audit('client_authorization_denied', client_id=self.client_identifier,
                   user_id=self.user_identifier)
        self.completed = True

    # ----------------------
    # URLs
    # ----------------------
    def get_authorization_request_url(self) -> str:
        """The authorize URL that resumes this request."""
        if not self.authorize_url:
            raise InvalidCallError(f'Client authorization request "{self.request_id}" has no authorize URL.')
        parts = urlparse(self.authorize_url)
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != REQUEST_ID_PARAM]
        query.append((REQUEST_ID_PARAM, self.request_id))
        return urlunparse(parts._replace(query=urlencode(query)))

    # ----------------------
    # Serialization
    # ----------------------
    def to_dict(self) -> dict:
        return {
            '__type__': SERIALIZED_TYPE,
            'request_id': self.request_id,
            'client_identifier': self.client_identifier,
            'requested_scope_identifiers': list(self.requested_scope_identifiers),
            'grant_type': self.grant_type,
            'user_identifier': self.user_identifier,
            'authorize_url': self.authorize_url,
            'redirect_uri': self.redirect_uri,
            'state': self.state,
            'user_authenticated_during_request': self.user_authenticated_during_request,
            'authorization_status': self.authorization_status,
            'selected_scope_identifiers': list(self.selected_scope_identifiers),
            'completed': self.completed,
            'workflow_state': self.workflow_state.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ClientAuthorizationRequest':
        if not isinstance(data, dict) or data.get('__type__') != SERIALIZED_TYPE:
            raise TypeError('Value is not a serialized client authorization request.')
        req = cls(
            data['client_identifier'],
            data.get('requested_scope_identifiers'),
            grant_type=data.get('grant_type'),
            user_identifier=data.get('user_identifier'),
            authorize_url=data.get('authorize_url'),
            redirect_uri=data.get('redirect_uri'),
            state=data.get('state'),
            request_id=data['request_id'],
        )
        req.user_authenticated_during_request = data.get('user_authenticated_during_request')
        req.authorization_status = data.get('authorization_status')
        req.selected_scope_identifiers = list(data.get('selected_scope_identifiers') or [])
        req.completed = bool(data.get('completed'))
        req.workflow_state = ClientAuthorizationRequestState(data.get('workflow_state', 'created'))
        return req


class ClientAuthorizationRequestStore:
    """Keeps client authorization requests in a ``SessionStore``."""

    def __init__(self, session_store, repositories):
        self.session_store = session_store
        self.repositories = repositories

    @staticmethod
    def key(request_id: str) -> str:
        return SESSION_KEY_PREFIX + request_id

    def get(self, request_id: str) -> ClientAuthorizationRequest | None:
        if not request_id:
            return None
        data = self.session_store.get(self.key(request_id))
        if data is None:
            return None
        try:
            req = ClientAuthorizationRequest.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            log.warning('Discarding client authorization request "%s" from session: %s', request_id, e)
            return None
        if req.request_id != request_id:
            log.warning('Client authorization request id mismatch: looked up "%s", stored "%s".',
                        request_id, req.request_id)
            return None
        req.bind(self.repositories)
        if req.client is None:
            log.warning('Discarding client authorization request "%s": client "%s" no longer exists.',
                        request_id, req.client_identifier)
            self.session_store.remove(self.key(request_id))
            return None
        return req

    def set(self, req: ClientAuthorizationRequest):
        if not req.request_id:
            raise InvalidCallError('Client authorization request has an empty request id.')
        self.session_store.set(self.key(req.request_id), req.to_dict())

    def remove(self, request_id: str):
        if not request_id:
            raise InvalidCallError('Cannot remove a client authorization request with an empty request id.')
        self.session_store.remove(self.key(request_id))
