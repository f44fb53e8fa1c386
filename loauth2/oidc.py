"""
OpenID Connect: claims, scopes, ID tokens, userinfo and discovery.

Claims and scopes can be declared with plain literals. When building them
from a list or dict, each element is normalized with this precedence:

1. an ``OidcClaim`` / ``OidcScope`` instance keeps its own identifier
2. a dict element with an ``identifier`` key uses that identifier
3. otherwise the dict key is the identifier

A string under an integer key (a list item) is the identifier; a string
under a string key is the determiner for that identifier. Later
duplicates replace earlier ones.
"""
from __future__ import annotations

import base64
import hashlib
import logging
import time
from collections.abc import Mapping

from authlib.jose import JsonWebToken

log = logging.getLogger(__name__)

jwt = JsonWebToken(['RS256'])

_MISSING = object()


def _items(elements):
    if elements is None:
        return []
    if isinstance(elements, Mapping):
        return list(elements.items())
    if isinstance(elements, (str, bytes)):
        return [(0, elements)]
    return list(enumerate(elements))


class OidcClaim:
    """One claim about the user.

    ``determiner`` is either a dotted attribute path on the user object or a
    callable ``determiner(user, claim)``. It defaults to the identifier.
    """

    def __init__(self, identifier, determiner=None, default=None):
        if not identifier or not isinstance(identifier, str):
            raise ValueError('A claim identifier must be a non-empty string.')
        self.identifier = identifier
        self.determiner = determiner
        self.default = default

    def __repr__(self):
        return f'<OidcClaim {self.identifier}>'

    def get_value(self, user):
        if callable(self.determiner):
            value = self.determiner(user, self)
        else:
            value = user
            for part in (self.determiner or self.identifier).split('.'):
                if isinstance(value, Mapping):
                    value = value.get(part, _MISSING)
                else:
                    value = getattr(value, part, _MISSING)
                if value is _MISSING or value is None:
                    value = None
                    break
        return self.default if value is None else value


def build_claim(key, element) -> OidcClaim:
    if isinstance(element, OidcClaim):
        return element
    if isinstance(element, str):
        if isinstance(key, int):
            return OidcClaim(element)
        return OidcClaim(key, determiner=element)
    if isinstance(element, Mapping):
        if 'identifier' in element:
            return OidcClaim(**element)
        if isinstance(key, str):
            return OidcClaim(key, **element)
        raise ValueError(
            'If an element is a dict it should either be declared under a string key '
            'or contain an "identifier" key.'
        )
    raise TypeError(f'Elements must either be a dict, string or an OidcClaim, got {type(element).__name__}.')


class OidcScope:
    def __init__(self, identifier, claims=None):
        self.identifier = identifier
        self._claims = {}
        if claims is not None:
            self.set_claims(claims)

    def __repr__(self):
        return f'<OidcScope {self.identifier} {list(self._claims)}>'

    def set_claims(self, claims):
        self.clear_claims()
        self.add_claims(claims)

    def add_claims(self, claims):
        for key, element in _items(claims):
            self.add_claim(element, key)

    def add_claim(self, claim, key=0):
        claim = build_claim(key, claim)
        self._claims[claim.identifier] = claim

    def get_claims(self):
        return dict(self._claims)

    def get_claim_identifiers(self):
        return list(self._claims)

    def get_claim(self, identifier):
        return self._claims.get(identifier)

    def has_claim(self, identifier):
        return identifier in self._claims

    def remove_claim(self, identifier):
        self._claims.pop(identifier, None)

    def clear_claims(self):
        self._claims = {}


def build_scope(key, element) -> OidcScope:
    if isinstance(element, OidcScope):
        return element
    if isinstance(element, str):
        if isinstance(key, int):
            return OidcScope(element)
        return OidcScope(key, [element])
    if isinstance(element, Mapping) and 'identifier' in element:
        return OidcScope(element['identifier'], element.get('claims'))
    if isinstance(element, (Mapping, list, tuple)):
        if isinstance(key, str):
            return OidcScope(key, element)
        raise ValueError(
            'If an element is a dict it should either be declared under a string key '
            'or contain an "identifier" key.'
        )
    raise TypeError(f'Elements must either be a dict, string or an OidcScope, got {type(element).__name__}.')


DEFAULT_OIDC_SCOPES = {
    'openid': [],
    'profile': [
        'name', 'family_name', 'given_name', 'middle_name', 'nickname',
        {'identifier': 'preferred_username', 'determiner': 'username'},
        'profile', 'picture', 'website', 'gender', 'birthdate', 'zoneinfo', 'locale', 'updated_at',
    ],
    'email': ['email', 'email_verified'],
    'address': ['address'],
    'phone': ['phone_number', 'phone_number_verified'],
    'offline_access': [],
}


class OidcScopeCollection:
    def __init__(self, scopes=None, include_defaults=True):
        self._scopes = {}
        if include_defaults:
            self.add_oidc_scopes(DEFAULT_OIDC_SCOPES)
        if scopes is not None:
            self.add_oidc_scopes(scopes)

    def add_oidc_scopes(self, scopes):
        for key, element in _items(scopes):
            self.add_oidc_scope(element, key)

    def add_oidc_scope(self, scope, key=0):
        scope = build_scope(key, scope)
        self._scopes[scope.identifier] = scope

    def get_oidc_scope(self, identifier):
        return self._scopes.get(identifier)

    def has_oidc_scope(self, identifier):
        return identifier in self._scopes

    def remove_oidc_scope(self, identifier):
        self._scopes.pop(identifier, None)

    def clear_oidc_scopes(self):
        self._scopes = {}

    def get_oidc_scopes(self):
        return dict(self._scopes)

    def get_supported_claims(self):
        claims = ['sub']
        for scope in self._scopes.values():
            for identifier in scope.get_claim_identifiers():
                if identifier not in claims:
                    claims.append(identifier)
        return claims

    def get_filtered_claims(self, scope_identifiers):
        claims = {}
        for identifier in scope_identifiers:
            scope = self._scopes.get(identifier)
            if scope is not None:
                claims.update(scope.get_claims())
        return claims


def get_userinfo(user, scope_identifiers, collection: OidcScopeCollection) -> dict:
    info = {'sub': str(user.get_identifier())}
    for identifier, claim in collection.get_filtered_claims(scope_identifiers).items():
        value = claim.get_value(user)
        if value is not None:
            info[identifier] = value
    return info


def _b64url_no_pad(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode().rstrip('=')


def create_id_token(key, issuer, user, client_id, expires_in, access_token=None, nonce=None,
                    auth_time=None, now=None) -> str:
    now = int(now if now is not None else time.time())
    payload = {
        'iss': issuer,
        'sub': str(user.get_identifier()),
        'aud': client_id,
        'iat': now,
        'exp': now + int(expires_in or 3600),
        'auth_time': int(auth_time or now),
    }
    if nonce:
        payload['nonce'] = nonce
    if access_token:
        h = hashlib.sha256(access_token.encode()).digest()
        payload['at_hash'] = _b64url_no_pad(h[:len(h) // 2])
    header = {'alg': 'RS256', 'kid': key.kid}
    return jwt.encode(header, payload, key).decode()


def build_discovery_document(settings, urls: dict, collection: OidcScopeCollection,
                             grant_types=(), response_types=()) -> dict:
    """``urls`` holds absolute URLs for issuer, authorization, token, jwks and userinfo."""
    doc = {
        'issuer': urls['issuer'],
        'authorization_endpoint': urls['authorization_endpoint'],
        'token_endpoint': urls['token_endpoint'],
        'jwks_uri': urls['jwks_uri'],
        'scopes_supported': list(collection.get_oidc_scopes()),
        'claims_supported': collection.get_supported_claims(),
        'response_types_supported': list(response_types),
        'token_endpoint_auth_methods_supported': ['none', 'client_secret_basic', 'client_secret_post'],
        'id_token_signing_alg_values_supported': ['RS256'],
        'subject_types_supported': ['public'],
        'code_challenge_methods_supported': ['plain', 'S256'],
    }
    if urls.get('userinfo_endpoint'):
        doc['userinfo_endpoint'] = urls['userinfo_endpoint']
    if settings.open_id_connect_discovery_include_supported_grant_types:
        doc['grant_types_supported'] = list(grant_types)
    if settings.open_id_connect_discovery_service_documentation_url:
        doc['service_documentation'] = settings.open_id_connect_discovery_service_documentation_url
    return doc
