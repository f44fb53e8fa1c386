"""
Configuration surface of the engine.

Settings can be built directly, from a mapping (e.g. ``app.config``) or from
``LOAUTH2_*`` environment variables.
"""
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

from .errors import ConfigurationError

SERVER_ROLE_AUTHORIZATION_SERVER = 1
SERVER_ROLE_RESOURCE_SERVER = 2

DEFAULT_ACCESS_TOKEN_TTL = 3600

_DURATION_RE = re.compile(
    r'^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?'
    r'(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$'
)
_TRUE = ('1', 'true', 'yes', 'on')


def parse_duration(value) -> int | None:
    """Convert an ISO-8601 duration (``PT1H``, ``P30D``, ...) into seconds.

    Integers are taken as seconds. Years and months have no fixed length and
    are rejected.
    """
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ConfigurationError(f'Invalid duration {value!r}.')
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    match = _DURATION_RE.match(value) if isinstance(value, str) else None
    if not match or value in ('P', 'PT') or value.endswith('T'):
        raise ConfigurationError(f'Invalid duration "{value}", expected an ISO-8601 duration like "PT1H".')
    parts = {k: int(v) for k, v in match.groupdict().items() if v}
    return (
        parts.get('weeks', 0) * 7 * 86400
        + parts.get('days', 0) * 86400
        + parts.get('hours', 0) * 3600
        + parts.get('minutes', 0) * 60
        + parts.get('seconds', 0)
    )


@dataclass
class Oauth2Settings:
    server_role: int = SERVER_ROLE_AUTHORIZATION_SERVER | SERVER_ROLE_RESOURCE_SERVER

    # Keys
    private_key: str | None = None
    private_key_passphrase: str | None = None
    public_key: str | None = None
    codes_encryption_key: str | None = None
    storage_encryption_keys: dict[str, str] = field(default_factory=dict)
    default_storage_encryption_key: str | None = None

    # Grants & lifetimes
    grant_types: Any = None
    default_access_token_ttl: Any = 'PT1H'
    authorization_code_ttl: Any = 'PT10M'
    refresh_token_ttl: Any = 'P30D'
    resource_server_access_token_revocation_validation: bool = True

    # OpenID Connect
    enable_open_id_connect: bool = False
    enable_open_id_connect_discovery: bool = True
    open_id_connect_userinfo_endpoint: Any = True
    open_id_connect_discovery_include_supported_grant_types: bool = True
    open_id_connect_discovery_service_documentation_url: str | None = None
    open_id_connect_issue_refresh_token_without_offline_access_scope: bool = False
    issuer: str | None = None

    # None means: follow the Flask app's debug flag
    display_confidential_exception_messages: bool | None = None

    # HTTP surface
    url_rules_prefix: str = ''
    authorize_path: str = '/authorize'
    access_token_path: str = '/access-token'
    client_authorization_path: str = '/authorize-client'
    client_authorization_url: str | None = None
    jwks_path: str = '/certs'
    open_id_connect_userinfo_path: str = '/oidc/userinfo'
    login_url: str = '/login'

    def has_role(self, role: int) -> bool:
        return bool(self.server_role & role)

    @property
    def access_token_ttl_seconds(self) -> int:
        ttl = parse_duration(self.default_access_token_ttl)
        return ttl if ttl is not None else DEFAULT_ACCESS_TOKEN_TTL

    @property
    def authorization_code_ttl_seconds(self) -> int:
        return parse_duration(self.authorization_code_ttl) or 600

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_duration(self.refresh_token_ttl) or 30 * 86400

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'Oauth2Settings':
        """Build settings from a mapping, ignoring unknown keys.

        Keys may be given in snake case (``private_key``) or in the upper case
        ``LOAUTH2_`` form used by Flask configs (``LOAUTH2_PRIVATE_KEY``).
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            name = key
            if key.upper().startswith('LOAUTH2_'):
                name = key[len('LOAUTH2_'):].lower()
            if name in known:
                values[name] = value
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> 'Oauth2Settings':
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get('LOAUTH2_' + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce_env(f.name, raw, getattr(cls, f.name, None))
        return cls(**values)


def _coerce_env(name: str, raw: str, default: Any) -> Any:
    if name == 'storage_encryption_keys':
        try:
            keys = json.loads(raw)
        except ValueError as e:
            raise ConfigurationError(f'LOAUTH2_STORAGE_ENCRYPTION_KEYS must be a JSON object: {e}') from e
        if not isinstance(keys, dict):
            raise ConfigurationError('LOAUTH2_STORAGE_ENCRYPTION_KEYS must be a JSON object.')
        return keys
    if name == 'grant_types':
        return [g.strip() for g in raw.split(',') if g.strip()]
    if name == 'server_role':
        return int(raw)
    if name == 'open_id_connect_userinfo_endpoint':
        lowered = raw.lower()
        if lowered in _TRUE:
            return True
        if lowered in ('0', 'false', 'no', 'off'):
            return False
        return raw
    if name == 'display_confidential_exception_messages':
        return raw.lower() in _TRUE if raw != '' else None
    if isinstance(default, bool):
        return raw.lower() in _TRUE
    return raw
