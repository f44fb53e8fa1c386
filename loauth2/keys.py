"""
Encryption key management.

Loads the RS256 signing pair used for access and ID tokens, and the Fernet
keys used for authorization codes, refresh tokens and secrets at rest.
Key material is either inline or a file reference (``@/path/key.pem`` or
``file:///path/key.pem``).
"""
from __future__ import annotations

import logging

from authlib.jose import RSAKey
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization

from .errors import ConfigurationError

log = logging.getLogger(__name__)

_KEY_ERRORS = (ValueError, TypeError, UnsupportedAlgorithm)


def read_key_material(value: str, setting: str) -> bytes:
    """Resolve a file reference, or return the inline material as bytes."""
    path = None
    if value.startswith('@'):
        path = value[1:]
    elif value.startswith('file://'):
        path = value[len('file://'):]
    if path is None:
        return value.encode() if isinstance(value, str) else value
    try:
        with open(path, 'rb') as fh:
            return fh.read()
    except OSError as e:
        raise ConfigurationError(f'Could not read {setting} from "{path}": {e}') from e


class EncryptionKeyManager:
    """Holds the key set. Loaded keys are cached and never change."""

    def __init__(self, private_key=None, public_key=None, private_key_passphrase=None,
                 codes_encryption_key=None, storage_encryption_keys=None,
                 default_storage_encryption_key=None):
        self._private_key_setting = private_key
        self._public_key_setting = public_key
        self._passphrase = private_key_passphrase
        self._codes_key_setting = codes_encryption_key
        self._storage_key_settings = dict(storage_encryption_keys or {})
        self.default_storage_encryption_key = default_storage_encryption_key
        self._private_key = None
        self._public_key = None
        self._codes_key = None
        self._storage_keys = {}

    @classmethod
    def from_settings(cls, settings) -> 'EncryptionKeyManager':
        return cls(
            private_key=settings.private_key,
            public_key=settings.public_key,
            private_key_passphrase=settings.private_key_passphrase,
            codes_encryption_key=settings.codes_encryption_key,
            storage_encryption_keys=settings.storage_encryption_keys,
            default_storage_encryption_key=settings.default_storage_encryption_key,
        )

    # ----------------------
    # Asymmetric signing pair
    # ----------------------
    def load_private_key(self) -> RSAKey:
        if self._private_key is None:
            if not self._private_key_setting:
                raise ConfigurationError('private_key must be set.')
            pem = read_key_material(self._private_key_setting, 'private_key')
            password = self._passphrase.encode() if self._passphrase else None
            try:
                raw = serialization.load_pem_private_key(pem, password=password)
                key = RSAKey.import_key(raw)
            except _KEY_ERRORS as e:
                raise ConfigurationError(f'private_key is malformed: {e}') from e
            key.options.update({'kid': key.thumbprint(), 'use': 'sig', 'alg': 'RS256'})
            log.info('Loaded private signing key %s', key.kid)
            self._private_key = key
        return self._private_key

    def load_public_key(self) -> RSAKey:
        if self._public_key is None:
            if not self._public_key_setting:
                raise ConfigurationError('public_key must be set.')
            pem = read_key_material(self._public_key_setting, 'public_key')
            try:
                raw = serialization.load_pem_public_key(pem)
                key = RSAKey.import_key(raw)
            except _KEY_ERRORS as e:
                raise ConfigurationError(f'public_key is malformed: {e}') from e
            key.options.update({'kid': key.thumbprint(), 'use': 'sig', 'alg': 'RS256'})
            log.info('Loaded public signing key %s', key.kid)
            self._public_key = key
        return self._public_key

    # ----------------------
    # Symmetric keys
    # ----------------------
    def resolve_codes_key(self) -> Fernet:
        if self._codes_key is None:
            if not self._codes_key_setting:
                raise ConfigurationError('codes_encryption_key must be set.')
            self._codes_key = _fernet(self._codes_key_setting, 'codes_encryption_key')
        return self._codes_key

    def resolve_storage_key(self, name: str | None = None) -> Fernet:
        if name is None:
            name = self.default_storage_encryption_key
            if not name:
                raise ConfigurationError('default_storage_encryption_key must be set.')
        if name not in self._storage_keys:
            if name not in self._storage_key_settings:
                raise ConfigurationError(f'Key "{name}" is not set in storage_encryption_keys.')
            self._storage_keys[name] = _fernet(self._storage_key_settings[name], 'storage_encryption_keys')
        return self._storage_keys[name]

    def validate(self, require_private=True):
        """Load every configured key once so broken material fails at startup."""
        self.load_public_key()
        if require_private:
            self.load_private_key()
            self.resolve_codes_key()
            self.resolve_storage_key()
            for name in self._storage_key_settings:
                self.resolve_storage_key(name)


def _fernet(value, setting: str) -> Fernet:
    try:
        if isinstance(value, str) and (value.startswith('@') or value.startswith('file://')):
            value = read_key_material(value, setting).strip()
        return Fernet(value)
    except _KEY_ERRORS as e:
        raise ConfigurationError(f'{setting} is malformed: {e}') from e


class Encryptor:
    """Encrypts values at rest with named storage keys.

    Ciphertexts are prefixed with the key name (``name::token``) so values
    written under an older key stay readable after the default changes.
    """

    SEPARATOR = '::'

    def __init__(self, key_manager: EncryptionKeyManager):
        self.key_manager = key_manager

    def encrypt(self, data: str, key_name: str | None = None) -> str:
        key_name = key_name or self.key_manager.default_storage_encryption_key
        token = self.key_manager.resolve_storage_key(key_name).encrypt(data.encode())
        return f'{key_name}{self.SEPARATOR}{token.decode()}'

    def decrypt(self, value: str) -> str:
        name, sep, token = value.partition(self.SEPARATOR)
        if not sep:
            raise ValueError('Encrypted value has no key name.')
        try:
            return self.key_manager.resolve_storage_key(name).decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise ValueError(f'Could not decrypt value with key "{name}".') from e

    def rotate(self, value: str, key_name: str | None = None) -> str:
        """Re-encrypt ``value`` with ``key_name`` (default key when omitted)."""
        return self.encrypt(self.decrypt(value), key_name)
