import pytest
from cryptography.fernet import Fernet

from loauth2.errors import ConfigurationError
from loauth2.keys import EncryptionKeyManager, Encryptor, read_key_material


class TestReadKeyMaterial:
    def test_inline(self):
        assert read_key_material('inline', 'private_key') == b'inline'

    def test_file_reference(self, tmp_path):
        path = tmp_path / 'key.pem'
        path.write_bytes(b'pem')
        assert read_key_material(f'@{path}', 'private_key') == b'pem'
        assert read_key_material(f'file://{path}', 'private_key') == b'pem'

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match='Could not read private_key') as exc:
            read_key_material(f'@{tmp_path}/missing.pem', 'private_key')
        assert isinstance(exc.value.__cause__, OSError)


class TestEncryptionKeyManager:
    def test_loads_signing_pair(self, key_manager):
        private = key_manager.load_private_key()
        public = key_manager.load_public_key()
        assert private.kid
        assert private.kid == public.kid
        # cached
        assert key_manager.load_private_key() is private

    def test_inline_pem(self, rsa_pem):
        manager = EncryptionKeyManager(private_key=rsa_pem[0].decode(), public_key=rsa_pem[1].decode())
        assert manager.load_public_key().kid == manager.load_private_key().kid

    def test_missing_private_key(self):
        with pytest.raises(ConfigurationError, match='private_key must be set'):
            EncryptionKeyManager().load_private_key()

    def test_missing_private_key_file(self, tmp_path, rsa_pem):
        manager = EncryptionKeyManager(private_key=f'@{tmp_path}/nope.pem', public_key=rsa_pem[1].decode())
        with pytest.raises(ConfigurationError):
            manager.validate()

    def test_malformed_private_key(self):
        manager = EncryptionKeyManager(private_key='not a pem')
        with pytest.raises(ConfigurationError, match='private_key is malformed') as exc:
            manager.load_private_key()
        assert exc.value.__cause__ is not None

    def test_wrong_passphrase(self, rsa_pem):
        manager = EncryptionKeyManager(private_key=rsa_pem[0].decode(), private_key_passphrase='secret')
        with pytest.raises(ConfigurationError, match='private_key is malformed'):
            manager.load_private_key()

    def test_storage_keys(self, key_manager):
        assert isinstance(key_manager.resolve_storage_key(), Fernet)
        assert key_manager.resolve_storage_key('k2') is key_manager.resolve_storage_key('k2')
        with pytest.raises(ConfigurationError, match='Key "k9" is not set'):
            key_manager.resolve_storage_key('k9')

    def test_no_default_storage_key(self):
        manager = EncryptionKeyManager(storage_encryption_keys={'a': Fernet.generate_key().decode()})
        with pytest.raises(ConfigurationError, match='default_storage_encryption_key must be set'):
            manager.resolve_storage_key()

    def test_malformed_codes_key(self):
        manager = EncryptionKeyManager(codes_encryption_key='too-short')
        with pytest.raises(ConfigurationError, match='codes_encryption_key is malformed'):
            manager.resolve_codes_key()

    def test_validate(self, key_manager):
        key_manager.validate()


class TestEncryptor:
    def test_value_is_prefixed_with_key_name(self, key_manager):
        encryptor = Encryptor(key_manager)
        value = encryptor.encrypt('s3cret')
        assert value.startswith('k1::')
        assert encryptor.decrypt(value) == 's3cret'

    def test_rotate_to_other_key(self, key_manager):
        encryptor = Encryptor(key_manager)
        rotated = encryptor.rotate(encryptor.encrypt('s3cret'), 'k2')
        assert rotated.startswith('k2::')
        assert encryptor.decrypt(rotated) == 's3cret'

    def test_decrypt_without_key_name(self, key_manager):
        with pytest.raises(ValueError, match='no key name'):
            Encryptor(key_manager).decrypt('garbage')

    def test_decrypt_with_wrong_key(self, key_manager):
        encryptor = Encryptor(key_manager)
        token = encryptor.encrypt('s3cret').split('::', 1)[1]
        with pytest.raises(ValueError, match='Could not decrypt'):
            encryptor.decrypt(f'k2::{token}')
