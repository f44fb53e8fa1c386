"""Shared fixtures: keys, in-memory storage, seeded clients and a Flask app."""
import pytest
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from loauth2 import EncryptionKeyManager, Encryptor, Oauth2Module, Oauth2Settings, Repositories
from loauth2.session import MemorySessionStore
from loauth2.storage import Storage

REDIRECT_URI = 'https://client.example.com/cb'


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(autouse=True)
def insecure_transport(monkeypatch):
    # The test client talks plain http
    monkeypatch.setenv('AUTHLIB_INSECURE_TRANSPORT', '1')


@pytest.fixture(scope='session')
def rsa_pem():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


@pytest.fixture
def key_files(tmp_path, rsa_pem):
    private_path = tmp_path / 'private.pem'
    public_path = tmp_path / 'public.pem'
    private_path.write_bytes(rsa_pem[0])
    public_path.write_bytes(rsa_pem[1])
    return private_path, public_path


@pytest.fixture
def settings(key_files):
    private_path, public_path = key_files
    return Oauth2Settings(
        private_key=f'@{private_path}',
        public_key=f'@{public_path}',
        codes_encryption_key=Fernet.generate_key().decode(),
        storage_encryption_keys={
            'k1': Fernet.generate_key().decode(),
            'k2': Fernet.generate_key().decode(),
        },
        default_storage_encryption_key='k1',
        grant_types=['authorization_code', 'refresh_token', 'client_credentials', 'password'],
        issuer='https://auth.example.com',
    )


@pytest.fixture
def key_manager(settings):
    return EncryptionKeyManager.from_settings(settings)


@pytest.fixture
def storage(key_manager):
    storage = Storage('sqlite://', encryptor=Encryptor(key_manager))
    storage.create_all()
    return storage


@pytest.fixture
def users(storage):
    alice = storage.add_user('alice', 'alice', email='alice@example.com', name='Alice',
                             email_verified=True)
    bob = storage.add_user('bob', 'bob', email='bob@example.com', name='Bob')
    return {'alice': alice, 'bob': bob}


@pytest.fixture
def seeded(storage, users):
    for identifier, description in (('read', 'Read your data'), ('write', 'Change your data'),
                                    ('openid', 'Sign you in'), ('profile', 'Read your basic profile'),
                                    ('email', 'Read your email address'),
                                    ('offline_access', 'Get a refresh token for offline access')):
        storage.add_scope(identifier, description)
    storage.add_client(
        'web',
        client_secret='web-secret',
        client_name='Web App',
        scope='read write openid profile email offline_access',
        auto_applied_scope='profile',
        redirect_uris=REDIRECT_URI,
        grant_types='authorization_code refresh_token',
        token_endpoint_auth_method='client_secret_post',
    )
    storage.add_client(
        'service',
        client_secret='service-secret',
        scope='read write',
        auto_applied_scope='write',
        grant_types='client_credentials',
        response_types='',
        token_endpoint_auth_method='client_secret_post',
        client_credentials_grant_user_id=users['alice'].id,
    )
    storage.add_client(
        'machine',
        client_secret='machine-secret',
        scope='read write',
        grant_types='client_credentials',
        response_types='',
        token_endpoint_auth_method='client_secret_post',
    )
    return users


@pytest.fixture
def repositories(storage):
    return Repositories.from_storage(storage)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def module(settings, repositories, session_store, clock):
    return Oauth2Module(settings, repositories, session_store=session_store, clock=clock)


@pytest.fixture
def app(settings, storage, seeded):
    from server import create_app

    app = create_app(settings, storage)
    app.config.update(TESTING=True, SECRET_KEY='test-secret')
    return app


@pytest.fixture
def client(app):
    return app.test_client()
