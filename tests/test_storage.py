from loauth2.repositories import AccessTokenEntity


class TestClients:
    def test_secret_is_encrypted_at_rest(self, storage, seeded):
        client = storage.get_client('web')
        assert client.client_secret.startswith('k1::')
        assert client.check_client_secret('web-secret')
        assert not client.check_client_secret('wrong')
        assert client.check_endpoint_auth_method('client_secret_post', 'token')
        assert not client.check_endpoint_auth_method('none', 'token')

    def test_public_client(self, storage):
        client = storage.add_client('spa', scope='read', redirect_uris=['https://spa.example/cb'])
        assert client.token_endpoint_auth_method == 'none'
        loaded = storage.get_client('spa')
        assert loaded.check_endpoint_auth_method('none', 'token')
        assert loaded.get_default_redirect_uri() == 'https://spa.example/cb'

    def test_rotate_client_secrets(self, storage, seeded):
        assert storage.rotate_client_secrets('k2') == 3
        client = storage.get_client('web')
        assert client.client_secret.startswith('k2::')
        assert client.check_client_secret('web-secret')

    def test_scope_helpers(self, storage, seeded):
        client = storage.get_client('web')
        assert client.get_auto_applied_scope_identifiers() == ['profile']
        assert 'offline_access' in client.get_defined_scope_identifiers()
        assert client.get_allowed_scope('read admin') == 'read admin'


class TestUsers:
    def test_authenticate(self, storage, users):
        assert storage.authenticate('alice', 'alice').username == 'alice'
        assert storage.authenticate('alice', 'bob') is None
        assert storage.authenticate('nobody', 'x') is None

    def test_get_user(self, storage, users):
        assert storage.get_user(users['bob'].get_identifier()).username == 'bob'
        assert storage.get_user('not-a-number') is None
        assert storage.get_user(None) is None


class TestTokens:
    def test_revocation(self, storage):
        storage.save_access_token(AccessTokenEntity('t1', 'web', '1', ['read'], 2_000_000_000))
        assert not storage.is_access_token_revoked('t1')
        storage.revoke_access_token('t1')
        assert storage.is_access_token_revoked('t1')

    def test_unknown_token_counts_as_revoked(self, storage):
        assert storage.is_access_token_revoked('missing')
        assert storage.is_refresh_token_revoked('missing')
        assert storage.is_auth_code_revoked('missing')
