import pytest

from loauth2.scopes import ScopeStatus, normalize_scope_identifiers, resolve_scopes


class TestNormalize:
    def test_string_and_duplicates(self):
        assert normalize_scope_identifiers('read  write read') == ['read', 'write']

    def test_entities(self):
        class Scope:
            def __init__(self, identifier):
                self.identifier = identifier

        assert normalize_scope_identifiers([Scope('a'), 'b', Scope('a')]) == ['a', 'b']

    def test_none(self):
        assert normalize_scope_identifiers(None) == []


class TestResolveScopes:
    def test_buckets(self):
        r = resolve_scopes(
            requested=['read', 'write', 'admin', 'profile', 'email'],
            client_defined=['read', 'write', 'profile', 'email'],
            previously_approved=['read'],
            client_auto=['profile'],
        )
        assert r.denied == ('admin',)
        assert r.auto_applied == ('profile',)
        assert r.previously_approved == ('read',)
        assert r.pending == ('write', 'email')
        assert r.granted == ('read', 'profile')

    def test_auto_wins_over_previous(self):
        r = resolve_scopes(['read'], ['read'], ['read'], ['read'])
        assert r.auto_applied == ('read',)
        assert r.previously_approved == ()

    def test_approved_now(self):
        r = resolve_scopes(['read', 'write'], ['read', 'write'], [], [], approved_now=['write'])
        assert r.approved_now == ('write',)
        assert r.pending == ('read',)
        assert r.granted == ('write',)
        assert r.status_of('read') is ScopeStatus.PENDING
        assert r.status_of('nope') is None

    @pytest.mark.parametrize('requested, auto, previous', [
        (['a', 'b', 'c', 'd'], ['a'], ['b']),
        (['a', 'b'], ['a', 'b'], ['a', 'b']),
        (['c', 'd'], [], []),
        (['a', 'b', 'c'], ['c'], ['a', 'c']),
    ])
    def test_every_scope_lands_in_exactly_one_bucket(self, requested, auto, previous):
        defined = ['a', 'b', 'c', 'd']
        r = resolve_scopes(requested, defined, previous, auto)
        buckets = [r.auto_applied, r.previously_approved, r.pending, r.approved_now, r.denied]
        seen = [s for bucket in buckets for s in bucket]
        assert sorted(seen) == sorted(requested)
        assert set(r.auto_applied) == set(requested) & set(auto)
        assert set(r.previously_approved) == (set(requested) - set(auto)) & set(previous)
        assert set(r.pending) == set(requested) - set(auto) - set(previous)
