"""
SQLAlchemy implementation of every repository protocol.

Follows the usual session pattern: open a session per call, close it in
``finally``. Instances returned to callers are detached
(``expire_on_commit=False``) so they stay readable afterwards.
"""
from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool
from werkzeug.security import generate_password_hash

from authlib.oauth2.rfc6749.util import list_to_scope

from .audit import _audit
from .models import (
    AccessToken,
    AuthCode,
    Base,
    OAuth2Client,
    RefreshToken,
    Scope,
    User,
    UserClient,
    UserClientScope,
)

log = logging.getLogger(__name__)


class Storage:
    def __init__(self, database_url='sqlite:///oauth.db', encryptor=None, engine=None):
        if engine is None:
            kwargs = {}
            if database_url.startswith('sqlite'):
                kwargs['connect_args'] = {'check_same_thread': False}
                if database_url in ('sqlite://', 'sqlite:///:memory:'):
                    kwargs['poolclass'] = StaticPool
            engine = create_engine(database_url, **kwargs)
        self.engine = engine
        self.SessionLocal = scoped_session(sessionmaker(bind=engine, expire_on_commit=False))
        self.encryptor = encryptor

    def create_all(self):
        Base.metadata.create_all(self.engine, checkfirst=True)

    # ----------------------
    # Provisioning helpers
    # ----------------------
    def add_user(self, username, password, **fields) -> User:
        db = self.SessionLocal()
        try:
            user = User(username=username, password_hash=generate_password_hash(password), **fields)
            db.add(user)
            db.commit()
            return user
        finally:
            db.close()

    def add_client(self, client_id, client_secret=None, scope='', auto_applied_scope='',
                   redirect_uris='', grant_types='authorization_code', response_types='code',
                   **fields) -> OAuth2Client:
        if client_secret and self.encryptor is None:
            raise RuntimeError('An encryptor is required to store client secrets.')
        db = self.SessionLocal()
        try:
            client = OAuth2Client(
                client_id=client_id,
                client_secret=self.encryptor.encrypt(client_secret) if client_secret else None,
                scope=list_to_scope(scope) if not isinstance(scope, str) else scope,
                auto_applied_scope=(list_to_scope(auto_applied_scope)
                                    if not isinstance(auto_applied_scope, str) else auto_applied_scope),
                redirect_uris=redirect_uris if isinstance(redirect_uris, str) else ' '.join(redirect_uris),
                grant_types=grant_types if isinstance(grant_types, str) else ' '.join(grant_types),
                response_types=response_types if isinstance(response_types, str) else ' '.join(response_types),
                **fields,
            )
            if not client_secret:
                client.token_endpoint_auth_method = 'none'
            db.add(client)
            db.commit()
            client.encryptor = self.encryptor
            return client
        finally:
            db.close()

    def add_scope(self, identifier, description=None) -> Scope:
        db = self.SessionLocal()
        try:
            item = Scope(identifier=identifier, description=description)
            db.add(item)
            db.commit()
            return item
        finally:
            db.close()

    def rotate_client_secrets(self, key_name=None) -> int:
        """Re-encrypt every stored client secret with ``key_name``."""
        db = self.SessionLocal()
        try:
            count = 0
            for client in db.query(OAuth2Client).filter(OAuth2Client.client_secret.isnot(None)):
                client.client_secret = self.encryptor.rotate(client.client_secret, key_name)
                count += 1
            db.commit()
            log.info('Re-encrypted %d client secrets', count)
            return count
        finally:
            db.close()

    # ----------------------
    # ClientRepository
    # ----------------------
    def get_client(self, client_id):
        db = self.SessionLocal()
        try:
            client = db.query(OAuth2Client).filter_by(client_id=client_id).first()
        finally:
            db.close()
        if client is not None:
            client.encryptor = self.encryptor
        return client

    # ----------------------
    # ScopeRepository
    # ----------------------
    def get_scope(self, identifier):
        db = self.SessionLocal()
        try:
            return db.get(Scope, identifier)
        finally:
            db.close()

    def get_scopes(self, identifiers):
        if not identifiers:
            return []
        db = self.SessionLocal()
        try:
            return db.query(Scope).filter(Scope.identifier.in_(identifiers)).all()
        finally:
            db.close()

    # ----------------------
    # UserRepository
    # ----------------------
    def get_user(self, user_id):
        try:
            pk = int(user_id)
        except (TypeError, ValueError):
            return None
        db = self.SessionLocal()
        try:
            return db.get(User, pk)
        finally:
            db.close()

    def authenticate(self, username, password):
        db = self.SessionLocal()
        try:
            user = db.query(User).filter_by(username=username).first()
        finally:
            db.close()
        if user and user.verify_password(password):
            return user
        return None

    # ----------------------
    # UserClientRepository
    # ----------------------
    def _user_client(self, db, user_id, client_id):
        return db.query(UserClient).filter_by(user_id=int(user_id), client_id=client_id).first()

    def is_client_authorized(self, user_id, client_id) -> bool:
        db = self.SessionLocal()
        try:
            item = self._user_client(db, user_id, client_id)
            return bool(item and item.enabled)
        finally:
            db.close()

    def get_approved_scope_identifiers(self, user_id, client_id):
        db = self.SessionLocal()
        try:
            item = self._user_client(db, user_id, client_id)
            if not item or not item.enabled:
                return []
            rows = db.query(UserClientScope).filter_by(user_client_id=item.id).all()
            return [r.scope for r in rows]
        finally:
            db.close()

    def save_client_authorization(self, user_id, client_id, scope_identifiers):
        db = self.SessionLocal()
        try:
            item = self._user_client(db, user_id, client_id)
            if item is None:
                item = UserClient(user_id=int(user_id), client_id=client_id, enabled=True)
                db.add(item)
                db.flush()
            item.enabled = True
            existing = {r.scope for r in db.query(UserClientScope).filter_by(user_client_id=item.id)}
            for scope in scope_identifiers:
                if scope not in existing:
                    db.add(UserClientScope(user_client_id=item.id, scope=scope))
                    existing.add(scope)
            db.commit()
        finally:
            db.close()

    # ----------------------
    # Token repositories
    # ----------------------
    def save_access_token(self, token):
        db = self.SessionLocal()
        try:
            db.add(AccessToken(
                identifier=token.identifier,
                client_id=token.client_id,
                user_id=token.user_id,
                scope=list_to_scope(token.scopes),
                expires_at=token.expires_at,
                enabled=token.enabled,
            ))
            db.commit()
        finally:
            db.close()

    def is_access_token_revoked(self, identifier) -> bool:
        return self._is_revoked(AccessToken, identifier)

    def revoke_access_token(self, identifier):
        self._revoke(AccessToken, identifier)

    def save_auth_code(self, code):
        db = self.SessionLocal()
        try:
            db.add(AuthCode(
                identifier=code.identifier,
                client_id=code.client_id,
                user_id=code.user_id,
                scope=list_to_scope(code.scopes),
                redirect_uri=code.redirect_uri,
                expires_at=code.expires_at,
                enabled=code.enabled,
            ))
            db.commit()
        finally:
            db.close()

    def is_auth_code_revoked(self, identifier) -> bool:
        return self._is_revoked(AuthCode, identifier)

    def revoke_auth_code(self, identifier):
        self._revoke(AuthCode, identifier)
        _audit('auth_code_revoked', auth_code_id=identifier)

    def save_refresh_token(self, token):
        db = self.SessionLocal()
        try:
            db.add(RefreshToken(
                identifier=token.identifier,
                access_token_identifier=token.access_token_identifier,
                client_id=token.client_id,
                user_id=token.user_id,
                scope=list_to_scope(token.scopes),
                expires_at=token.expires_at,
                enabled=token.enabled,
            ))
            db.commit()
        finally:
            db.close()

    def is_refresh_token_revoked(self, identifier) -> bool:
        return self._is_revoked(RefreshToken, identifier)

    def revoke_refresh_token(self, identifier):
        self._revoke(RefreshToken, identifier)
        _audit('refresh_token_revoked', refresh_token_id=identifier)

    def _is_revoked(self, model, identifier) -> bool:
        db = self.SessionLocal()
        try:
            item = db.query(model).filter_by(identifier=identifier).first()
            return item is None or not item.enabled
        finally:
            db.close()

    def _revoke(self, model, identifier):
        db = self.SessionLocal()
        try:
            db.query(model).filter_by(identifier=identifier).update({'enabled': False})
            db.commit()
        finally:
            db.close()
