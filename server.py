"""
Development server for loauth2
------------------------------
Runs the engine behind a Flask app with a demo login page.

Run:
  python3 -m venv .venv && source .venv/bin/activate
  pip install -e .
  AUTHLIB_INSECURE_TRANSPORT=1 python server.py  # starts on http://127.0.0.1:8000

Configuration comes from LOAUTH2_* environment variables (see
loauth2.settings). When no signing key is configured a development key
set is generated under ./dev-keys on first run.

Security Notes:
- Demo uses HTTP and SQLite; for production, use HTTPS and Postgres/MySQL.
- Replace the demo login, password policy and session security.
"""
from __future__ import annotations

import base64
import hashlib
import logging
import os
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

from authlib.oauth2 import OAuth2Error
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from flask import Flask, abort, jsonify, redirect, render_template_string, request, session, url_for

from loauth2 import Encryptor, Oauth2Module, Oauth2Settings, Repositories
from loauth2.authorization import REQUEST_ID_PARAM
from loauth2.storage import Storage

log = logging.getLogger(__name__)

DEV_KEYS_DIR = os.environ.get('LOAUTH2_DEV_KEYS_DIR', 'dev-keys')

LOGIN_TEMPLATE = """
<!doctype html>
<meta charset="utf-8">
<title>Sign in</title>
<style>
  body { font-family: system-ui, -apple-system, Segoe UI, Roboto, sans-serif; background:#0b1020; color:#e8ecf1; display:flex; align-items:center; justify-content:center; height:100vh; margin:0; }
  .card { background:#151b2f; border:1px solid #26314f; border-radius:14px; padding:28px 32px; width: 420px; box-shadow: 0 10px 30px rgba(0,0,0,.35); }
  h2 { margin:0 0 12px; }
  label { display:block; margin:10px 0; }
  input { width:100%; padding:10px 12px; border-radius:10px; border:1px solid #3d4f77; background:#0f1426; color:#e8ecf1; }
  button { margin-top:12px; padding:12px 16px; background:#2d6cdf; color:#fff; border:none; border-radius:10px; font-weight:600; width:100%; }
  .muted { color:#a7b1c2; font-size:.95rem; }
  .error { color:#ff6b6b; }
  .brand { font-weight:700; margin-bottom:8px; }
</style>
<div class="card">
  <div class="brand">OAuth2 Server</div>
  <h2>Sign in</h2>
  {% if error %}<p class="error">{{error}}</p>{% endif %}
  <form method="post">
    <label>Username
      <input name="username" placeholder="alice" required>
    </label>
    <label>Password
      <input name="password" type="password" placeholder="alice" required>
    </label>
    <button type="submit">Continue</button>
  </form>
  <p class="muted">Demo users: <b>alice/alice</b>, <b>bob/bob</b></p>
</div>
"""


def ensure_dev_keys(settings: Oauth2Settings, directory: str = DEV_KEYS_DIR) -> Oauth2Settings:
    """Fill in missing key settings with a key set kept in ``directory``."""
    os.makedirs(directory, exist_ok=True)
    private_path = os.path.join(directory, 'private.pem')
    public_path = os.path.join(directory, 'public.pem')
    if not settings.private_key:
        if not os.path.exists(private_path):
            key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            with open(private_path, 'wb') as f:
                f.write(key.private_bytes(
                    serialization.Encoding.PEM,
                    serialization.PrivateFormat.PKCS8,
                    serialization.NoEncryption(),
                ))
            with open(public_path, 'wb') as f:
                f.write(key.public_key().public_bytes(
                    serialization.Encoding.PEM,
                    serialization.PublicFormat.SubjectPublicKeyInfo,
                ))
            log.warning('Generated development signing key in %s', directory)
        settings.private_key = '@' + private_path
        settings.public_key = '@' + public_path

    symmetric_path = os.path.join(directory, 'symmetric.key')
    if not settings.codes_encryption_key or not settings.storage_encryption_keys:
        if not os.path.exists(symmetric_path):
            with open(symmetric_path, 'wb') as f:
                f.write(Fernet.generate_key())
        with open(symmetric_path, 'rb') as f:
            secret = f.read().decode().strip()
        settings.codes_encryption_key = settings.codes_encryption_key or secret
        if not settings.storage_encryption_keys:
            settings.storage_encryption_keys = {'dev': secret}
            settings.default_storage_encryption_key = 'dev'
    return settings


def create_app(settings: Oauth2Settings | None = None, storage: Storage | None = None) -> Flask:
    app = Flask(__name__)
    app.secret_key = os.environ.get('APP_SECRET', os.urandom(32))
    # Keep the Authorization Server session for 30 days unless explicitly logged out
    app.permanent_session_lifetime = timedelta(days=30)

    settings = settings or ensure_dev_keys(Oauth2Settings.from_env())
    if settings.grant_types is None:
        settings.grant_types = ['authorization_code', 'refresh_token', 'client_credentials']

    if storage is None:
        storage = Storage(os.environ.get('DATABASE_URL', 'sqlite:///oauth.db'))
        storage.create_all()
    module = Oauth2Module(settings, Repositories.from_storage(storage))
    if storage.encryptor is None:
        storage.encryptor = Encryptor(module.key_manager)
    module.init_app(app)

    @app.route('/')
    def index():
        return jsonify({'user': session.get('user')})

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        if request.method == 'GET':
            return render_template_string(LOGIN_TEMPLATE)
        user = storage.authenticate(request.form.get('username'), request.form.get('password'))
        if user is None:
            return render_template_string(LOGIN_TEMPLATE, error='Invalid credentials'), 401
        # Make the AS session persistent across browser restarts (SSO-style)
        session.permanent = True
        session['user'] = {'id': user.id, 'username': user.username}
        next_url = request.args.get('next') or url_for('index')
        request_id = parse_qs(urlparse(next_url).query).get(REQUEST_ID_PARAM, [None])[0]
        if request_id:
            module.set_user_authenticated_during_client_auth_request(request_id)
        return redirect(next_url)

    @app.route('/logout')
    def logout():
        session.pop('user', None)
        return redirect(url_for('index'))

    @app.route('/api/me')
    def me():
        try:
            module.validate_authenticated_request()
        except OAuth2Error as error:
            module.get_resource_server().raise_error_response(error)
        token = request.headers['Authorization'].split(None, 1)[1]
        user = module.find_identity_by_access_token(token)
        return jsonify({
            'client_id': module.get_request_oauth_client_id(),
            'scopes': module.get_request_oauth_scopes(),
            'username': user.username if user else None,
        })

    @app.route('/dev/seed')
    def dev_seed():
        if os.environ.get('ENABLE_DEV_ENDPOINTS', '').lower() not in ('1', 'true', 'yes', 'on'):
            abort(404)
        for name in ('alice', 'bob'):
            if storage.authenticate(name, name) is None:
                storage.add_user(name, name, email=f'{name}@example.com', name=name.title())
        for identifier, description in (('openid', 'Sign you in'),
                                        ('profile', 'Read your basic profile'),
                                        ('email', 'Read your email address'),
                                        ('offline_access', 'Get a refresh token for offline access')):
            if storage.get_scope(identifier) is None:
                storage.add_scope(identifier, description)
        if storage.get_client('demo-web') is None:
            storage.add_client(
                'demo-web',
                client_name='Demo Web',
                scope='openid profile email offline_access',
                redirect_uris='http://localhost:3000/callback',
                grant_types='authorization_code refresh_token',
            )
        return "Seeded users and client.\nUsers: alice/alice, bob/bob\nClient: demo-web (PKCE public)"

    @app.route('/dev/pkce')
    def dev_pkce():
        if os.environ.get('ENABLE_DEV_ENDPOINTS', '').lower() not in ('1', 'true', 'yes', 'on'):
            abort(404)
        verifier = base64.urlsafe_b64encode(os.urandom(40)).decode().rstrip('=')
        challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip('=')
        return jsonify({'code_verifier': verifier, 'code_challenge': challenge, 'method': 'S256'})

    return app


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    app = create_app()
    host = '127.0.0.1'
    port = 8000
    base = f"http://{host}:{port}"
    print(f"""
Quick test steps (ENABLE_DEV_ENDPOINTS=1):
  1) Open {base}/dev/seed to create demo users/client
  2) GET {base}/dev/pkce to obtain verifier+challenge
  3) Open /authorize URL in a browser, for example:
     {base}/authorize?client_id=demo-web&response_type=code&scope=openid%20profile%20email&redirect_uri=http%3A%2F%2Flocalhost%3A3000%2Fcallback&code_challenge_method=S256&code_challenge=<CHALLENGE>
  4) Login as alice/alice, approve consent, copy the ?code=...
  5) Exchange code with curl:
     curl -X POST {base}/access-token \\
          -d 'grant_type=authorization_code' \\
          -d 'client_id=demo-web' \\
          -d 'code_verifier=<VERIFIER>' \\
          -d 'code=<CODE_FROM_CALLBACK>' \\
          -d 'redirect_uri=http://localhost:3000/callback'
  6) Call a protected API:
     curl {base}/api/me -H 'Authorization: Bearer <access_token>'
""")
    app.run(debug=True, host=host, port=port)
