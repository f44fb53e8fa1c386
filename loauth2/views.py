"""
Flask blueprint: authorize, token, consent, JWKS, discovery and userinfo.

Which routes exist depends on the server role and the OpenID Connect
settings.
"""
from __future__ import annotations

import logging

from authlib.common.urls import add_params_to_uri
from authlib.oauth2 import OAuth2Error
from flask import Blueprint, jsonify, redirect, render_template_string, request, url_for

from .authorization import REQUEST_ID_PARAM, ClientAuthorizationRequest
from .oidc import build_discovery_document
from .settings import SERVER_ROLE_AUTHORIZATION_SERVER, SERVER_ROLE_RESOURCE_SERVER

log = logging.getLogger(__name__)

WELL_KNOWN_OPENID_CONFIGURATION = '/.well-known/openid-configuration'

CONSENT_TEMPLATE = """
<!doctype html>
<meta charset="utf-8">
<title>Authorize {{client.client_name or client.client_id}}</title>
<style>
  body { font-family: system-ui, -apple-system, Segoe UI, Roboto, sans-serif; background:#0b1020; color:#e8ecf1; display:flex; align-items:center; justify-content:center; min-height:100vh; margin:0; }
  .card { background:#151b2f; border:1px solid #26314f; border-radius:14px; padding:26px 30px; width: 680px; box-shadow: 0 10px 30px rgba(0,0,0,.35); }
  h2 { margin:0 0 12px; display:flex; align-items:center; gap:12px; }
  .muted { color:#a7b1c2; }
  ul { list-style:none; padding:0; }
  li { padding:8px 0; border-bottom:1px solid #26314f; }
  .row { display:flex; gap:12px; }
  .btn { padding:10px 14px; background:#2d6cdf; color:#fff; border:none; border-radius:10px; font-weight:600; }
  .btn.secondary { background:#32405f; color:#dbe7ff; border:1px solid #3d4f77; }
</style>
<div class="card">
  <h2>
    {% if client.logo_uri %}<img src="{{client.logo_uri}}" alt="logo" height="36">{% endif %}
    Authorize {{client.client_name or client.client_id}}
  </h2>
  <form method="post">
    {% if pending %}
      <p class="muted">This app is requesting access to:</p>
      <ul>
        {% for id, item in pending.items() %}
          <li><label><input type="checkbox" name="scopes" value="{{id}}" checked>
            <b>{{id}}</b>  {{ item.scope.description if item.scope.description is defined and item.scope.description else 'Requested permission' }}</label></li>
        {% endfor %}
      </ul>
    {% endif %}
    {% if previously_approved or auto_applied %}
      <p class="muted">Already granted:</p>
      <ul>
        {% for id in previously_approved %}<li><b>{{id}}</b></li>{% endfor %}
        {% for id in auto_applied %}<li><b>{{id}}</b></li>{% endfor %}
      </ul>
    {% endif %}
    <div class="row">
      <button class="btn" type="submit" name="confirm" value="yes">Allow</button>
      <button class="btn secondary" type="submit" name="confirm" value="no">Deny</button>
    </div>
  </form>
</div>
"""


def create_blueprint(module) -> Blueprint:
    settings = module.settings
    bp = Blueprint('loauth2', __name__)

    def oauth_error_response(error: OAuth2Error):
        status, body, headers = error()
        return jsonify(dict(body)), status, headers

    if settings.has_role(SERVER_ROLE_AUTHORIZATION_SERVER):

        @bp.route(settings.authorize_path, methods=['GET', 'POST'], endpoint='authorize')
        def authorize():
            server = module.get_authorization_server()
            return server.issue_authorization_response(end_user=module.get_current_user())

        @bp.route(settings.access_token_path, methods=['POST'], endpoint='access_token')
        def access_token():
            return module.get_authorization_server().issue_token_response()

        @bp.route(settings.client_authorization_path, methods=['GET', 'POST'],
                  endpoint='client_authorization')
        def client_authorization():
            request_id = request.values.get(REQUEST_ID_PARAM)
            req = module.get_client_auth_request(request_id)
            if req is None:
                return jsonify({'error': 'invalid_request',
                                'error_description': 'Unknown or expired client authorization request.'}), 400

            user = module.get_current_user()
            if user is None:
                return redirect(add_params_to_uri(settings.login_url, [('next', request.url)]))
            if req.user_identifier != user.get_identifier():
                return jsonify({'error': 'access_denied',
                                'error_description': 'Client authorization request belongs to another user.'}), 403
            if req.completed:
                return redirect(req.get_authorization_request_url())

            if request.method == 'POST':
                if request.form.get('confirm') == 'yes':
                    req.set_selected_scope_identifiers(request.form.getlist('scopes'))
                    req.set_authorization_status(ClientAuthorizationRequest.AUTHORIZATION_APPROVED)
                else:
                    req.set_authorization_status(ClientAuthorizationRequest.AUTHORIZATION_DENIED)
                return module.generate_client_auth_req_completed_redirect_response(req)

            return render_template_string(
                CONSENT_TEMPLATE,
                client=req.client,
                pending=req.get_approval_pending_scopes(),
                previously_approved=list(req.get_previously_approved_scopes()),
                auto_applied=list(req.get_scopes_applied_automatically()),
            )

        @bp.route(settings.jwks_path, endpoint='jwks')
        def jwks():
            key = module.key_manager.load_public_key()
            return jsonify({'keys': [key.as_dict(is_private=False)]})

    oidc_enabled = settings.enable_open_id_connect
    if oidc_enabled and settings.has_role(SERVER_ROLE_RESOURCE_SERVER) \
            and settings.open_id_connect_userinfo_endpoint is True:

        @bp.route(settings.open_id_connect_userinfo_path, methods=['GET', 'POST'], endpoint='userinfo')
        def userinfo():
            try:
                authenticated = module.validate_authenticated_request(scopes=['openid'])
            except OAuth2Error as error:
                return oauth_error_response(error)
            info = module.get_oidc_userinfo(authenticated)
            if info is None:
                return jsonify({'error': 'invalid_token',
                                'error_description': 'The token has no user.'}), 401
            return jsonify(info)

    return bp


def register_discovery(app, module):
    """Serve the OpenID Connect discovery document at the root of ``app``.

    The well-known path never takes ``url_rules_prefix``.
    """
    settings = module.settings
    if not (settings.enable_open_id_connect and settings.enable_open_id_connect_discovery
            and settings.has_role(SERVER_ROLE_AUTHORIZATION_SERVER)):
        return

    def openid_configuration():
        server = module.get_authorization_server()
        urls = {
            'issuer': server.get_issuer(),
            'authorization_endpoint': url_for('loauth2.authorize', _external=True),
            'token_endpoint': url_for('loauth2.access_token', _external=True),
            'jwks_uri': url_for('loauth2.jwks', _external=True),
        }
        endpoint = settings.open_id_connect_userinfo_endpoint
        if endpoint is True and settings.has_role(SERVER_ROLE_RESOURCE_SERVER):
            urls['userinfo_endpoint'] = url_for('loauth2.userinfo', _external=True)
        elif isinstance(endpoint, str) and endpoint:
            urls['userinfo_endpoint'] = endpoint
        return jsonify(build_discovery_document(
            settings,
            urls,
            module.get_oidc_scope_collection(),
            grant_types=server.grant_types_supported,
            response_types=server.response_types_supported,
        ))

    app.add_url_rule(WELL_KNOWN_OPENID_CONFIGURATION, endpoint='loauth2_openid_configuration',
                     view_func=openid_configuration)
