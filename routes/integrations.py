"""Google and Xero OAuth connections plus Xero client import."""

import logging
from urllib.parse import quote

from authlib.integrations.base_client import OAuthError
from flask import Blueprint, current_app, jsonify, redirect, request, session, url_for
from flask_login import current_user, login_required

import onboarding
from errors import ApiError
from extensions import limiter
from routes import json_body, session_user_id
from services import google_service, xero_service
from services.oauth import oauth

logger = logging.getLogger(__name__)

google_bp = Blueprint('google_api', __name__, url_prefix='/api/google')
xero_bp = Blueprint('xero_api', __name__, url_prefix='/api/xero')

XERO_RETURN_TO_KEY = 'xero_return_to'


def _safe_return_to(value):
    value = (value or '').strip()
    if value.startswith('/') and not value.startswith('//'):
        return value
    return None


def _after_connect_redirect(user_id):
    target = onboarding.enforce_onboarding_or_redirect(user_id)
    if target:
        return redirect(target)
    if current_user.slug:
        return redirect(f'/{current_user.slug}/dashboard')
    return redirect('/')


# ===== GOOGLE =====

@google_bp.route('/connect', methods=['GET'])
@login_required
def google_connect():
    redirect_uri = url_for('google_api.google_callback', _external=True)
    return oauth.google.authorize_redirect(redirect_uri, access_type='offline', prompt='consent')


@google_bp.route('/callback', methods=['GET'])
@login_required
def google_callback():
    if request.args.get('error'):
        raise ApiError(400, 'GOOGLE_AUTH_DENIED', message=request.args.get('error'))
    try:
        token = oauth.google.authorize_access_token()
    except OAuthError as exc:
        logger.warning("Google token exchange failed: user=%s error=%s", current_user.id, exc)
        raise ApiError(400, 'GOOGLE_AUTH_FAILED')

    userinfo = token.get('userinfo') or {}
    google_service.save_account(current_user.id, token, account_id=userinfo.get('sub'))
    onboarding.record_action_once(current_user.id, 'google_connected')
    logger.info("Google account linked: user=%s", current_user.id)
    return _after_connect_redirect(current_user.id)


@google_bp.route('/has-connection', methods=['GET'])
@login_required
def google_has_connection():
    return jsonify(google_service.has_connection(current_user.id))


# ===== XERO =====

@xero_bp.route('/connect-to-xero', methods=['GET'])
@login_required
def connect_to_xero():
    return_to = _safe_return_to(request.args.get('returnTo'))
    if return_to:
        session[XERO_RETURN_TO_KEY] = return_to
    else:
        session.pop(XERO_RETURN_TO_KEY, None)
    redirect_uri = current_app.config.get('XERO_REDIRECT_URI') or url_for(
        'xero_api.receive_xero_connection', _external=True
    )
    return oauth.xero.authorize_redirect(redirect_uri)


@xero_bp.route('/receive-xero-connection', methods=['GET'])
@login_required
def receive_xero_connection():
    if request.args.get('error'):
        raise ApiError(
            400,
            'XERO_AUTH_DENIED',
            message=request.args.get('error_description') or request.args.get('error'),
        )
    try:
        token = oauth.xero.authorize_access_token()
    except OAuthError as exc:
        logger.warning("Xero token exchange failed: user=%s error=%s", current_user.id, exc)
        raise ApiError(400, 'XERO_AUTH_FAILED')

    connections = xero_service.list_connections(token.get('access_token'))
    if not connections:
        raise ApiError(400, 'NO_TENANTS', message='No Xero organisations were authorised.')
    xero_service.save_connections(current_user.id, token, connections)
    onboarding.record_action_once(current_user.id, 'xero_connected')

    return_to = session.pop(XERO_RETURN_TO_KEY, None)
    return redirect(return_to or f'/onboarding-flow/welcome?UserID={quote(str(current_user.id))}')


@xero_bp.route('/has-xero-connection', methods=['GET'])
@login_required
def has_xero_connection():
    response = jsonify(xero_service.connection_status(current_user.id))
    response.headers['Cache-Control'] = 'no-store'
    return response


@xero_bp.route('/get-primary-business', methods=['GET'])
@login_required
def get_primary_business():
    return jsonify(xero_service.primary_business(current_user.id))


@xero_bp.route('/list-businesses', methods=['GET'])
@login_required
def list_businesses():
    return jsonify({'businesses': xero_service.list_businesses(current_user.id)})


@xero_bp.route('/get-clients-from-xero', methods=['POST'])
@login_required
@limiter.limit('10 per hour')
def get_clients_from_xero():
    body = json_body()
    user_id = session_user_id(body.get('userId'))
    return jsonify(xero_service.sync_clients(user_id, body.get('since')))
