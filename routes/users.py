"""Account, onboarding-progress and tenant profile endpoints."""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user

import onboarding
from errors import ApiError
from extensions import limiter
from routes import json_body, request_value, session_user_id
from services import accounts, google_service, storage_service

users_bp = Blueprint('users_api', __name__, url_prefix='/api')


def _optional_user_id(body=None):
    requested = request_value('userId', body)
    if current_user.is_authenticated:
        return session_user_id(requested)
    return None


# ===== SIGN UP / SIGN IN =====

@users_bp.route('/sign-up', methods=['POST'])
@limiter.limit('5 per hour')
def sign_up():
    body = json_body()
    user_id = accounts.create_login_user(body.get('name'), body.get('email'), body.get('password'))
    login_user(accounts.load_user(user_id))
    onboarding.record_action_once(user_id, 'signed_in')
    return jsonify({'success': True, 'userId': user_id}), 201


@users_bp.route('/record-sign-in', methods=['POST'])
@login_required
def record_sign_in():
    onboarding.record_action(current_user.id, 'signed_in')
    return jsonify({'success': True})


@users_bp.route('/user-welcomed', methods=['POST'])
def user_welcomed():
    user_id = _optional_user_id()
    if not user_id:
        raise ApiError(401, 'MISSING_USER')
    onboarding.record_action(user_id, 'welcomed')
    return jsonify({'success': True, 'userId': user_id})


def _record_once(action):
    user_id = session_user_id(request_value('userId'))
    created = onboarding.record_action_once(user_id, action)
    return jsonify({
        'success': True,
        'created': created,
        'already_present': not created,
        'action': action,
        'userId': user_id,
    })


@users_bp.route('/add-user-action/google-connection', methods=['POST'])
@login_required
def add_google_connection_action():
    return _record_once('google_connected')


@users_bp.route('/add-user-action/xero-connected', methods=['POST'])
@login_required
def add_xero_connected_action():
    return _record_once('xero_connected')


# ===== ONBOARDING PROGRESS =====

@users_bp.route('/next-user-step', methods=['GET', 'POST'])
def next_user_step():
    user_id = _optional_user_id()
    if not user_id:
        raise ApiError(400, 'MISSING_USER_ID')
    return jsonify(onboarding.next_user_step(user_id))


@users_bp.route('/check-onboarded', methods=['GET'])
@login_required
def check_onboarded():
    return jsonify({
        'onboarded': onboarding.is_onboarded(current_user.id),
        'welcomed': onboarding.is_welcomed(current_user.id),
    })


@users_bp.route('/check-session', methods=['GET'])
def check_session():
    username = (request.args.get('username') or '').strip()
    if not username:
        raise ApiError(400, 'MISSING_USERNAME')
    result = onboarding.check_session_server(username)
    if result['valid']:
        return jsonify(result)
    status = 401 if result['reason'] == 'Invalid session' else 403
    return jsonify(result), status


@users_bp.route('/dashboard/check-new-user', methods=['GET'])
@login_required
def check_new_user():
    older = onboarding.account_older_than_week(current_user.id)
    if older is None:
        raise ApiError(404, 'NOT_FOUND')
    return jsonify({
        'success': True,
        'older_than_week': older,
        'created_at': onboarding.account_created_at(current_user.id),
    })


# ===== NAMES AND SLUGS =====

@users_bp.route('/get-name', methods=['POST'])
@login_required
def get_name():
    return jsonify(accounts.get_name(session_user_id(request_value('userId'))))


@users_bp.route('/name-availability', methods=['GET'])
@limiter.limit('60 per minute')
def name_availability():
    return jsonify(accounts.name_availability(request.args.get('name'), request.args.get('email')))


@users_bp.route('/update-slug', methods=['POST'])
@login_required
def update_slug():
    body = json_body()
    user_id = session_user_id(body.get('userId'))
    return jsonify(accounts.update_slug(user_id, body.get('newName') or body.get('name')))


# ===== TENANT PROFILE =====

@users_bp.route('/add-user', methods=['POST'])
@login_required
def add_user():
    body = json_body()
    user_id = session_user_id(body.get('id'))
    user = accounts.create_tenant(
        user_id,
        body.get('email'),
        body.get('businessName') or body.get('name'),
        business_email=body.get('businessEmail'),
        google_business_link=body.get('googleBusinessLink'),
        google_review_link=body.get('googleReviewLink'),
        description=body.get('description'),
    )
    return jsonify({'success': True, 'user': user}), 201


@users_bp.route('/onboarding-get-user-details', methods=['GET'])
@login_required
def onboarding_get_user_details():
    return jsonify(google_service.fetch_onboarding_details(current_user.id))


@users_bp.route('/update-google-link', methods=['POST'])
@login_required
def update_google_link():
    body = json_body()
    user_id = session_user_id(body.get('userId'))
    return jsonify(accounts.update_google_link(user_id, body.get('googleBusinessLink')))


@users_bp.route('/upload-company-logo', methods=['POST'])
@login_required
def upload_company_logo():
    user_id = session_user_id(request.form.get('userId'))
    upload = request.files.get('file')
    if not upload or not upload.filename:
        raise ApiError(400, 'INVALID_FILE', message='No file was uploaded.')
    ext = storage_service.logo_extension(upload.filename, upload.mimetype)
    if not ext:
        raise ApiError(400, 'INVALID_FILE', message='Logo must be a PNG, JPG, WEBP, GIF or SVG image.')

    content_type = upload.mimetype if upload.mimetype in storage_service.ALLOWED_LOGO_TYPES else f'image/{ext}'
    path = storage_service.logo_path(user_id, ext)
    storage_service.upload_logo(path, upload.read(), content_type)
    accounts.set_logo_path(user_id, path)
    return jsonify({
        'success': True,
        'path': path,
        'signedUrl': storage_service.signed_url(path, storage_service.UPLOAD_URL_TTL),
    })


@users_bp.route('/retrieve-logo-url', methods=['GET'])
@login_required
def retrieve_logo_url():
    profile = accounts.get_profile(current_user.id)
    path = profile['company_logo_path'] if profile else None
    return jsonify(storage_service.signed_url_payload(path))


# ===== USER SETTINGS =====

@users_bp.route('/settings/user-settings/get-business-info', methods=['GET'])
@login_required
def get_business_info():
    return jsonify(accounts.business_info(current_user.id))


@users_bp.route('/settings/user-settings/update-business-description', methods=['POST'])
@login_required
def update_business_description():
    body = json_body()
    user_id = session_user_id(body.get('userId'))
    return jsonify(accounts.update_business_description(user_id, body.get('description')))


@users_bp.route('/settings/user-settings/get-email', methods=['GET'])
@login_required
def get_email():
    return jsonify(accounts.get_email(current_user.id))
