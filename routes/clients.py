"""Client records, review-request emails and public review capture."""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from extensions import limiter
from routes import json_body, request_value, session_user_id
from services import accounts, clients

clients_bp = Blueprint('clients_api', __name__, url_prefix='/api')


# ===== CLIENT RECORDS =====

@clients_bp.route('/clients/add-client', methods=['POST'])
@clients_bp.route('/add-client', methods=['POST'])
@login_required
def add_client():
    body = json_body()
    user_id = session_user_id(body.get('userId'))
    client = clients.add_client(
        user_id,
        body.get('name'),
        email=body.get('email'),
        phone_number=body.get('phone_number') or body.get('phoneNumber'),
        sentiment=body.get('sentiment'),
        review=body.get('review'),
        item_description=body.get('item_description'),
    )
    return jsonify({'success': True, 'client': client}), 201


@clients_bp.route('/clients/get-clients', methods=['GET', 'POST'])
@clients_bp.route('/get-clients', methods=['GET', 'POST'])
@login_required
def get_clients():
    user_id = session_user_id(request_value('userId'))
    return jsonify({'success': True, 'userId': user_id, 'clients': clients.list_clients(user_id)})


@clients_bp.route('/statistics', methods=['GET'])
@login_required
def statistics():
    return jsonify(clients.statistics(current_user.id))


@clients_bp.route('/get-recent-reviews', methods=['GET'])
@login_required
def get_recent_reviews():
    reviews = clients.recent_reviews(current_user.id, request.args.get('limit'))
    return jsonify({'success': True, 'reviews': reviews})


# ===== REVIEW REQUEST EMAILS =====

@clients_bp.route('/send-review-email', methods=['POST'])
@login_required
@limiter.limit('60 per hour')
def send_review_email():
    body = json_body()
    user_id = session_user_id(body.get('userId'))
    return jsonify(clients.send_review_email(user_id, str(body.get('clientId') or '').strip()))


@clients_bp.route('/send-bulk-emails', methods=['POST'])
@login_required
@limiter.limit('10 per hour')
def send_bulk_emails():
    body = json_body()
    user_id = session_user_id(body.get('userId'))
    return jsonify(clients.send_bulk_emails(user_id, body.get('clientIds')))


@clients_bp.route('/email-template', methods=['GET', 'POST'])
@login_required
def email_template():
    if request.method == 'POST':
        body = json_body()
        user_id = session_user_id(body.get('userId'))
        return jsonify(accounts.update_email_template(user_id, body.get('subject'), body.get('body')))
    return jsonify(accounts.email_template(current_user.id))


# ===== PUBLIC REVIEW ENDPOINTS =====

@clients_bp.route('/review-clicked-update', methods=['POST'])
@limiter.limit('30 per minute')
def review_clicked_update():
    body = json_body()
    return jsonify(clients.mark_clicked(str(body.get('clientId') or '').strip()))


@clients_bp.route('/reviews/submit-review', methods=['POST'])
@clients_bp.route('/submit-review', methods=['POST'])
@limiter.limit('10 per minute')
def submit_review():
    body = json_body()
    result = clients.submit_review(
        str(body.get('clientId') or '').strip(),
        str(body.get('userId') or '').strip(),
        str(body.get('reviewType') or '').strip().lower(),
        body.get('review'),
    )
    return jsonify(result)
