"""Review phrase settings and AI-drafted good reviews."""

from flask import Blueprint, jsonify
from flask_login import login_required

from errors import ApiError
from extensions import limiter
from routes import json_body, session_user_id
from services import accounts, clients, phrases, review_writer
from validators import clean_text, normalise_items

reviews_bp = Blueprint('reviews_api', __name__, url_prefix='/api')

MAX_DRAFT_PHRASES = 10


@reviews_bp.route('/reviews/get-phrases', methods=['POST'])
@login_required
def get_phrases():
    body = json_body()
    user_id = session_user_id(body.get('userId'))
    return jsonify(phrases.page(user_id, body.get('limit'), body.get('cursor')))


@reviews_bp.route('/reviews/generate-good-reviews', methods=['POST'])
@login_required
@limiter.limit('30 per hour')
def generate_good_reviews():
    body = json_body()
    user_id = session_user_id(body.get('userId'))
    chosen = body.get('phrases')
    if not isinstance(chosen, list):
        raise ApiError(400, 'INVALID_PHRASES')
    chosen = [text for text in (clean_text(p, phrases.MAX_PHRASE_LENGTH) for p in chosen if isinstance(p, str)) if text]
    if not 1 <= len(chosen) <= MAX_DRAFT_PHRASES:
        raise ApiError(400, 'INVALID_PHRASES', message=f'Pick between 1 and {MAX_DRAFT_PHRASES} phrases.')

    profile = accounts.get_profile(user_id)
    if not profile or not (profile['display_name'] or '').strip():
        raise ApiError(400, 'DISPLAY_NAME_MISSING_FOR_USER')

    client_id = str(body.get('clientId') or '').strip()
    items = []
    if client_id and client_id != clients.TEST_CLIENT_ID:
        items = normalise_items(clients.client_item_description(user_id, client_id))

    reviews = review_writer.generate_good_reviews(profile['display_name'], profile['description'], chosen, items)
    return jsonify({'success': True, 'userId': user_id, 'reviews': reviews})


# ===== REVIEW SETTINGS =====

@reviews_bp.route('/settings/review-settings/get-phrases', methods=['POST'])
@login_required
def settings_get_phrases():
    return jsonify(phrases.list_for_settings(session_user_id(json_body().get('userId'))))


@reviews_bp.route('/settings/review-settings/add-phrases', methods=['POST'])
@login_required
def settings_add_phrases():
    body = json_body()
    return jsonify(phrases.add_phrases(session_user_id(body.get('userId')), body.get('phrases')))


@reviews_bp.route('/settings/review-settings/delete-phrases', methods=['POST'])
@login_required
def settings_delete_phrase():
    body = json_body()
    return jsonify(phrases.delete_phrase(session_user_id(body.get('userId')), body.get('phraseId')))


@reviews_bp.route('/settings/review-settings/generate-new-phrases', methods=['POST'])
@login_required
@limiter.limit('20 per hour')
def settings_generate_new_phrases():
    return jsonify(phrases.generate_new_phrases(session_user_id(json_body().get('userId'))))


@reviews_bp.route('/settings/review-settings/add-generated-phrases', methods=['POST'])
@login_required
def settings_add_generated_phrases():
    body = json_body()
    return jsonify(phrases.add_generated_phrases(session_user_id(body.get('userId')), body.get('phrases')))
