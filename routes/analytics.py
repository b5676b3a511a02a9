"""Dashboard analytics endpoints."""

from flask import Blueprint, jsonify
from flask_login import login_required

from extensions import limiter
from routes import json_body, request_value, session_user_id
from services import analytics

analytics_bp = Blueprint('analytics_api', __name__, url_prefix='/api/analytics')


@analytics_bp.route('/email-analytics', methods=['GET'])
@login_required
def email_analytics():
    return jsonify(analytics.email_analytics(session_user_id(request_value('userId', {}))))


@analytics_bp.route('/avg-email-to-click', methods=['GET'])
@login_required
def avg_email_to_click():
    return jsonify(analytics.avg_email_to_click(session_user_id(request_value('userId', {}))))


@analytics_bp.route('/get-graph-info', methods=['GET'])
@login_required
def get_graph_info():
    return jsonify(analytics.graph_points(session_user_id(request_value('userId', {}))))


@analytics_bp.route('/good-review-summary', methods=['POST'])
@login_required
@limiter.limit('20 per hour')
def good_review_summary():
    user_id = session_user_id(json_body().get('userId'))
    return jsonify(analytics.review_summary(user_id, positive=True))


@analytics_bp.route('/bad-review-summary', methods=['POST'])
@login_required
@limiter.limit('20 per hour')
def bad_review_summary():
    user_id = session_user_id(json_body().get('userId'))
    return jsonify(analytics.review_summary(user_id, positive=False))
