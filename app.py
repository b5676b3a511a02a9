"""
Review Remind - Flask Application
Client review requests, onboarding flow, tenant dashboards and the JSON API
"""

import os
import logging
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from time import perf_counter

import sentry_sdk
from flask import (
    Flask,
    abort,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from flask_login import current_user, login_required, login_user, logout_user
from sentry_sdk.integrations.flask import FlaskIntegration
from werkzeug.exceptions import RequestEntityTooLarge

import onboarding
from config import Config
from database import db_connect, init_db  # noqa: F401  (re-exported for scripts and tests)
from errors import ApiError
from extensions import csrf, limiter, login_manager
from routes.analytics import analytics_bp
from routes.clients import clients_bp
from routes.integrations import google_bp, xero_bp
from routes.reviews import reviews_bp
from routes.users import users_bp
from services import accounts, analytics, clients
from services.email_service import init_mail
from services.oauth import init_oauth

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(Config)
app.config.setdefault('SESSION_COOKIE_HTTPONLY', True)
app.config.setdefault('SESSION_COOKIE_SAMESITE', 'Lax')
app.config.setdefault('SESSION_COOKIE_SECURE', not app.config.get('DEBUG', False))


@app.context_processor
def inject_template_globals():
    return {
        "current_year": datetime.now(timezone.utc).year,
        "onboarding_steps": onboarding.STEPS,
        "onboarding_stages": onboarding.STAGES,
    }


csrf.init_app(app)
limiter.init_app(app)


@limiter.request_filter
def _rate_limit_exempt_for_tests():
    return app.config.get('TESTING', False)


init_mail(app)
init_oauth(app)

os.makedirs(app.config.get('LOG_DIR', 'logs'), exist_ok=True)
_file_handler = RotatingFileHandler(
    os.path.join(app.config.get('LOG_DIR', 'logs'), 'app.log'),
    maxBytes=5 * 1024 * 1024,
    backupCount=5,
)
_file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s'))
for _logger in (app.logger, logging.getLogger()):
    _logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    if not any(isinstance(h, RotatingFileHandler) for h in _logger.handlers):
        _logger.addHandler(_file_handler)

if app.config.get('SENTRY_DSN'):
    sentry_sdk.init(
        dsn=app.config.get('SENTRY_DSN'),
        integrations=[FlaskIntegration()],
        traces_sample_rate=app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1),
    )

REQUEST_METRICS = {
    'requests_total': 0,
    'errors_total': 0,
    'latency_ms_total': 0.0,
}

PROTECTED_PATH_SEGMENTS = ('/dashboard', '/profile')


@app.before_request
def _metrics_before_request():
    request._start_ts = perf_counter()


@app.after_request
def _metrics_after_request(response):
    started = getattr(request, '_start_ts', None)
    if started is not None:
        REQUEST_METRICS['requests_total'] += 1
        elapsed = (perf_counter() - started) * 1000.0
        REQUEST_METRICS['latency_ms_total'] += elapsed
        if response.status_code >= 400:
            REQUEST_METRICS['errors_total'] += 1
    return response


@app.before_request
def _require_session_for_private_pages():
    path = request.path
    if path.startswith('/api/') or path.startswith('/static/'):
        return None
    first_segment = path.strip('/').split('/', 1)[0]
    if first_segment in onboarding.RESERVED_USERNAMES:
        return None
    if any(segment in path for segment in PROTECTED_PATH_SEGMENTS) and not current_user.is_authenticated:
        return redirect('/log-in')
    return None


# ===== FLASK-LOGIN =====

login_manager.init_app(app)
login_manager.login_view = 'login'
login_manager.user_loader(accounts.load_user)


@login_manager.unauthorized_handler
def unauthorized():
    if request.path.startswith('/api/'):
        return jsonify({'error': 'UNAUTHENTICATED'}), 401
    return redirect('/log-in')


# ===== API BLUEPRINTS =====

for _blueprint in (users_bp, clients_bp, reviews_bp, analytics_bp, google_bp, xero_bp):
    csrf.exempt(_blueprint)
    app.register_blueprint(_blueprint)


def _redirect_after_sign_in(user_id):
    target = onboarding.enforce_onboarding_or_redirect(user_id)
    if target:
        return redirect(target)
    profile = accounts.get_profile(user_id)
    return redirect(f"/{profile['name']}/dashboard" if profile else '/')


# ===== PUBLIC ROUTES =====


@app.route('/')
def home():
    return render_template('home.html')


@app.route('/submit-review/<client_id>', methods=['GET', 'POST'])
@limiter.limit('30 per minute')
def submit_review_page(client_id):
    """Landing page behind the Happy / Unsatisfied buttons of a review request email."""
    user_id = (request.form.get('userID') or request.args.get('userID') or '').strip()
    review_type = (request.form.get('type') or request.args.get('type') or 'good').strip().lower()
    if review_type not in clients.REVIEW_TYPES:
        review_type = 'good'
    profile = accounts.get_profile(user_id) if user_id else None
    if not profile:
        abort(404)

    if request.method == 'POST':
        try:
            clients.submit_review(client_id, user_id, review_type, request.form.get('review'))
        except ApiError as exc:
            if exc.status == 404:
                abort(404)
            if exc.code == 'REVIEW_ALREADY_SUBMITTED':
                return render_template('review_thanks.html', business=profile, already=True)
            flash('Please write a few words about your experience before submitting.', 'danger')
            return render_template('submit_review.html', business=profile, client_id=client_id, review_type=review_type)
        if review_type == 'good' and profile['google_review_link']:
            return redirect(profile['google_review_link'])
        return render_template('review_thanks.html', business=profile, already=False)

    try:
        clients.mark_clicked(client_id)
    except ApiError as exc:
        if exc.status != 403:
            abort(404)
    return render_template('submit_review.html', business=profile, client_id=client_id, review_type=review_type)


# ===== AUTH ROUTES =====


@app.route('/sign-up', methods=['GET', 'POST'])
@limiter.limit('5 per hour', methods=['POST'])
def sign_up():
    if current_user.is_authenticated:
        return _redirect_after_sign_in(current_user.id)

    if request.method == 'POST':
        password = request.form.get('password') or ''
        if password != (request.form.get('confirm_password') or ''):
            flash('Passwords do not match.', 'danger')
            return render_template('sign_up.html'), 400
        try:
            user_id = accounts.create_login_user(request.form.get('name'), request.form.get('email'), password)
        except ApiError as exc:
            flash(exc.message or 'Please check the highlighted fields and try again.', 'danger')
            return render_template('sign_up.html'), exc.status
        login_user(accounts.load_user(user_id))
        onboarding.record_action_once(user_id, 'signed_in')
        flash('Account created. Next step: connect your Google account.', 'success')
        return _redirect_after_sign_in(user_id)

    return render_template('sign_up.html')


@app.route('/log-in', methods=['GET', 'POST'])
@app.route('/login', methods=['GET', 'POST'])
@limiter.limit('5 per 15 minutes', methods=['POST'])
def login():
    if current_user.is_authenticated:
        onboarding.record_action_once(current_user.id, 'signed_in')
        return _redirect_after_sign_in(current_user.id)

    if request.method == 'POST':
        email = (request.form.get('email') or '').strip()
        password = request.form.get('password') or ''
        if not email or not password:
            flash('Email and password are required to sign in.', 'danger')
            return redirect('/log-in')

        user_id = accounts.authenticate(email, password)
        user = accounts.load_user(user_id) if user_id else None
        if user:
            login_user(user)
            onboarding.record_action(user.id, 'signed_in')
            return _redirect_after_sign_in(user.id)

        flash('Sign-in failed. Check your email and password and try again.', 'danger')
        return redirect('/log-in')

    return render_template('log_in.html')


@app.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    flash('You have been signed out.', 'info')
    return redirect(url_for('home'))


# ===== ONBOARDING FLOW =====


def _onboarding_page(template, **context):
    target = onboarding.enforce_onboarding_or_redirect(current_user.id, current_path=request.path)
    if target:
        return redirect(target)
    return render_template(
        template,
        step_index=onboarding.infer_step_index_from_path(request.path),
        stage_index=onboarding.infer_stage_index_from_path(request.path),
        **context,
    )


@app.route('/onboarding-flow/link-google')
@login_required
def onboarding_link_google():
    return _onboarding_page('onboarding/link_google.html')


@app.route('/onboarding-flow/onboarding', methods=['GET', 'POST'])
@login_required
def onboarding_details():
    if request.method == 'POST':
        try:
            accounts.create_tenant(
                current_user.id,
                request.form.get('email') or current_user.email,
                request.form.get('business_name'),
                business_email=request.form.get('business_email'),
                google_business_link=request.form.get('google_business_link'),
                google_review_link=request.form.get('google_review_link'),
                description=request.form.get('description'),
            )
        except ApiError as exc:
            flash(exc.message or 'Please check your business details and try again.', 'danger')
            return _onboarding_page('onboarding/details.html', form=request.form), exc.status
        return _redirect_after_sign_in(current_user.id)

    return _onboarding_page('onboarding/details.html', form={})


@app.route('/onboarding-flow/link-xero')
@login_required
def onboarding_link_xero():
    return _onboarding_page('onboarding/link_xero.html')


@app.route('/onboarding-flow/welcome', methods=['GET', 'POST'])
@login_required
def onboarding_welcome():
    if request.method == 'POST':
        onboarding.record_action_once(current_user.id, 'welcomed')
        return _redirect_after_sign_in(current_user.id)
    return _onboarding_page('onboarding/welcome.html')


@app.route('/link-xero')
@login_required
def link_xero():
    return render_template('link_xero.html')


# ===== TENANT PAGES =====


def _tenant_page_guard(username):
    """Redirect response for a /<username>/... page, or None when the user may see it."""
    check = onboarding.check_session_server(username)
    if not check['valid']:
        return redirect('/log-in')
    target = onboarding.enforce_onboarding_or_redirect(check['user_id'], current_path=request.path)
    if target:
        return redirect(target)
    return None


@app.route('/<username>/dashboard')
def dashboard(username):
    if username in onboarding.RESERVED_USERNAMES:
        return render_template('help.html')
    blocked = _tenant_page_guard(username)
    if blocked:
        return blocked
    xero_target = onboarding.ensure_xero_connected_or_redirect(current_user.id)
    if xero_target:
        return redirect(xero_target)

    return render_template(
        'dashboard.html',
        username=username,
        clients=clients.list_clients(current_user.id),
        statistics=clients.statistics(current_user.id),
        metrics=analytics.email_analytics(current_user.id)['metrics'],
        recent_reviews=clients.recent_reviews(current_user.id),
        new_user=not onboarding.account_older_than_week(current_user.id),
    )


@app.route('/<username>/settings')
def settings(username):
    if username in onboarding.RESERVED_USERNAMES:
        return render_template('help.html')
    blocked = _tenant_page_guard(username)
    if blocked:
        return blocked
    return render_template(
        'settings.html',
        username=username,
        profile=accounts.get_profile(current_user.id),
        template=accounts.email_template(current_user.id),
    )


# ===== HEALTH / METRICS =====


@app.route('/health')
def health():
    try:
        conn = db_connect()
        conn.execute('SELECT 1')
        conn.close()
    except Exception:  # noqa: BLE001
        app.logger.exception('Health check database probe failed')
        return jsonify({'status': 'error', 'database': 'unavailable'}), 503
    return jsonify({'status': 'ok', 'database': 'ok'}), 200


@app.route('/metrics')
def metrics():
    total = REQUEST_METRICS['requests_total']
    avg_latency = (REQUEST_METRICS['latency_ms_total'] / total) if total else 0.0
    return jsonify({
        'requests_total': total,
        'errors_total': REQUEST_METRICS['errors_total'],
        'avg_latency_ms': round(avg_latency, 2),
    }), 200


# ===== ERROR HANDLERS =====


def _wants_json():
    return request.path.startswith('/api/')


@app.errorhandler(ApiError)
def api_error(error):
    if error.status >= 500:
        app.logger.warning('API error %s on %s: %s', error.code, request.path, error.message)
    return jsonify(error.to_dict()), error.status


@app.errorhandler(429)
def rate_limited(error):
    reset_ts = int((datetime.now(timezone.utc) + timedelta(minutes=15)).timestamp())
    if _wants_json():
        resp = jsonify({'error': 'RATE_LIMITED'})
        resp.status_code = 429
    else:
        response = render_template('errors/rate_limit.html', reset_timestamp=reset_ts, wait_minutes=15)
        resp = app.make_response((response, 429))
    resp.headers['X-RateLimit-Reset'] = str(reset_ts)
    return resp


@app.errorhandler(404)
def not_found(error):
    if _wants_json():
        return jsonify({'error': 'NOT_FOUND'}), 404
    return render_template('errors/404.html'), 404


@app.errorhandler(500)
def internal_error(error):
    app.logger.error('Unhandled error on %s: %s', request.path, getattr(error, 'original_exception', error))
    if _wants_json():
        return jsonify({'error': 'INTERNAL'}), 500
    flash('An unexpected server error occurred. Please retry in a moment.', 'danger')
    return render_template('errors/404.html'), 500


@app.errorhandler(RequestEntityTooLarge)
def file_too_large(error):
    if _wants_json():
        return jsonify({'error': 'FILE_TOO_LARGE', 'message': 'Upload exceeds the 5 MB limit.'}), 413
    flash('Upload failed: file exceeds the 5 MB limit.', 'danger')
    return redirect(request.referrer or url_for('home')), 413


# ===== APPLICATION ENTRY POINT =====

if __name__ == '__main__':
    with app.app_context():
        init_db()
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=app.config['DEBUG'])
