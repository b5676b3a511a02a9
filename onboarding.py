"""
Onboarding step-flow and session gating.

A user's progress is never stored as a flag. It is derived from the distinct
rows in ``user_actions``: every completed step appends one immutable fact, and
the next step is the first action of ACTION_FLOW the user has not recorded yet.
"""

import logging
from datetime import timedelta, datetime, timezone
from urllib.parse import quote

from flask_login import current_user

from database import db_connect, parse_ts, utc_now

logger = logging.getLogger(__name__)

ACTION_FLOW = [
    'signed_in',
    'google_connected',
    'finished_onboarding',
    'xero_connected',
    'welcomed',
]

ACTION_TO_URL = {
    'signed_in': '/login',
    'google_connected': '/onboarding-flow/link-google',
    'finished_onboarding': '/onboarding-flow/onboarding',
    'xero_connected': '/onboarding-flow/link-xero',
    'welcomed': '/onboarding-flow/welcome',
}

STEPS = [
    {
        'key': 'onboarding',
        'label': 'Set up account',
        'paths': ['/onboarding-flow/onboarding'],
    },
    {
        'key': 'link-services',
        'label': 'Link services',
        'paths': ['/onboarding-flow/link-google', '/onboarding-flow/link-xero'],
    },
    {
        'key': 'welcome',
        'label': 'Review overview',
        'paths': ['/onboarding-flow/welcome'],
    },
]

STAGES = [
    {'key': 'sign-up', 'label': 'Sign up', 'path': '/sign-up'},
    {'key': 'connect-google', 'label': 'Connect Google', 'path': '/onboarding-flow/link-google'},
    {'key': 'user-details', 'label': 'Business details', 'path': '/onboarding-flow/onboarding'},
    {'key': 'connect-xero', 'label': 'Connect Xero', 'path': '/onboarding-flow/link-xero'},
    {'key': 'welcome', 'label': 'Welcome', 'path': '/onboarding-flow/welcome'},
]

LOGIN_PATHS = ('/log-in', '/login')
RESERVED_USERNAMES = ('help',)
NEW_USER_WINDOW = timedelta(days=7)


def infer_step_index_from_path(path):
    for index, step in enumerate(STEPS):
        if any((path or '').startswith(step_path) for step_path in step['paths']):
            return index
    return 0


def infer_stage_index_from_path(path):
    for index, stage in enumerate(STAGES):
        if (path or '').startswith(stage['path']):
            return index
    return 0


# ===== USER ACTIONS =====

def record_action(user_id, action):
    """Append an onboarding event for the user."""
    if action not in ACTION_FLOW:
        raise ValueError(f'Unknown user action: {action}')
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'INSERT INTO user_actions (user_id, action, created_at) VALUES (?, ?, ?)',
        (user_id, action, utc_now()),
    )
    conn.commit()
    conn.close()


def record_action_once(user_id, action):
    """Append the event only when the user has never recorded it. Returns True if a row was created."""
    if action not in ACTION_FLOW:
        raise ValueError(f'Unknown user action: {action}')
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        INSERT INTO user_actions (user_id, action, created_at)
        SELECT ?, ?, ?
        WHERE NOT EXISTS (
            SELECT 1 FROM user_actions WHERE user_id = ? AND action = ?
        )
        ''',
        (user_id, action, utc_now(), user_id, action),
    )
    created = c.rowcount == 1
    conn.commit()
    conn.close()
    return created


def _has_action(user_id, action):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'SELECT EXISTS (SELECT 1 FROM user_actions WHERE user_id = ? AND action = ?)',
        (user_id, action),
    )
    found = bool(c.fetchone()[0])
    conn.close()
    return found


def completed_actions(user_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT DISTINCT action FROM user_actions WHERE user_id = ?', (user_id,))
    done = {row[0] for row in c.fetchall()}
    conn.close()
    return [action for action in ACTION_FLOW if action in done]


def next_user_step(user_id):
    """Work out where the user is in ACTION_FLOW and where to send them next."""
    completed = completed_actions(user_id)
    missing = [action for action in ACTION_FLOW if action not in completed]

    if not missing:
        return {
            'success': True,
            'redirect': None,
            'status': 'complete',
            'completed': completed,
            'missing': [],
        }

    next_action = missing[0]
    return {
        'success': True,
        'redirect': ACTION_TO_URL[next_action],
        'next_action': next_action,
        'status': 'incomplete',
        'completed_in_order': completed,
        'missing_in_order': missing,
    }


def _is_login_path(path):
    return any(path == p or path.startswith(p + '/') for p in LOGIN_PATHS)


def enforce_onboarding_or_redirect(user_id, current_path=None):
    """Return the URL the user must be sent to, or None when onboarding is complete.

    When ``current_path`` is already inside the target step no redirect is
    returned, so onboarding pages can call this without looping.
    """
    step = next_user_step(user_id)
    target = step['redirect']
    if not target:
        return None
    if current_path and current_path.startswith(target):
        return None
    if _is_login_path(target):
        return target
    return f'{target}?UserID={quote(str(user_id))}'


# ===== STATUS CHECKS =====

def is_onboarded(user_id):
    try:
        return _has_action(user_id, 'finished_onboarding')
    except Exception:  # noqa: BLE001
        logger.exception('Onboarded check failed for user=%s', user_id)
        return False


def is_welcomed(user_id):
    try:
        return _has_action(user_id, 'welcomed')
    except Exception:  # noqa: BLE001
        logger.exception('Welcomed check failed for user=%s', user_id)
        return False


def is_xero_connected_server(user_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'SELECT EXISTS (SELECT 1 FROM xero_details WHERE auth_id = ? AND is_connected = 1)',
        (user_id,),
    )
    connected = bool(c.fetchone()[0])
    conn.close()
    return connected


def ensure_xero_connected_or_redirect(user_id):
    if is_xero_connected_server(user_id):
        return None
    return f'/link-xero?userID={quote(str(user_id))}'


def check_session_server(username):
    """Compare the signed-in user's slug with the username in the URL."""
    if not current_user.is_authenticated:
        return {'valid': False, 'reason': 'Invalid session'}

    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT name, display_name FROM myusers WHERE auth_id = ?', (current_user.id,))
    row = c.fetchone()
    conn.close()

    if not row or not row[0]:
        return {'valid': False, 'reason': 'No name found'}

    name, display_name = row
    if name != username:
        return {
            'valid': False,
            'reason': 'Username mismatch',
            'expected': name,
            'display_name': display_name,
            'user_id': current_user.id,
        }
    return {'valid': True, 'name': name, 'display_name': display_name, 'user_id': current_user.id}


def account_created_at(user_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT created_at FROM myusers WHERE auth_id = ?', (user_id,))
    row = c.fetchone()
    conn.close()
    return row[0] if row else None


def account_older_than_week(user_id, now=None):
    """True once the tenant profile is at least a week old, None when there is no profile."""
    created_at = parse_ts(account_created_at(user_id))
    if created_at is None:
        return None
    now = now or datetime.now(timezone.utc)
    return created_at <= now - NEW_USER_WINDOW
