"""Client contacts, review-request sending and review capture."""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from flask import current_app

from database import db_connect, utc_now
from errors import ApiError
from services import email_service
from services.accounts import get_profile
from validators import clean_text, is_valid_email

logger = logging.getLogger(__name__)

SENTIMENTS = ('good', 'bad', 'unreviewed')
REVIEW_TYPES = ('good', 'bad')
TEST_CLIENT_ID = 'test'
MAX_CLIENT_NAME_LENGTH = 200
MAX_REVIEW_LENGTH = 5000
DEFAULT_RECENT_LIMIT = 10
MAX_RECENT_LIMIT = 50


def _log_client_action(c, client_id: str, action: str, at: Optional[str] = None) -> None:
    c.execute(
        'INSERT INTO client_actions (client_id, action, created_at) VALUES (?, ?, ?)',
        (client_id, action, at or utc_now()),
    )


# ===== CLIENT RECORDS =====

def add_client(
    user_id: str,
    name: Optional[str],
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    sentiment: Optional[str] = None,
    review: Optional[str] = None,
    item_description: Optional[str] = None,
) -> dict:
    name = clean_text(name, MAX_CLIENT_NAME_LENGTH)
    if not name:
        raise ApiError(400, 'MISSING_NAME')
    email = (email or '').strip() or None
    if email and not is_valid_email(email):
        raise ApiError(400, 'INVALID_EMAIL')
    sentiment = (sentiment or 'unreviewed').strip().lower()
    if sentiment not in SENTIMENTS:
        raise ApiError(400, 'INVALID_SENTIMENT')
    review = clean_text(review, MAX_REVIEW_LENGTH) or None

    client_id = str(uuid.uuid4())
    now = utc_now()
    conn = db_connect()
    c = conn.cursor()
    try:
        c.execute(
            '''
            INSERT INTO clients (
                id, user_id, name, email, phone_number, sentiment, review, item_description,
                review_submitted, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            (
                client_id,
                user_id,
                name,
                email,
                (phone_number or '').strip() or None,
                sentiment,
                review,
                clean_text(item_description) or None,
                1 if sentiment != 'unreviewed' else 0,
                now,
                now,
            ),
        )
        if review:
            happy = {'good': 1, 'bad': 0}.get(sentiment)
            c.execute(
                '''
                INSERT INTO reviews (id, client_id, user_id, review, is_primary, happy, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'internal', ?, ?, ?)
                ''',
                (str(uuid.uuid4()), client_id, user_id, review, happy, now, now),
            )
        _log_client_action(c, client_id, 'client_added', now)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    logger.info("Client added: user=%s client=%s", user_id, client_id)
    return {
        'id': client_id,
        'name': name,
        'email': email,
        'sentiment': sentiment,
        'review': review,
        'created_at': now,
    }


def list_clients(user_id: str) -> list[dict]:
    """Clients with their derived engagement stage, newest first."""
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT
            cl.id,
            cl.name,
            cl.email,
            cl.phone_number,
            cl.sentiment,
            cl.email_sent,
            cl.review_clicked,
            cl.review_submitted,
            cl.invoice_status,
            cl.created_at,
            (SELECT MAX(created_at) FROM client_actions
              WHERE client_id = cl.id AND action = 'email_sent'),
            (SELECT MAX(created_at) FROM client_actions
              WHERE client_id = cl.id AND action = 'link_clicked'),
            (SELECT CASE WHEN r.is_primary = 'google'
                         THEN NULLIF(TRIM(r.google_review), '')
                         ELSE NULLIF(TRIM(r.review), '') END
               FROM reviews r
              WHERE r.client_id = cl.id
                AND (CASE WHEN r.is_primary = 'google'
                          THEN NULLIF(TRIM(r.google_review), '')
                          ELSE NULLIF(TRIM(r.review), '') END) IS NOT NULL
              ORDER BY COALESCE(r.updated_at, r.created_at) DESC
              LIMIT 1),
            (SELECT COALESCE(r.updated_at, r.created_at)
               FROM reviews r
              WHERE r.client_id = cl.id
              ORDER BY COALESCE(r.updated_at, r.created_at) DESC
              LIMIT 1),
            cl.review,
            cl.item_description
        FROM clients cl
        WHERE cl.user_id = ?
        ORDER BY cl.created_at DESC, cl.id DESC
        ''',
        (user_id,),
    )
    rows = c.fetchall()
    conn.close()

    clients = []
    for row in rows:
        sentiment = row[4]
        reviewed = sentiment != 'unreviewed'
        email_last_sent_at = row[10]
        click_at = row[11]
        review_text = (row[12] or row[14]) if reviewed else None
        review_at = row[13] if reviewed else None

        if reviewed:
            stage, stage_at = 'review_submitted', review_at
        elif click_at:
            stage, stage_at = 'button_clicked', click_at
        elif email_last_sent_at:
            stage, stage_at = 'email_sent', email_last_sent_at
        else:
            stage, stage_at = 'no_email_sent', None

        clients.append({
            'id': row[0],
            'name': row[1],
            'email': row[2],
            'phone_number': row[3],
            'sentiment': sentiment,
            'review': review_text,
            'email_sent': bool(row[5]),
            'review_clicked': bool(row[6]),
            'review_submitted': bool(row[7]),
            'invoice_status': row[8],
            'item_description': row[15],
            'added_at': row[9],
            'email_last_sent_at': email_last_sent_at,
            'click_at': click_at,
            'review_submitted_at': review_at,
            'stage': stage,
            'stage_at': stage_at,
        })
    return clients


def client_item_description(user_id: str, client_id: str) -> Optional[str]:
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT item_description FROM clients WHERE id = ? AND user_id = ?', (client_id, user_id))
    row = c.fetchone()
    conn.close()
    return row[0] if row else None


def statistics(user_id: str) -> dict:
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT sentiment, COUNT(*) FROM clients WHERE user_id = ? GROUP BY sentiment', (user_id,))
    counts = dict(c.fetchall())
    conn.close()
    return {
        'good': counts.get('good', 0),
        'bad': counts.get('bad', 0),
        'not_reviewed_yet': counts.get('unreviewed', 0),
    }


def _sentiment_from_stars(stars) -> Optional[bool]:
    if stars is None:
        return None
    if stars >= 4:
        return True
    if stars <= 2:
        return False
    return None


def recent_reviews(user_id: str, limit=None) -> list[dict]:
    """Latest internal reviews merged with Google reviews not yet linked to a client."""
    try:
        limit = int(limit) if limit not in (None, '') else DEFAULT_RECENT_LIMIT
    except (TypeError, ValueError):
        limit = DEFAULT_RECENT_LIMIT
    limit = min(max(limit, 1), MAX_RECENT_LIMIT)

    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT id, source, name, text, happy, stars, ts FROM (
            SELECT r.id AS id, 'internal' AS source, cl.name AS name,
                   CASE WHEN r.is_primary = 'google' THEN r.google_review ELSE r.review END AS text,
                   r.happy AS happy, r.stars AS stars, COALESCE(r.updated_at, r.created_at) AS ts
            FROM reviews r
            LEFT JOIN clients cl ON cl.id = r.client_id
            WHERE r.user_id = ?
            UNION ALL
            SELECT g.id, 'google', g.reviewer_name, g.review, NULL, g.stars,
                   COALESCE(g.updated_at, g.created_at) AS ts
            FROM google_reviews g
            WHERE g.user_id = ? AND g.linked = 0
        )
        WHERE NULLIF(TRIM(text), '') IS NOT NULL
        ORDER BY ts DESC
        LIMIT ?
        ''',
        (user_id, user_id, limit),
    )
    rows = c.fetchall()
    conn.close()

    reviews = []
    for row in rows:
        if not (row[3] or '').strip():
            continue
        happy = bool(row[4]) if row[4] is not None else _sentiment_from_stars(row[5])
        reviews.append({
            'id': row[0],
            'source': row[1],
            'name': row[2],
            'review': row[3],
            'happy': happy,
            'stars': row[5],
            'created_at': row[6],
        })
    return reviews


# ===== REVIEW LINK TRACKING =====

def mark_clicked(client_id: str) -> dict:
    if not client_id:
        raise ApiError(400, 'MISSING_CLIENT_ID')
    conn = db_connect()
    c = conn.cursor()
    try:
        c.execute('SELECT email_sent, review_clicked, review_submitted FROM clients WHERE id = ?', (client_id,))
        row = c.fetchone()
        if not row:
            raise ApiError(404, 'CLIENT_NOT_FOUND')
        email_sent, review_clicked, review_submitted = row
        if not email_sent:
            raise ApiError(403, 'EMAIL_NOT_SENT')
        if review_submitted:
            raise ApiError(403, 'REVIEW_ALREADY_SUBMITTED')
        if review_clicked:
            return {'ok': True, 'already': True}

        now = utc_now()
        c.execute(
            '''
            UPDATE clients
            SET review_clicked = 1, updated_at = ?
            WHERE id = ? AND email_sent = 1 AND review_submitted = 0 AND review_clicked = 0
            ''',
            (now, client_id),
        )
        if c.rowcount == 0:
            return {'ok': True, 'already': True}
        _log_client_action(c, client_id, 'link_clicked', now)
        conn.commit()
    finally:
        conn.close()
    return {'ok': True, 'updated': True}


def submit_review(client_id: str, user_id: str, review_type: str, review: str) -> dict:
    if not client_id:
        raise ApiError(400, 'clientId is required')
    if not user_id:
        raise ApiError(400, 'userId is required')
    if review_type not in REVIEW_TYPES:
        raise ApiError(400, "reviewType must be 'good' or 'bad'")
    review = clean_text(review, MAX_REVIEW_LENGTH)
    if not review:
        raise ApiError(400, 'review text is required')

    conn = db_connect()
    c = conn.cursor()
    try:
        c.execute('SELECT review_submitted FROM clients WHERE id = ? AND user_id = ?', (client_id, user_id))
        row = c.fetchone()
        if not row:
            raise ApiError(404, 'Client not found for user')
        if row[0]:
            raise ApiError(409, 'REVIEW_ALREADY_SUBMITTED')

        happy = 1 if review_type == 'good' else 0
        now = utc_now()
        c.execute(
            '''
            SELECT id FROM reviews
            WHERE client_id = ? AND user_id = ?
            ORDER BY COALESCE(updated_at, created_at) DESC, id DESC
            LIMIT 1
            ''',
            (client_id, user_id),
        )
        existing = c.fetchone()
        if existing:
            c.execute(
                '''
                UPDATE reviews
                SET review = ?, happy = ?, is_primary = 'internal', updated_at = ?
                WHERE id = ?
                ''',
                (review, happy, now, existing[0]),
            )
        else:
            c.execute(
                '''
                INSERT INTO reviews (id, client_id, user_id, review, is_primary, happy, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'internal', ?, ?, ?)
                ''',
                (str(uuid.uuid4()), client_id, user_id, review, happy, now, now),
            )
        c.execute(
            '''
            UPDATE clients
            SET sentiment = ?, review = ?, review_submitted = 1, updated_at = ?
            WHERE id = ? AND user_id = ? AND review_submitted = 0
            ''',
            (review_type, review, now, client_id, user_id),
        )
        _log_client_action(c, client_id, 'review_submitted', now)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    logger.info("Review submitted: user=%s client=%s type=%s", user_id, client_id, review_type)
    return {'ok': True}


# ===== REVIEW REQUEST EMAILS =====

def _sender_profile(user_id: str) -> dict:
    profile = get_profile(user_id)
    if not profile:
        raise ApiError(404, 'USER_NOT_FOUND')
    return profile


def _mark_email_sent(client_id: str, only_first: bool) -> None:
    now = utc_now()
    conn = db_connect()
    c = conn.cursor()
    if only_first:
        c.execute(
            'UPDATE clients SET email_sent = 1, email_last_sent_at = ?, updated_at = ? WHERE id = ? AND email_sent = 0',
            (now, now, client_id),
        )
    else:
        c.execute(
            'UPDATE clients SET email_sent = 1, email_last_sent_at = ?, updated_at = ? WHERE id = ?',
            (now, now, client_id),
        )
    if c.rowcount:
        _log_client_action(c, client_id, 'email_sent', now)
    conn.commit()
    conn.close()


def _send_to(profile: dict, client_id: str, to_email: str, recipient_name: str) -> bool:
    return email_service.send_review_request_email(
        to_email,
        client_id=client_id,
        user_id=profile['auth_id'],
        recipient_name=recipient_name,
        sender_name=profile['display_name'] or profile['name'],
        subject_template=profile['email_subject'],
        body_template=profile['email_body'],
        reply_to=profile['business_email'] or profile['email'],
    )


def send_review_email(user_id: str, client_id: str) -> dict:
    """Send one review request. ``client_id == 'test'`` sends a preview to the sender."""
    if not client_id:
        raise ApiError(400, 'MISSING_CLIENT_ID')
    profile = _sender_profile(user_id)

    if client_id == TEST_CLIENT_ID:
        to_email = profile['email']
        if not to_email:
            raise ApiError(400, 'SENDER_HAS_NO_EMAIL')
        recipient_name = profile['display_name'] or 'Test Recipient'
    else:
        conn = db_connect()
        c = conn.cursor()
        c.execute('SELECT name, email FROM clients WHERE id = ? AND user_id = ?', (client_id, user_id))
        row = c.fetchone()
        conn.close()
        if not row:
            raise ApiError(404, 'CLIENT_NOT_FOUND')
        recipient_name, to_email = row
        if not to_email:
            raise ApiError(400, 'CLIENT_HAS_NO_EMAIL')

    if not _send_to(profile, client_id, to_email, recipient_name):
        raise ApiError(502, 'EMAIL_SEND_FAILED')

    if client_id != TEST_CLIENT_ID:
        _mark_email_sent(client_id, only_first=True)
    return {'success': True, 'clientId': client_id, 'to': to_email, 'tester': client_id == TEST_CLIENT_ID}


def send_bulk_emails(user_id: str, client_ids) -> dict:
    if not isinstance(client_ids, list) or not client_ids:
        raise ApiError(400, 'MISSING_CLIENT_IDS')
    client_ids = list(dict.fromkeys(str(cid) for cid in client_ids if cid))
    if not client_ids:
        raise ApiError(400, 'MISSING_CLIENT_IDS')
    profile = _sender_profile(user_id)

    conn = db_connect()
    c = conn.cursor()
    placeholders = ', '.join('?' for _ in client_ids)
    c.execute(
        f'SELECT id, name, email FROM clients WHERE user_id = ? AND id IN ({placeholders})',
        (user_id, *client_ids),
    )
    found = {row[0]: row for row in c.fetchall()}
    conn.close()

    missing = [cid for cid in client_ids if cid not in found]
    app = current_app._get_current_object()

    def send_one(client_id):
        _, name, email = found[client_id]
        if not email:
            return client_id, email, 'CLIENT_HAS_NO_EMAIL'
        with app.app_context():
            try:
                delivered = _send_to(profile, client_id, email, name)
            except Exception:  # noqa: BLE001
                logger.exception("Bulk send failed for client=%s", client_id)
                delivered = False
            if not delivered:
                return client_id, email, 'EMAIL_SEND_FAILED'
            try:
                _mark_email_sent(client_id, only_first=False)
            except Exception:  # noqa: BLE001
                logger.exception("Email sent but flags not updated for client=%s", client_id)
        return client_id, email, None

    sent = []
    failed = []
    targets = [cid for cid in client_ids if cid in found]
    workers = max(1, current_app.config.get('BULK_EMAIL_CONCURRENCY', 5))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for client_id, email, error in pool.map(send_one, targets):
            if error:
                failed.append({'clientId': client_id, 'error': error})
            else:
                sent.append({'clientId': client_id, 'email': email})

    logger.info("Bulk send finished: user=%s sent=%s failed=%s missing=%s", user_id, len(sent), len(failed), len(missing))
    return {'success': True, 'sent': sent, 'failed': failed, 'missing': missing}
