"""Engagement metrics and review charts for the dashboard."""

from __future__ import annotations

from database import db_connect, parse_ts
from services import review_writer
from validators import clean_text

SUMMARY_REVIEW_LIMIT = 500


def email_analytics(user_id: str) -> dict:
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT
            COUNT(*),
            COALESCE(SUM(CASE WHEN email_sent = 1 THEN 1 ELSE 0 END), 0),
            COALESCE(SUM(CASE WHEN review_clicked = 1 THEN 1 ELSE 0 END), 0),
            COALESCE(SUM(CASE WHEN review_submitted = 1 THEN 1 ELSE 0 END), 0)
        FROM clients
        WHERE user_id = ?
        ''',
        (user_id,),
    )
    total, sent, clicked, submitted = c.fetchone()
    conn.close()
    return {
        'success': True,
        'userId': user_id,
        'totalClients': total,
        'metrics': {
            'emailSent': sent,
            'reviewClicked': clicked,
            'reviewSubmitted': submitted,
        },
    }


def avg_email_to_click(user_id: str) -> dict:
    """Mean delay between each client's latest email and the first click after it."""
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT s.client_id, s.sent_at, MIN(ca.created_at)
        FROM (
            SELECT ca.client_id, MAX(ca.created_at) AS sent_at
            FROM client_actions ca
            JOIN clients cl ON cl.id = ca.client_id
            WHERE cl.user_id = ? AND ca.action = 'email_sent'
            GROUP BY ca.client_id
        ) s
        JOIN client_actions ca
          ON ca.client_id = s.client_id
         AND ca.action = 'link_clicked'
         AND ca.created_at >= s.sent_at
        GROUP BY s.client_id, s.sent_at
        ''',
        (user_id,),
    )
    rows = c.fetchall()
    conn.close()

    diffs = [(parse_ts(click_at) - parse_ts(sent_at)).total_seconds() for _, sent_at, click_at in rows]
    avg_seconds = sum(diffs) / len(diffs) if diffs else None
    return {
        'success': True,
        'userId': user_id,
        'consideredClients': len(diffs),
        'avgSeconds': avg_seconds,
        'avgMinutes': None if avg_seconds is None else avg_seconds / 60,
        'avgHours': None if avg_seconds is None else avg_seconds / 3600,
    }


def graph_points(user_id: str) -> dict:
    """Daily good/bad counts as [date, good, bad] points."""
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT day, SUM(good), SUM(bad) FROM (
            SELECT SUBSTR(created_at, 1, 10) AS day,
                   CASE WHEN happy = 1 THEN 1 ELSE 0 END AS good,
                   CASE WHEN happy = 0 THEN 1 ELSE 0 END AS bad
            FROM reviews
            WHERE user_id = ?
            UNION ALL
            SELECT SUBSTR(created_at, 1, 10),
                   CASE WHEN stars IS NOT NULL AND stars >= 3 THEN 1 ELSE 0 END,
                   CASE WHEN stars IS NOT NULL AND stars < 3 THEN 1 ELSE 0 END
            FROM google_reviews
            WHERE user_id = ? AND linked = 0
        )
        GROUP BY day
        ORDER BY day
        ''',
        (user_id, user_id),
    )
    points = [[row[0], row[1], row[2]] for row in c.fetchall()]
    conn.close()
    return {'success': True, 'userId': user_id, 'points': points}


def review_summary(user_id: str, positive: bool = True) -> dict:
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT review FROM clients
        WHERE user_id = ? AND sentiment = ? AND review IS NOT NULL AND LENGTH(TRIM(review)) > 0
        ORDER BY COALESCE(updated_at, created_at) DESC
        LIMIT ?
        ''',
        (user_id, 'good' if positive else 'bad', SUMMARY_REVIEW_LIMIT),
    )
    reviews = review_writer.dedupe_keep_first(
        [text for text in (clean_text(row[0]) for row in c.fetchall()) if text]
    )
    conn.close()
    if not reviews:
        return {'success': True, 'userId': user_id, 'count': 0, 'phrases': []}
    return {
        'success': True,
        'userId': user_id,
        'count': len(reviews),
        'phrases': review_writer.summarise_reviews(reviews, positive=positive),
    }
