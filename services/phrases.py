"""Per-tenant review phrases: listing, manual and generated additions, deletion."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Optional

from database import db_connect, utc_now
from errors import ApiError
from services import review_writer

logger = logging.getLogger(__name__)

MAX_PHRASE_LENGTH = 120
MAX_PAGE_SIZE = 1000
RECENT_REVIEW_LIMIT = 100
MAX_REVIEW_CHARS = 800
MAX_GENERATED = 20
MAX_COUNT = 1_000_000
SENTIMENT_RANK = {None: 0, 'good': 1, 'bad': 2}


def parse_sentiment(value) -> Optional[str]:
    value = str(value or '').strip().lower()
    return value if value in ('good', 'bad') else None


def normalise_phrase(value) -> str:
    return re.sub(r'\s+', ' ', str(value or '')).strip()[:MAX_PHRASE_LENGTH].strip()


def split_counts(sentiment: Optional[str], counts: int) -> tuple[int, int]:
    """(good_count, bad_count) for a phrase; a phrase without sentiment counts as good."""
    return (0, counts) if sentiment == 'bad' else (counts, 0)


def page(user_id: str, limit=None, cursor=None) -> dict:
    """Phrases ordered by usage, with an offset cursor for the next page."""
    limit = limit if isinstance(limit, int) and not isinstance(limit, bool) else MAX_PAGE_SIZE
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    try:
        offset = max(int(str(cursor or '0').strip()), 0)
    except ValueError:
        offset = 0

    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT id, phrase FROM phrases
        WHERE user_id = ?
        ORDER BY (good_count + bad_count) DESC, updated_at IS NULL, updated_at DESC, id DESC
        LIMIT ? OFFSET ?
        ''',
        (user_id, limit, offset),
    )
    rows = c.fetchall()
    conn.close()
    return {
        'success': True,
        'userId': user_id,
        'count': len(rows),
        'phrases': [{'id': row[0], 'phrase': (row[1] or '').strip()} for row in rows],
        'nextCursor': str(offset + len(rows)) if len(rows) == limit else None,
    }


def list_for_settings(user_id: str) -> dict:
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT id, phrase, counts, COALESCE(sentiment, 'good')
        FROM phrases
        WHERE user_id = ?
        ORDER BY counts DESC, updated_at IS NULL, updated_at DESC, id DESC
        ''',
        (user_id,),
    )
    rows = c.fetchall()
    conn.close()
    items = [
        {'phrase_id': row[0], 'phrase': row[1], 'sentiment': row[3], 'total_count': row[2]}
        for row in rows
    ]
    return {'success': True, 'userId': user_id, 'count': len(items), 'phrases': items}


def phrase_texts(user_id: str) -> list[str]:
    return [item['phrase'] for item in list_for_settings(user_id)['phrases']]


def recent_review_texts(user_id: str, limit: int = RECENT_REVIEW_LIMIT) -> list[dict]:
    """Newest internal and unlinked Google review texts, truncated for prompting."""
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT id, source, stars, text FROM (
            SELECT id AS id, 'reviews' AS source, stars AS stars,
                   TRIM(CASE WHEN is_primary = 'google' THEN google_review ELSE review END) AS text,
                   COALESCE(updated_at, created_at) AS ts
            FROM reviews
            WHERE user_id = ?
            UNION ALL
            SELECT id, 'google_reviews', stars, TRIM(review), COALESCE(updated_at, created_at)
            FROM google_reviews
            WHERE user_id = ? AND linked = 0
        )
        WHERE text IS NOT NULL AND text <> ''
        ORDER BY ts DESC
        LIMIT ?
        ''',
        (user_id, user_id, limit),
    )
    rows = c.fetchall()
    conn.close()
    return [
        {'id': row[0], 'source': row[1], 'stars': row[2], 'text': row[3][:MAX_REVIEW_CHARS]}
        for row in rows
    ]


def count_mentions(phrase: str, texts: list[str]) -> int:
    pattern = re.compile(re.escape(phrase), re.IGNORECASE)
    return sum(len(pattern.findall(text)) for text in texts)


def _existing_by_lower(c, user_id: str) -> dict:
    c.execute('SELECT id, phrase FROM phrases WHERE user_id = ?', (user_id,))
    return {row[1].lower(): row[0] for row in c.fetchall()}


def add_phrases(user_id: str, phrases) -> dict:
    """Add phrases typed by the user, counting how often each appears in recent reviews."""
    if not isinstance(phrases, list) or not phrases:
        raise ApiError(400, 'NO_PHRASES_GIVEN')

    wanted = {}
    for item in phrases:
        if isinstance(item, str):
            phrase, sentiment = normalise_phrase(item), None
        elif isinstance(item, dict):
            phrase, sentiment = normalise_phrase(item.get('phrase')), parse_sentiment(item.get('sentiment'))
        else:
            continue
        if not phrase:
            continue
        key = phrase.lower()
        previous = wanted.get(key)
        if previous is None:
            wanted[key] = {'phrase': phrase, 'sentiment': sentiment}
        elif SENTIMENT_RANK[sentiment] > SENTIMENT_RANK[previous['sentiment']]:
            previous['sentiment'] = sentiment

    if not wanted:
        raise ApiError(400, 'NO_VALID_PHRASES')

    conn = db_connect()
    c = conn.cursor()
    existing = _existing_by_lower(c, user_id)
    to_create = [item for key, item in wanted.items() if key not in existing]
    if not to_create:
        conn.close()
        return {
            'success': True,
            'userId': user_id,
            'added': 0,
            'skipped_existing': len(wanted),
            'details': [],
            'message': 'All provided phrases already exist.',
        }

    texts = [review['text'] for review in recent_review_texts(user_id)]
    now = utc_now()
    details = []
    for item in to_create:
        counts = count_mentions(item['phrase'], texts)
        phrase_id = str(uuid.uuid4())
        c.execute(
            '''
            INSERT INTO phrases (
                id, user_id, phrase, sentiment, counts, good_count, bad_count, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            (
                phrase_id, user_id, item['phrase'], item['sentiment'] or 'good', counts,
                *split_counts(item['sentiment'], counts), now, now,
            ),
        )
        details.append({
            'id': phrase_id,
            'phrase': item['phrase'],
            'sentiment': item['sentiment'] or 'good',
            'counts': counts,
        })
    conn.commit()
    conn.close()
    logger.info("Phrases added: user=%s added=%s", user_id, len(details))
    return {
        'success': True,
        'userId': user_id,
        'added': len(details),
        'skipped_existing': len(wanted) - len(details),
        'details': details,
    }


def delete_phrase(user_id: str, phrase_id) -> dict:
    phrase_id = str(phrase_id or '').strip()
    if not phrase_id:
        raise ApiError(400, 'MISSING_PHRASE_ID')
    conn = db_connect()
    c = conn.cursor()
    try:
        c.execute('SELECT id FROM phrases WHERE user_id = ? AND id = ?', (user_id, phrase_id))
        if not c.fetchone():
            raise ApiError(404, 'PHRASE_NOT_FOUND')
        c.execute('DELETE FROM excerpts WHERE phrase_id = ?', (phrase_id,))
        deleted_excerpts = c.rowcount
        c.execute('DELETE FROM phrases WHERE user_id = ? AND id = ?', (user_id, phrase_id))
        deleted_phrases = c.rowcount
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return {
        'success': True,
        'userId': user_id,
        'phraseId': phrase_id,
        'deleted_phrases': deleted_phrases,
        'deleted_excerpts': deleted_excerpts,
    }


def generate_new_phrases(user_id: str) -> dict:
    reviews = recent_review_texts(user_id)
    if not reviews:
        return {'success': True, 'message': 'No reviews found to analyze.', 'new_phrases': [], 'userId': user_id}

    merged = {}
    for item in review_writer.propose_phrases(reviews)[:MAX_GENERATED]:
        if not isinstance(item, dict):
            continue
        phrase = normalise_phrase(item.get('phrase'))
        if not phrase:
            continue
        try:
            counts = max(int(item.get('mention_count') or 0), 0)
        except (TypeError, ValueError):
            counts = 0
        key = phrase.lower()
        previous = merged.get(key)
        if previous is None:
            merged[key] = {'phrase': phrase, 'counts': counts, 'sentiment': parse_sentiment(item.get('sentiment'))}
        else:
            previous['counts'] += counts
            previous['sentiment'] = previous['sentiment'] or parse_sentiment(item.get('sentiment'))

    new_phrases = sorted(merged.values(), key=lambda p: p['counts'], reverse=True)
    return {'success': True, 'userId': user_id, 'new_phrases': new_phrases}


def add_generated_phrases(user_id: str, phrases) -> dict:
    """Upsert generated phrases by case-insensitive text."""
    if not isinstance(phrases, list) or not phrases:
        raise ApiError(400, 'NO_PHRASES_GIVEN')

    cleaned = {}
    skipped_invalid = 0
    for item in phrases:
        item = item if isinstance(item, dict) else {}
        phrase = normalise_phrase(item.get('phrase'))
        if not phrase:
            skipped_invalid += 1
            continue
        try:
            counts = int(item.get('counts') or 0)
        except (TypeError, ValueError):
            counts = 0
        counts = min(max(counts, 0), MAX_COUNT)
        sentiment = parse_sentiment(item.get('sentiment'))
        key = phrase.lower()
        previous = cleaned.get(key)
        if previous is None:
            cleaned[key] = {'phrase': phrase, 'counts': counts, 'sentiment': sentiment}
        else:
            previous['counts'] = max(previous['counts'], counts)
            previous['sentiment'] = previous['sentiment'] or sentiment

    if not cleaned:
        raise ApiError(400, 'NO_VALID_PHRASES', skippedInvalid=skipped_invalid)

    now = utc_now()
    inserted = []
    updated = []
    conn = db_connect()
    c = conn.cursor()
    try:
        existing = _existing_by_lower(c, user_id)
        for key, item in cleaned.items():
            if key in existing:
                c.execute(
                    '''
                    UPDATE phrases
                    SET counts = ?,
                        good_count = CASE WHEN COALESCE(?, sentiment) = 'bad' THEN 0 ELSE ? END,
                        bad_count = CASE WHEN COALESCE(?, sentiment) = 'bad' THEN ? ELSE 0 END,
                        sentiment = COALESCE(?, sentiment),
                        updated_at = ?
                    WHERE id = ?
                    ''',
                    (
                        item['counts'],
                        item['sentiment'], item['counts'],
                        item['sentiment'], item['counts'],
                        item['sentiment'],
                        now,
                        existing[key],
                    ),
                )
                c.execute('SELECT id, phrase, counts, sentiment FROM phrases WHERE id = ?', (existing[key],))
                updated.append(dict(zip(('id', 'phrase', 'counts', 'sentiment'), c.fetchone())))
            else:
                phrase_id = str(uuid.uuid4())
                sentiment = item['sentiment'] or 'good'
                c.execute(
                    '''
                    INSERT INTO phrases (
                        id, user_id, phrase, sentiment, counts, good_count, bad_count, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''',
                    (
                        phrase_id, user_id, item['phrase'], sentiment, item['counts'],
                        *split_counts(sentiment, item['counts']), now, now,
                    ),
                )
                inserted.append({'id': phrase_id, 'phrase': item['phrase'], 'counts': item['counts'], 'sentiment': sentiment})
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    return {
        'success': True,
        'userId': user_id,
        'inserted': inserted,
        'updated': updated,
        'skipped_invalid': skipped_invalid,
        'requested': len(cleaned),
    }
