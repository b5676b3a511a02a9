"""Login identities and tenant profiles (myusers)."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Optional

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from database import db_connect, utc_now
from errors import ApiError
from onboarding import record_action
from services.email_service import DEFAULT_BODY, DEFAULT_SUBJECT
from validators import (
    clean_text,
    email_local_part,
    is_valid_email,
    looks_like_google_business_link,
    slugify,
    validate_password_strength,
)

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 4000
MAX_SUBJECT_LENGTH = 200
MAX_BODY_LENGTH = 8000

PROFILE_COLUMNS = (
    'auth_id', 'name', 'display_name', 'email', 'business_email', 'google_business_link',
    'google_review_link', 'description', 'company_logo_path', 'email_subject', 'email_body',
    'created_at',
)


# ===== USER CLASS FOR FLASK-LOGIN =====

class User(UserMixin):
    def __init__(self, id, name=None, email=None, slug=None, display_name=None):
        self.id = id
        self.name = name
        self.email = email
        # Tenant fields, empty until onboarding creates the myusers row
        self.slug = slug
        self.display_name = display_name

    @property
    def has_tenant(self):
        return bool(self.slug)


def load_user(user_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT u.id, u.name, u.email, m.name, m.display_name
        FROM users u
        LEFT JOIN myusers m ON m.auth_id = u.id
        WHERE u.id = ?
        ''',
        (user_id,),
    )
    row = c.fetchone()
    conn.close()
    if row:
        return User(id=row[0], name=row[1], email=row[2], slug=row[3], display_name=row[4])
    return None


# ===== LOGIN IDENTITIES =====

def create_login_user(name: str, email: str, password: str) -> str:
    name = clean_text(name, MAX_NAME_LENGTH)
    email = (email or '').strip().lower()
    if not name or not email or not password:
        raise ApiError(400, 'MISSING_FIELDS')
    if not is_valid_email(email):
        raise ApiError(400, 'INVALID_EMAIL')
    ok_password, password_msg = validate_password_strength(password)
    if not ok_password:
        raise ApiError(400, 'WEAK_PASSWORD', message=password_msg)

    user_id = str(uuid.uuid4())
    conn = db_connect()
    c = conn.cursor()
    try:
        c.execute(
            'INSERT INTO users (id, name, email, password_hash, created_at) VALUES (?, ?, ?, ?, ?)',
            (user_id, name, email, generate_password_hash(password), utc_now()),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        raise ApiError(409, 'EMAIL_TAKEN', message='An account with that email already exists.')
    finally:
        conn.close()
    logger.info("User signed up: id=%s", user_id)
    return user_id


def authenticate(email: str, password: str) -> Optional[str]:
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT id, password_hash FROM users WHERE email = ?', ((email or '').strip().lower(),))
    row = c.fetchone()
    conn.close()
    if row and check_password_hash(row[1], password or ''):
        return row[0]
    return None


def get_name(user_id: str) -> dict:
    if not user_id:
        raise ApiError(400, 'MISSING_FIELDS')
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT name, display_name FROM myusers WHERE auth_id = ?', (user_id,))
    row = c.fetchone()
    if row:
        conn.close()
        return {
            'success': True,
            'user': {'name': row[0], 'display_name': row[1]},
            'missingMyuser': False,
            'source': 'myusers',
        }
    c.execute('SELECT id FROM users WHERE id = ?', (user_id,))
    row = c.fetchone()
    conn.close()
    if row:
        return {'success': True, 'user': {'id': row[0]}, 'missingMyuser': True, 'source': 'users'}
    raise ApiError(404, 'USER_NOT_FOUND')


# ===== SLUGS =====

def is_slug_taken(c, slug: str, exclude_user: Optional[str] = None) -> bool:
    c.execute('SELECT EXISTS (SELECT 1 FROM reserved_slugs WHERE slug = ?)', (slug,))
    if c.fetchone()[0]:
        return True
    if exclude_user:
        c.execute('SELECT EXISTS (SELECT 1 FROM myusers WHERE name = ? AND auth_id <> ?)', (slug, exclude_user))
    else:
        c.execute('SELECT EXISTS (SELECT 1 FROM myusers WHERE name = ?)', (slug,))
    return bool(c.fetchone()[0])


def name_availability(name: str, email: Optional[str] = None) -> dict:
    if not (name or '').strip():
        raise ApiError(400, 'MISSING_NAME')
    slug = slugify(name) or slugify(email_local_part(email)) or 'user'
    conn = db_connect()
    c = conn.cursor()
    taken = is_slug_taken(c, slug)
    conn.close()
    if taken:
        raise ApiError(
            409,
            'NAME_TAKEN',
            message='That business name is already taken. Try another.',
            available=False,
            slug=slug,
        )
    return {'available': True, 'slug': slug}


def _profile_row(c, user_id: str) -> Optional[dict]:
    c.execute(f'SELECT {", ".join(PROFILE_COLUMNS)} FROM myusers WHERE auth_id = ?', (user_id,))
    row = c.fetchone()
    return dict(zip(PROFILE_COLUMNS, row)) if row else None


def get_profile(user_id: str) -> Optional[dict]:
    conn = db_connect()
    c = conn.cursor()
    profile = _profile_row(c, user_id)
    conn.close()
    return profile


def _public_user(profile: dict) -> dict:
    return {
        'auth_id': profile['auth_id'],
        'name': profile['name'],
        'display_name': profile['display_name'],
        'email': profile['email'],
    }


def update_slug(user_id: str, new_name: str) -> dict:
    if not user_id or not (new_name or '').strip():
        raise ApiError(400, 'MISSING_FIELDS')
    slug = slugify(new_name)
    if not slug:
        raise ApiError(400, 'INVALID_SLUG')

    conn = db_connect()
    c = conn.cursor()
    try:
        profile = _profile_row(c, user_id)
        if not profile:
            raise ApiError(404, 'USER_NOT_FOUND')
        if profile['name'] == slug:
            return {'success': True, 'user': _public_user(profile), 'unchanged': True}
        if is_slug_taken(c, slug, exclude_user=user_id):
            raise ApiError(409, 'NAME_TAKEN', slug=slug)
        try:
            c.execute('UPDATE myusers SET name = ? WHERE auth_id = ?', (slug, user_id))
            conn.commit()
        except sqlite3.IntegrityError:
            raise ApiError(409, 'NAME_TAKEN', slug=slug)
        profile['name'] = slug
        logger.info("Slug updated: user=%s slug=%s", user_id, slug)
        return {'success': True, 'user': _public_user(profile)}
    finally:
        conn.close()


# ===== TENANT PROFILE =====

def create_tenant(
    user_id: str,
    email: str,
    business_name: str,
    business_email: Optional[str] = None,
    google_business_link: Optional[str] = None,
    google_review_link: Optional[str] = None,
    description: Optional[str] = None,
) -> dict:
    """Create the myusers row that finishes onboarding, then record the step."""
    email = (email or '').strip()
    business_name = clean_text(business_name, MAX_NAME_LENGTH)
    business_email = (business_email or '').strip() or None
    google_business_link = (google_business_link or '').strip() or None

    if not user_id or not email or not business_name:
        raise ApiError(400, 'MISSING_FIELDS')
    if not is_valid_email(email):
        raise ApiError(400, 'INVALID_EMAIL')
    if business_email and not is_valid_email(business_email):
        raise ApiError(400, 'INVALID_BUSINESS_EMAIL')
    if not looks_like_google_business_link(google_business_link):
        raise ApiError(400, 'INVALID_GOOGLE_LINK')

    slug = slugify(business_name) or slugify(email_local_part(email)) or f'user-{user_id[:8]}'

    conn = db_connect()
    c = conn.cursor()
    try:
        c.execute('SELECT EXISTS (SELECT 1 FROM myusers WHERE auth_id = ?)', (user_id,))
        if c.fetchone()[0]:
            raise ApiError(409, 'USER_EXISTS')
        if is_slug_taken(c, slug):
            raise ApiError(409, 'NAME_TAKEN', slug=slug)
        try:
            c.execute(
                '''
                INSERT INTO myusers (
                    auth_id, name, display_name, email, business_email, google_business_link,
                    google_review_link, description, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(auth_id) DO NOTHING
                ''',
                (
                    user_id,
                    slug,
                    business_name,
                    email,
                    business_email,
                    google_business_link,
                    (google_review_link or '').strip() or None,
                    clean_text(description, MAX_DESCRIPTION_LENGTH) or None,
                    utc_now(),
                ),
            )
        except sqlite3.IntegrityError:
            raise ApiError(409, 'NAME_TAKEN', slug=slug)
        if c.rowcount == 0:
            raise ApiError(409, 'USER_EXISTS')
        conn.commit()
        profile = _profile_row(c, user_id)
    finally:
        conn.close()

    try:
        record_action(user_id, 'finished_onboarding')
    except Exception:  # noqa: BLE001
        logger.exception("Could not record finished_onboarding for user=%s", user_id)

    logger.info("Tenant created: user=%s slug=%s", user_id, slug)
    return {
        'auth_id': profile['auth_id'],
        'name': profile['name'],
        'display_name': profile['display_name'],
        'email': profile['email'],
        'business_email': profile['business_email'],
        'google_business_link': profile['google_business_link'],
    }


def _require_profile(c, user_id: str) -> dict:
    profile = _profile_row(c, user_id)
    if not profile:
        raise ApiError(404, 'USER_NOT_FOUND')
    return profile


def update_google_link(user_id: str, link: Optional[str]) -> dict:
    link = (link or '').strip() or None
    if not looks_like_google_business_link(link):
        raise ApiError(400, 'INVALID_GOOGLE_LINK')
    conn = db_connect()
    c = conn.cursor()
    try:
        _require_profile(c, user_id)
        c.execute('UPDATE myusers SET google_business_link = ? WHERE auth_id = ?', (link, user_id))
        conn.commit()
    finally:
        conn.close()
    return {'success': True, 'googleBusinessLink': link}


def business_info(user_id: str) -> dict:
    conn = db_connect()
    c = conn.cursor()
    try:
        profile = _require_profile(c, user_id)
    finally:
        conn.close()
    return {
        'success': True,
        'description': profile['description'],
        'googleBusinessLink': profile['google_business_link'],
    }


def update_business_description(user_id: str, description: Optional[str]) -> dict:
    description = clean_text(description, MAX_DESCRIPTION_LENGTH) or None
    conn = db_connect()
    c = conn.cursor()
    try:
        _require_profile(c, user_id)
        c.execute('UPDATE myusers SET description = ? WHERE auth_id = ?', (description, user_id))
        conn.commit()
    finally:
        conn.close()
    return {'success': True, 'description': description}


def get_email(user_id: str) -> dict:
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT COALESCE(m.email, u.email)
        FROM users u
        LEFT JOIN myusers m ON m.auth_id = u.id
        WHERE u.id = ?
        ''',
        (user_id,),
    )
    row = c.fetchone()
    conn.close()
    if not row or not row[0]:
        raise ApiError(404, 'NOT_FOUND')
    return {'success': True, 'email': row[0]}


def set_logo_path(user_id: str, path: str) -> None:
    conn = db_connect()
    c = conn.cursor()
    try:
        _require_profile(c, user_id)
        c.execute('UPDATE myusers SET company_logo_path = ? WHERE auth_id = ?', (path, user_id))
        conn.commit()
    finally:
        conn.close()


def email_template(user_id: str) -> dict:
    conn = db_connect()
    c = conn.cursor()
    try:
        profile = _require_profile(c, user_id)
    finally:
        conn.close()
    return {
        'success': True,
        'subject': profile['email_subject'] or DEFAULT_SUBJECT,
        'body': profile['email_body'] or DEFAULT_BODY,
    }


def update_email_template(user_id: str, subject: Optional[str], body: Optional[str]) -> dict:
    subject = (subject or '').strip()[:MAX_SUBJECT_LENGTH]
    body = (body or '').strip()[:MAX_BODY_LENGTH]
    conn = db_connect()
    c = conn.cursor()
    try:
        _require_profile(c, user_id)
        c.execute(
            'UPDATE myusers SET email_subject = ?, email_body = ? WHERE auth_id = ?',
            (subject or None, body or None, user_id),
        )
        conn.commit()
    finally:
        conn.close()
    return {'success': True, 'subject': subject, 'body': body}
