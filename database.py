"""
SQLite storage for Review Remind: connection helper, schema and timestamp helpers.
"""

import sqlite3
from datetime import datetime, timezone

from flask import current_app

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'

RESERVED_SLUGS = (
    'admin',
    'api',
    'dashboard',
    'health',
    'help',
    'link-xero',
    'log-in',
    'login',
    'logout',
    'metrics',
    'onboarding-flow',
    'profile',
    'settings',
    'sign-up',
    'static',
    'submit-review',
)


def db_connect():
    conn = sqlite3.connect(current_app.config['DATABASE_PATH'])
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def utc_now():
    """Current UTC time as a sortable ISO string."""
    return format_ts(datetime.now(timezone.utc))


def format_ts(dt):
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value):
    if not value:
        return None
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed


# ===== DATABASE INITIALIZATION =====

def init_db():
    """Create tables, indexes and reserved slugs."""
    conn = db_connect()
    c = conn.cursor()

    # Login identities
    c.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    ''')

    # OAuth provider linkage (google)
    c.execute('''
        CREATE TABLE IF NOT EXISTS account (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            provider_id TEXT NOT NULL,
            account_id TEXT,
            access_token TEXT,
            refresh_token TEXT,
            access_token_expires_at TEXT,
            scope TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, provider_id),
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    ''')

    # Tenant profile
    c.execute('''
        CREATE TABLE IF NOT EXISTS myusers (
            auth_id TEXT PRIMARY KEY,
            name TEXT UNIQUE NOT NULL,
            display_name TEXT,
            email TEXT,
            business_email TEXT,
            google_business_link TEXT,
            google_review_link TEXT,
            description TEXT,
            company_logo_path TEXT,
            email_subject TEXT,
            email_body TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (auth_id) REFERENCES users(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS reserved_slugs (
            slug TEXT PRIMARY KEY
        )
    ''')

    # Append-only onboarding events
    c.execute('''
        CREATE TABLE IF NOT EXISTS user_actions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            action TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS clients (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            email TEXT,
            phone_number TEXT,
            sentiment TEXT NOT NULL DEFAULT 'unreviewed'
                CHECK (sentiment IN ('good', 'bad', 'unreviewed')),
            review TEXT,
            item_description TEXT,
            invoice_status TEXT,
            xero_contact_id TEXT,
            email_sent INTEGER NOT NULL DEFAULT 0,
            review_clicked INTEGER NOT NULL DEFAULT 0,
            review_submitted INTEGER NOT NULL DEFAULT 0,
            email_last_sent_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            UNIQUE (user_id, xero_contact_id)
        )
    ''')

    # Append-only client events
    c.execute('''
        CREATE TABLE IF NOT EXISTS client_actions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id TEXT NOT NULL,
            action TEXT NOT NULL
                CHECK (action IN ('client_added', 'email_sent', 'link_clicked', 'review_submitted')),
            created_at TEXT NOT NULL,
            FOREIGN KEY (client_id) REFERENCES clients(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS reviews (
            id TEXT PRIMARY KEY,
            client_id TEXT,
            user_id TEXT NOT NULL,
            review TEXT,
            google_review TEXT,
            is_primary TEXT NOT NULL DEFAULT 'internal'
                CHECK (is_primary IN ('internal', 'google')),
            happy INTEGER,
            stars INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            FOREIGN KEY (client_id) REFERENCES clients(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS google_reviews (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            reviewer_name TEXT,
            review TEXT,
            stars INTEGER,
            linked INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS phrases (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            phrase TEXT NOT NULL,
            sentiment TEXT CHECK (sentiment IN ('good', 'bad')),
            counts INTEGER NOT NULL DEFAULT 0,
            good_count INTEGER NOT NULL DEFAULT 0,
            bad_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS excerpts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phrase_id TEXT NOT NULL,
            review_id TEXT,
            excerpt TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (phrase_id) REFERENCES phrases(id)
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS xero_details (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            auth_id TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            tenant_name TEXT,
            tenant_type TEXT,
            access_token TEXT,
            refresh_token TEXT,
            access_token_expires_at TEXT,
            scope TEXT,
            is_connected INTEGER NOT NULL DEFAULT 1,
            is_primary INTEGER NOT NULL DEFAULT 0,
            last_refreshed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            UNIQUE (auth_id, tenant_id)
        )
    ''')

    # Performance indexes
    c.execute('CREATE INDEX IF NOT EXISTS idx_user_actions_user ON user_actions(user_id, action)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_clients_user ON clients(user_id, created_at)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_client_actions_client ON client_actions(client_id, action)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_reviews_client ON reviews(client_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_reviews_user ON reviews(user_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_google_reviews_user ON google_reviews(user_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_phrases_user ON phrases(user_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_xero_details_auth ON xero_details(auth_id)')

    c.executemany(
        'INSERT OR IGNORE INTO reserved_slugs (slug) VALUES (?)',
        [(slug,) for slug in RESERVED_SLUGS],
    )

    conn.commit()
    conn.close()
