"""Input validation and normalisation helpers shared by pages and API routes."""

import re
import unicodedata
from email.utils import parseaddr
from urllib.parse import urlparse

import bleach

EMAIL_REGEX = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
GOOGLE_LINK_HOSTS = (
    'google.com',
    'business.google.com',
    'g.page',
    'maps.app.goo.gl',
    'maps.google.com',
)
ITEM_SPLIT_REGEX = re.compile(r'[|,;\n]+')
MAX_ITEMS = 15
MAX_ITEM_LENGTH = 120


def is_valid_email(email):
    if not email:
        return False
    _, parsed = parseaddr(email)
    return bool(parsed and EMAIL_REGEX.match(parsed) and len(parsed) <= 254)


def validate_password_strength(password):
    if not password or len(password) < 8:
        return False, 'Password must be at least 8 characters long.'
    if not re.search(r'[A-Z]', password):
        return False, 'Password must include at least one uppercase letter.'
    if not re.search(r'[a-z]', password):
        return False, 'Password must include at least one lowercase letter.'
    if not re.search(r'\d', password):
        return False, 'Password must include at least one number.'
    return True, ''


def clean_text(value, max_length=None):
    """Strip markup and surrounding whitespace from user supplied text."""
    cleaned = bleach.clean(value or '', tags=[], strip=True).strip()
    if max_length is not None:
        cleaned = cleaned[:max_length]
    return cleaned


def slugify(value, max_len=60):
    """URL-safe slug: ascii, lowercase, dash separated, at most max_len chars."""
    normalized = unicodedata.normalize('NFKD', value or '')
    ascii_only = ''.join(ch for ch in normalized if not unicodedata.combining(ch))
    slug = re.sub(r'[^a-z0-9]+', '-', ascii_only.lower())
    slug = re.sub(r'-{2,}', '-', slug.strip('-'))
    return slug[:max_len].strip('-')


def email_local_part(email):
    return (email or '').split('@', 1)[0]


def looks_like_google_business_link(url):
    """Empty is acceptable; otherwise an http(s) URL on a Google maps/business host."""
    if not url:
        return True
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    return any(candidate in host for candidate in GOOGLE_LINK_HOSTS)


def normalise_items(raw):
    """Split an item description into distinct short items.

    Splits on pipes, commas, semicolons and newlines, drops case-insensitive
    duplicates and keeps at most MAX_ITEMS entries of MAX_ITEM_LENGTH chars.
    """
    items = []
    seen = set()
    for part in ITEM_SPLIT_REGEX.split(raw or ''):
        item = part.strip()[:MAX_ITEM_LENGTH].strip()
        if not item or item.lower() in seen:
            continue
        seen.add(item.lower())
        items.append(item)
        if len(items) >= MAX_ITEMS:
            break
    return items
