"""Xero tenant storage and invoice/contact import into the client list."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import requests
from flask import current_app

from database import db_connect, format_ts, parse_ts, utc_now
from errors import ApiError
from services.oauth import XERO_TOKEN_URL

logger = logging.getLogger(__name__)

XERO_CONNECTIONS_URL = 'https://api.xero.com/connections'
XERO_INVOICES_URL = 'https://api.xero.com/api.xro/2.0/Invoices'
XERO_CONTACTS_URL = 'https://api.xero.com/api.xro/2.0/Contacts'
DEFAULT_SINCE = '2025-01-01'
MAX_INVOICE_PAGES = 50
CONTACT_BATCH_SIZE = 100
PHONE_PREFERENCE = ['DEFAULT', 'MOBILE', 'DDI', 'FAX']
EXPIRY_SKEW = timedelta(seconds=60)
REQUEST_TIMEOUT = 20


def _expires_at_from_token(token: dict) -> Optional[str]:
    if token.get('expires_at'):
        return format_ts(datetime.fromtimestamp(int(token['expires_at']), tz=timezone.utc))
    if token.get('expires_in'):
        return format_ts(datetime.now(timezone.utc) + timedelta(seconds=int(token['expires_in'])))
    return None


# ===== CONNECTIONS =====

def list_connections(access_token: str) -> list[dict]:
    try:
        resp = requests.get(
            XERO_CONNECTIONS_URL,
            headers={'Authorization': f'Bearer {access_token}', 'Accept': 'application/json'},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.warning("Xero connections request error: %s", exc)
        raise ApiError(502, 'XERO_REQUEST_FAILED')
    if not resp.ok:
        logger.warning("Xero connections request failed: status=%s", resp.status_code)
        raise ApiError(502, 'XERO_REQUEST_FAILED')
    return resp.json() or []


def save_connections(user_id: str, token: dict, connections: list[dict]) -> int:
    """Upsert every tenant for the user; the first becomes primary when none is yet."""
    now = utc_now()
    expires_at = _expires_at_from_token(token)
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT EXISTS (SELECT 1 FROM xero_details WHERE auth_id = ? AND is_primary = 1)', (user_id,))
    has_primary = bool(c.fetchone()[0])

    saved = 0
    for connection in connections:
        tenant_id = connection.get('tenantId')
        if not tenant_id:
            continue
        make_primary = 0 if has_primary else 1
        c.execute(
            '''
            INSERT INTO xero_details (
                auth_id, tenant_id, tenant_name, tenant_type, access_token, refresh_token,
                access_token_expires_at, scope, is_connected, is_primary, last_refreshed_at,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
            ON CONFLICT(auth_id, tenant_id) DO UPDATE SET
                tenant_name = excluded.tenant_name,
                tenant_type = excluded.tenant_type,
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                access_token_expires_at = excluded.access_token_expires_at,
                scope = excluded.scope,
                is_connected = 1,
                is_primary = MAX(xero_details.is_primary, excluded.is_primary),
                last_refreshed_at = excluded.last_refreshed_at,
                updated_at = excluded.updated_at
            ''',
            (
                user_id,
                tenant_id,
                connection.get('tenantName'),
                connection.get('tenantType'),
                token.get('access_token'),
                token.get('refresh_token'),
                expires_at,
                token.get('scope'),
                make_primary,
                now,
                now,
                now,
            ),
        )
        has_primary = True
        saved += 1

    conn.commit()
    conn.close()
    logger.info("Xero tenants saved: user=%s count=%s", user_id, saved)
    return saved


def connection_status(user_id: str) -> dict:
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT COUNT(*) FROM xero_details WHERE auth_id = ? AND is_connected = 1', (user_id,))
    count = c.fetchone()[0]
    conn.close()
    return {'connected': count > 0, 'tenantCount': count}


def primary_business(user_id: str) -> dict:
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT tenant_name FROM xero_details
        WHERE auth_id = ? AND is_primary = 1
        ORDER BY updated_at DESC
        LIMIT 1
        ''',
        (user_id,),
    )
    row = c.fetchone()
    conn.close()
    if not row:
        return {'tenantName': None, 'message': 'No primary Xero business found for this user.'}
    return {'tenantName': row[0]}


def list_businesses(user_id: str) -> list[dict]:
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT tenant_name, MAX(is_primary)
        FROM xero_details
        WHERE auth_id = ? AND tenant_name IS NOT NULL
        GROUP BY tenant_name
        ORDER BY MAX(is_primary) DESC, tenant_name
        ''',
        (user_id,),
    )
    rows = c.fetchall()
    conn.close()
    return [{'tenantName': row[0], 'isPrimary': bool(row[1])} for row in rows]


# ===== TOKENS =====

def _load_tenant(user_id: str) -> Optional[dict]:
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT id, tenant_id, access_token, refresh_token, access_token_expires_at
        FROM xero_details
        WHERE auth_id = ? AND is_connected = 1
        ORDER BY is_primary DESC, last_refreshed_at DESC, created_at DESC
        LIMIT 1
        ''',
        (user_id,),
    )
    row = c.fetchone()
    conn.close()
    if not row:
        return None
    return {
        'id': row[0],
        'tenant_id': row[1],
        'access_token': row[2],
        'refresh_token': row[3],
        'expires_at': row[4],
    }


def _is_expired(expires_at: Optional[str]) -> bool:
    parsed = parse_ts(expires_at)
    return parsed is None or datetime.now(timezone.utc) + EXPIRY_SKEW >= parsed


def _refresh(tenant: dict) -> str:
    try:
        resp = requests.post(
            XERO_TOKEN_URL,
            data={
                'grant_type': 'refresh_token',
                'refresh_token': tenant['refresh_token'],
                'client_id': current_app.config.get('XERO_CLIENT_ID'),
                'client_secret': current_app.config.get('XERO_CLIENT_SECRET'),
            },
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.warning("Xero token refresh error: %s", exc)
        raise ApiError(502, 'XERO_REQUEST_FAILED', message='Xero token refresh failed')
    if not resp.ok:
        logger.warning("Xero token refresh failed: status=%s", resp.status_code)
        raise ApiError(502, 'XERO_REQUEST_FAILED', message='Xero token refresh failed')
    data = resp.json()
    now = utc_now()
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        UPDATE xero_details
        SET access_token = ?, refresh_token = ?, access_token_expires_at = ?,
            last_refreshed_at = ?, updated_at = ?
        WHERE id = ?
        ''',
        (data['access_token'], data.get('refresh_token'), _expires_at_from_token(data), now, now, tenant['id']),
    )
    conn.commit()
    conn.close()
    return data['access_token']


# ===== CLIENT IMPORT =====

def build_since_where(since: Optional[str]) -> tuple[str, str]:
    """Xero ``where`` filter and normalised ISO date for the given start date."""
    since = (since or '').strip() or DEFAULT_SINCE
    try:
        day = date.fromisoformat(since[:10])
    except ValueError:
        raise ApiError(400, 'INVALID_SINCE', message='Invalid since date. Use ISO format like 2025-01-01.')
    return f'Date >= DateTime({day.year}, {day.month}, {day.day})', day.isoformat()


def compute_invoice_status(sent_to_contact, status) -> str:
    paid = (status or '').upper() == 'PAID'
    sent = bool(sent_to_contact)
    if paid:
        return 'PAID' if sent else 'PAID BUT NOT SENT'
    return 'SENT' if sent else 'DRAFT'


def pick_phone(phones) -> Optional[str]:
    def rank(phone):
        phone_type = phone.get('PhoneType') or ''
        return PHONE_PREFERENCE.index(phone_type) if phone_type in PHONE_PREFERENCE else len(PHONE_PREFERENCE)

    for phone in sorted(phones or [], key=rank):
        number = (phone.get('PhoneNumber') or '').strip()
        if number:
            country = (phone.get('PhoneCountryCode') or '').strip()
            area = (phone.get('PhoneAreaCode') or '').strip()
            return ' '.join(part for part in (f'+{country}' if country else '', area, number) if part)
    return None


def _xero_get(url: str, access_token: str, tenant_id: str, params: Optional[dict] = None) -> dict:
    try:
        resp = requests.get(
            url,
            params=params,
            headers={
                'Authorization': f'Bearer {access_token}',
                'Xero-tenant-id': tenant_id,
                'Accept': 'application/json',
            },
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.warning("Xero request error: url=%s error=%s", url, exc)
        raise ApiError(502, 'XERO_REQUEST_FAILED')
    if not resp.ok:
        logger.warning("Xero request failed: url=%s status=%s", url, resp.status_code)
        raise ApiError(502, 'XERO_REQUEST_FAILED', upstreamStatus=resp.status_code)
    return resp.json() or {}


def collect_invoice_contacts(access_token: str, tenant_id: str, since_where: str) -> dict:
    ids = []
    names = {}
    descriptions = {}
    latest = {}

    for page in range(1, MAX_INVOICE_PAGES + 1):
        data = _xero_get(XERO_INVOICES_URL, access_token, tenant_id, params={'page': page, 'where': since_where})
        invoices = data.get('Invoices') or []
        if not invoices:
            break
        for invoice in invoices:
            contact = invoice.get('Contact') or {}
            contact_id = (contact.get('ContactID') or '').strip()
            if not contact_id:
                continue
            if contact_id not in names:
                ids.append(contact_id)
                names[contact_id] = None
            if contact.get('Name'):
                names[contact_id] = contact['Name']
            for item in invoice.get('LineItems') or []:
                text = str(item.get('Description') or '').strip()
                if text:
                    seen = descriptions.setdefault(contact_id, [])
                    if text not in seen:
                        seen.append(text)
            stamp = invoice.get('DateString') or invoice.get('Date') or ''
            previous = latest.get(contact_id)
            if previous is None or stamp >= previous[0]:
                latest[contact_id] = (stamp, invoice.get('SentToContact'), invoice.get('Status'))

    return {
        'ids': ids,
        'names': names,
        'descriptions': {cid: ' | '.join(items) for cid, items in descriptions.items()},
        'statuses': {cid: compute_invoice_status(info[1], info[2]) for cid, info in latest.items()},
    }


def fetch_contacts(access_token: str, tenant_id: str, ids: list[str]) -> list[dict]:
    contacts = []
    for start in range(0, len(ids), CONTACT_BATCH_SIZE):
        batch = ids[start:start + CONTACT_BATCH_SIZE]
        data = _xero_get(XERO_CONTACTS_URL, access_token, tenant_id, params={'IDs': ','.join(batch)})
        contacts.extend(data.get('Contacts') or [])
    return contacts


def _upsert_client(c, user_id, contact_id, name, email, phone, item_description, invoice_status) -> str:
    c.execute('SELECT id FROM clients WHERE user_id = ? AND xero_contact_id = ?', (user_id, contact_id))
    existing = c.fetchone()
    now = utc_now()
    if existing:
        c.execute(
            '''
            UPDATE clients
            SET name = COALESCE(NULLIF(?, ''), name),
                email = COALESCE(?, email),
                phone_number = COALESCE(NULLIF(?, ''), phone_number),
                item_description = COALESCE(NULLIF(?, ''), item_description),
                invoice_status = COALESCE(?, invoice_status),
                updated_at = ?
            WHERE id = ?
            ''',
            (name, email, phone, item_description, invoice_status, now, existing[0]),
        )
        return 'updated'

    client_id = str(uuid.uuid4())
    c.execute(
        '''
        INSERT INTO clients (
            id, user_id, xero_contact_id, name, email, phone_number, item_description,
            invoice_status, sentiment, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'unreviewed', ?, ?)
        ''',
        (client_id, user_id, contact_id, name, email, phone, item_description, invoice_status, now, now),
    )
    c.execute(
        "INSERT INTO client_actions (client_id, action, created_at) VALUES (?, 'client_added', ?)",
        (client_id, now),
    )
    return 'inserted'


def sync_clients(user_id: str, since: Optional[str] = None) -> dict:
    """Import invoice contacts that Xero marks as customers into the user's clients."""
    since_where, since_iso = build_since_where(since)

    tenant = _load_tenant(user_id)
    if not tenant:
        raise ApiError(404, 'NO_XERO_CONNECTION', message='No Xero connection found for this user.')

    access_token = tenant['access_token']
    if _is_expired(tenant['expires_at']):
        access_token = _refresh(tenant)
    tenant_id = tenant['tenant_id']

    collected = collect_invoice_contacts(access_token, tenant_id, since_where)
    result = {
        'userId': user_id,
        'tenantId': tenant_id,
        'since': since_iso,
        'inserted': 0,
        'updated': 0,
        'consideredFromInvoices': len(collected['ids']),
        'customersOnly': 0,
        'totalClientsForUser': 0,
    }
    if not collected['ids']:
        result['notes'] = 'No contacts from invoices.'
        return result

    contacts = {
        (contact.get('ContactID') or '').strip(): contact
        for contact in fetch_contacts(access_token, tenant_id, collected['ids'])
    }

    conn = db_connect()
    c = conn.cursor()
    for contact_id in collected['ids']:
        contact = contacts.get(contact_id)
        if not contact or contact.get('IsCustomer') is not True:
            continue
        result['customersOnly'] += 1
        name = (contact.get('Name') or collected['names'].get(contact_id) or '').strip() or '(Unknown Contact)'
        email = (contact.get('EmailAddress') or '').strip() or None
        outcome = _upsert_client(
            c,
            user_id,
            contact_id,
            name,
            email,
            pick_phone(contact.get('Phones')),
            collected['descriptions'].get(contact_id),
            collected['statuses'].get(contact_id),
        )
        result[outcome] += 1

    c.execute('SELECT COUNT(*) FROM clients WHERE user_id = ?', (user_id,))
    result['totalClientsForUser'] = c.fetchone()[0]
    conn.commit()
    conn.close()
    logger.info(
        "Xero import finished: user=%s inserted=%s updated=%s",
        user_id, result['inserted'], result['updated'],
    )
    return result
