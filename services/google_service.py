"""Google account tokens, userinfo and Business Profile lookups."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

import requests
from flask import current_app

from database import db_connect, format_ts, parse_ts, utc_now
from errors import ApiError
from services.oauth import GOOGLE_BUSINESS_SCOPE

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = 'https://oauth2.googleapis.com/token'
USERINFO_URL = 'https://openidconnect.googleapis.com/v1/userinfo'
ACCOUNTS_URL = 'https://mybusinessaccountmanagement.googleapis.com/v1/accounts'
LOCATIONS_URL = 'https://mybusinessbusinessinformation.googleapis.com/v1/accounts/{account_id}/locations'
LOCATIONS_READ_MASK = 'profile(description),metadata(placeId,mapsUri,newReviewUri,listingStatus),websiteUri'
WRITE_REVIEW_URL = 'https://search.google.com/local/writereview?placeid={place_id}'
EXPIRY_SKEW = timedelta(seconds=60)
REQUEST_TIMEOUT = 15


def split_scopes(scope: Optional[str]) -> list[str]:
    return [s for s in re.split(r'[,\s]+', scope or '') if s]


def get_account(user_id: str) -> Optional[dict]:
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT id, access_token, refresh_token, access_token_expires_at, scope
        FROM account
        WHERE user_id = ? AND provider_id = 'google'
        ORDER BY updated_at DESC
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
        'access_token': row[1],
        'refresh_token': row[2],
        'expires_at': row[3],
        'scope': row[4],
    }


def save_account(user_id: str, token: dict, account_id: Optional[str] = None) -> None:
    """Upsert the Google tokens returned by the authorization-code exchange."""
    expires_at = None
    if token.get('expires_at'):
        expires_at = format_ts(datetime.fromtimestamp(int(token['expires_at']), tz=timezone.utc))
    elif token.get('expires_in'):
        expires_at = format_ts(datetime.now(timezone.utc) + timedelta(seconds=int(token['expires_in'])))

    now = utc_now()
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        INSERT INTO account (
            user_id, provider_id, account_id, access_token, refresh_token,
            access_token_expires_at, scope, created_at, updated_at
        )
        VALUES (?, 'google', ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, provider_id) DO UPDATE SET
            account_id = COALESCE(excluded.account_id, account.account_id),
            access_token = excluded.access_token,
            refresh_token = COALESCE(excluded.refresh_token, account.refresh_token),
            access_token_expires_at = excluded.access_token_expires_at,
            scope = COALESCE(excluded.scope, account.scope),
            updated_at = excluded.updated_at
        ''',
        (
            user_id,
            account_id,
            token.get('access_token'),
            token.get('refresh_token'),
            expires_at,
            token.get('scope'),
            now,
            now,
        ),
    )
    conn.commit()
    conn.close()


def has_connection(user_id: str) -> dict:
    account = get_account(user_id)
    if not account:
        return {'connected': False, 'scopeOk': False}
    return {'connected': True, 'scopeOk': GOOGLE_BUSINESS_SCOPE in split_scopes(account['scope'])}


def is_expired(expires_at: Optional[str]) -> bool:
    parsed = parse_ts(expires_at)
    if parsed is None:
        return True
    return datetime.now(timezone.utc) + EXPIRY_SKEW >= parsed


def refresh_access_token(user_id: str, account: dict) -> str:
    if not account.get('refresh_token'):
        raise ApiError(401, 'EXPIRED_NO_REFRESH')

    try:
        resp = requests.post(
            GOOGLE_TOKEN_URL,
            data={
                'client_id': current_app.config.get('GOOGLE_CLIENT_ID'),
                'client_secret': current_app.config.get('GOOGLE_CLIENT_SECRET'),
                'refresh_token': account['refresh_token'],
                'grant_type': 'refresh_token',
            },
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.warning("Google token refresh error: user=%s error=%s", user_id, exc)
        raise ApiError(502, 'GOOGLE_REFRESH_FAILED')
    if not resp.ok:
        logger.warning("Google token refresh failed: user=%s status=%s", user_id, resp.status_code)
        raise ApiError(502, 'GOOGLE_REFRESH_FAILED')

    data = resp.json()
    account['access_token'] = data['access_token']
    expires_at = format_ts(datetime.now(timezone.utc) + timedelta(seconds=int(data.get('expires_in') or 3600)))
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        UPDATE account
        SET access_token = ?, access_token_expires_at = ?, updated_at = ?
        WHERE id = ?
        ''',
        (data['access_token'], expires_at, utc_now(), account['id']),
    )
    conn.commit()
    conn.close()
    return data['access_token']


def _get(url: str, access_token: str, params: Optional[dict] = None) -> requests.Response:
    return requests.get(
        url,
        params=params,
        headers={'Authorization': f'Bearer {access_token}', 'Accept': 'application/json'},
        timeout=REQUEST_TIMEOUT,
    )


def _business_profile(access_token: str) -> dict:
    """First account's preferred location links. 403/404 means no Business Profile access."""
    result = {'description': None, 'googleBusinessLink': None, 'googleReviewLink': None}

    accounts_resp = _get(ACCOUNTS_URL, access_token)
    if accounts_resp.status_code in (403, 404):
        logger.info("Business Profile accounts unavailable: status=%s", accounts_resp.status_code)
        return result
    accounts_resp.raise_for_status()
    accounts = accounts_resp.json().get('accounts') or []
    if not accounts:
        return result
    account_id = (accounts[0].get('name') or '').split('/')[-1]
    if not account_id:
        return result

    locations_resp = _get(
        LOCATIONS_URL.format(account_id=account_id),
        access_token,
        params={'readMask': LOCATIONS_READ_MASK},
    )
    if locations_resp.status_code in (403, 404):
        logger.info("Business Profile locations unavailable: status=%s", locations_resp.status_code)
        return result
    locations_resp.raise_for_status()
    locations = locations_resp.json().get('locations') or []
    if not locations:
        return result

    preferred = next(
        (loc for loc in locations if (loc.get('metadata') or {}).get('listingStatus') == 'PUBLISHED'),
        locations[0],
    )
    metadata = preferred.get('metadata') or {}
    result['description'] = (preferred.get('profile') or {}).get('description')
    result['googleBusinessLink'] = metadata.get('mapsUri') or preferred.get('websiteUri')
    if metadata.get('newReviewUri'):
        result['googleReviewLink'] = metadata['newReviewUri']
    elif metadata.get('placeId'):
        result['googleReviewLink'] = WRITE_REVIEW_URL.format(place_id=quote(metadata['placeId']))
    return result


def fetch_onboarding_details(user_id: str) -> dict:
    """Prefill values for the onboarding form from the linked Google account."""
    account = get_account(user_id)
    if not account:
        raise ApiError(404, 'NO_GOOGLE_LINKED')

    access_token = account['access_token']
    if not access_token or is_expired(account['expires_at']):
        access_token = refresh_access_token(user_id, account)

    try:
        userinfo_resp = _get(USERINFO_URL, access_token)
        if userinfo_resp.status_code == 401:
            access_token = refresh_access_token(user_id, account)
            userinfo_resp = _get(USERINFO_URL, access_token)
    except requests.RequestException as exc:
        logger.warning("Google userinfo error: user=%s error=%s", user_id, exc)
        raise ApiError(502, 'GOOGLE_USERINFO_FAILED')
    if not userinfo_resp.ok:
        logger.warning("Google userinfo failed: user=%s status=%s", user_id, userinfo_resp.status_code)
        raise ApiError(502, 'GOOGLE_USERINFO_FAILED')
    userinfo = userinfo_resp.json()

    details = {
        'name': userinfo.get('name'),
        'email': userinfo.get('email'),
        'description': None,
        'googleBusinessLink': None,
        'googleReviewLink': None,
    }
    if GOOGLE_BUSINESS_SCOPE in split_scopes(account['scope']):
        try:
            details.update(_business_profile(access_token))
        except requests.RequestException:
            logger.exception("Business Profile lookup failed for user=%s", user_id)
            raise ApiError(502, 'GOOGLE_BUSINESS_PROFILE_FAILED')
    return details
