import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from authlib.integrations.base_client import OAuthError
from flask import redirect

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, db_connect, init_db
from database import format_ts
from services import google_service, xero_service
from services.oauth import GOOGLE_SCOPES, oauth


@pytest.fixture
def client():
    db_fd, db_path = tempfile.mkstemp()
    app.config.update(
        DATABASE_PATH=db_path,
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        MAIL_ENABLED=False,
        SESSION_COOKIE_SECURE=False,
    )
    with app.app_context():
        init_db()
    with app.test_client() as c:
        yield c
    os.close(db_fd)
    os.unlink(db_path)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise xero_service.requests.HTTPError(f'status {self.status_code}')


def sign_up(client, email='owner@example.com'):
    resp = client.post('/api/sign-up', json={'name': 'Pat Owner', 'email': email, 'password': 'StrongPass1'})
    return resp.get_json()['userId']


def in_future(hours=1):
    return format_ts(datetime.now(timezone.utc) + timedelta(hours=hours))


def insert_xero_tenant(user_id, tenant_id='t1', name='Acme Ltd', primary=1, expires_at=None):
    with app.app_context():
        conn = db_connect()
        conn.execute(
            '''
            INSERT INTO xero_details (auth_id, tenant_id, tenant_name, access_token, refresh_token,
                                      access_token_expires_at, is_connected, is_primary, created_at)
            VALUES (?, ?, ?, 'access-1', 'refresh-1', ?, 1, ?, '2025-01-01T00:00:00.000000Z')
            ''',
            (user_id, tenant_id, name, expires_at or in_future(), primary),
        )
        conn.commit()
        conn.close()


def user_actions(user_id):
    with app.app_context():
        conn = db_connect()
        rows = conn.execute('SELECT action FROM user_actions WHERE user_id = ? ORDER BY id', (user_id,)).fetchall()
        conn.close()
    return [row[0] for row in rows]


# ===== XERO CONNECTION =====

def test_has_xero_connection_is_not_cached(client):
    user_id = sign_up(client)
    resp = client.get('/api/xero/has-xero-connection')
    assert resp.headers['Cache-Control'] == 'no-store'
    assert resp.get_json() == {'connected': False, 'tenantCount': 0}

    insert_xero_tenant(user_id)
    assert client.get('/api/xero/has-xero-connection').get_json() == {'connected': True, 'tenantCount': 1}


def test_primary_and_listed_businesses(client):
    user_id = sign_up(client)
    body = client.get('/api/xero/get-primary-business').get_json()
    assert body['tenantName'] is None

    insert_xero_tenant(user_id, 't1', 'Zed Trading', primary=0)
    insert_xero_tenant(user_id, 't2', 'Acme Ltd', primary=1)
    assert client.get('/api/xero/get-primary-business').get_json() == {'tenantName': 'Acme Ltd'}
    assert client.get('/api/xero/list-businesses').get_json() == {'businesses': [
        {'tenantName': 'Acme Ltd', 'isPrimary': True},
        {'tenantName': 'Zed Trading', 'isPrimary': False},
    ]}


def test_receive_xero_connection_saves_tenants(client, monkeypatch):
    user_id = sign_up(client)
    monkeypatch.setattr(oauth.xero, 'authorize_access_token', lambda **kwargs: {
        'access_token': 'xero-access',
        'refresh_token': 'xero-refresh',
        'expires_in': 1800,
        'scope': 'offline_access accounting.transactions',
    })
    monkeypatch.setattr(xero_service, 'list_connections', lambda token: [
        {'tenantId': 't1', 'tenantName': 'Acme Ltd', 'tenantType': 'ORGANISATION'},
        {'tenantId': 't2', 'tenantName': 'Acme Two', 'tenantType': 'ORGANISATION'},
        {'tenantName': 'No id'},
    ])

    resp = client.get('/api/xero/receive-xero-connection?code=abc&state=xyz')
    assert resp.status_code == 302
    assert resp.headers['Location'] == f'/onboarding-flow/welcome?UserID={user_id}'
    assert 'xero_connected' in user_actions(user_id)
    assert client.get('/api/xero/list-businesses').get_json()['businesses'] == [
        {'tenantName': 'Acme Ltd', 'isPrimary': True},
        {'tenantName': 'Acme Two', 'isPrimary': False},
    ]

    # Reconnecting keeps a single primary and the action is recorded once
    client.get('/api/xero/receive-xero-connection?code=abc&state=xyz')
    assert user_actions(user_id).count('xero_connected') == 1
    assert client.get('/api/xero/has-xero-connection').get_json()['tenantCount'] == 2


def test_xero_return_to_round_trip(client, monkeypatch):
    sign_up(client)
    redirect_uris = []

    def fake_authorize_redirect(redirect_uri, **kwargs):
        redirect_uris.append(redirect_uri)
        return redirect('https://login.xero.com/identity/connect/authorize')

    monkeypatch.setattr(oauth.xero, 'authorize_redirect', fake_authorize_redirect)
    monkeypatch.setattr(oauth.xero, 'authorize_access_token', lambda **kwargs: {'access_token': 'a'})
    monkeypatch.setattr(xero_service, 'list_connections', lambda token: [{'tenantId': 't1'}])

    resp = client.get('/api/xero/connect-to-xero?returnTo=/acme/settings')
    assert resp.headers['Location'].startswith('https://login.xero.com/')
    assert redirect_uris[0].endswith('/api/xero/receive-xero-connection')
    resp = client.get('/api/xero/receive-xero-connection?code=abc')
    assert resp.headers['Location'] == '/acme/settings'

    client.get('/api/xero/connect-to-xero?returnTo=//evil.example.com')
    resp = client.get('/api/xero/receive-xero-connection?code=abc')
    assert resp.headers['Location'].startswith('/onboarding-flow/welcome')


def test_receive_xero_connection_errors(client, monkeypatch):
    sign_up(client)
    resp = client.get('/api/xero/receive-xero-connection?error=access_denied')
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'XERO_AUTH_DENIED'

    def failing_exchange(**kwargs):
        raise OAuthError(error='invalid_grant')

    monkeypatch.setattr(oauth.xero, 'authorize_access_token', failing_exchange)
    resp = client.get('/api/xero/receive-xero-connection?code=abc')
    assert resp.get_json()['error'] == 'XERO_AUTH_FAILED'

    monkeypatch.setattr(oauth.xero, 'authorize_access_token', lambda **kwargs: {'access_token': 'a'})
    monkeypatch.setattr(xero_service, 'list_connections', lambda token: [])
    resp = client.get('/api/xero/receive-xero-connection?code=abc')
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'NO_TENANTS'


# ===== XERO CLIENT IMPORT =====

INVOICES = [
    {
        'Contact': {'ContactID': 'x1', 'Name': 'Jane Doe'},
        'LineItems': [{'Description': 'Boiler service'}, {'Description': 'Boiler service'}],
        'DateString': '2025-02-01T00:00:00',
        'SentToContact': True,
        'Status': 'PAID',
    },
    {
        'Contact': {'ContactID': 'x1'},
        'LineItems': [{'Description': 'Pipe repair'}],
        'DateString': '2025-03-01T00:00:00',
        'SentToContact': True,
        'Status': 'AUTHORISED',
    },
    {
        'Contact': {'ContactID': 'x2', 'Name': 'Supplier Co'},
        'LineItems': [],
        'DateString': '2025-02-10T00:00:00',
        'Status': 'PAID',
    },
    {'Contact': {}, 'LineItems': [{'Description': 'Orphan'}]},
]

CONTACTS = [
    {
        'ContactID': 'x1',
        'Name': 'Jane Doe',
        'EmailAddress': 'jane@example.com',
        'IsCustomer': True,
        'Phones': [
            {'PhoneType': 'MOBILE', 'PhoneNumber': '0400 000 000', 'PhoneCountryCode': '61'},
            {'PhoneType': 'DEFAULT', 'PhoneNumber': ''},
        ],
    },
    {'ContactID': 'x2', 'Name': 'Supplier Co', 'IsCustomer': False},
]


@pytest.fixture
def xero_api(monkeypatch):
    calls = []

    def fake_get(url, access_token, tenant_id, params=None):
        calls.append((url, access_token, tenant_id, params))
        if url == xero_service.XERO_INVOICES_URL:
            return {'Invoices': INVOICES if params['page'] == 1 else []}
        return {'Contacts': CONTACTS}

    monkeypatch.setattr(xero_service, '_xero_get', fake_get)
    return calls


def test_get_clients_from_xero_imports_customers(client, xero_api):
    user_id = sign_up(client)
    insert_xero_tenant(user_id)

    body = client.post('/api/xero/get-clients-from-xero', json={}).get_json()
    assert body['since'] == '2025-01-01'
    assert body['tenantId'] == 't1'
    assert body['consideredFromInvoices'] == 2
    assert body['customersOnly'] == 1
    assert body['inserted'] == 1
    assert body['updated'] == 0
    assert body['totalClientsForUser'] == 1
    assert xero_api[0][3] == {'page': 1, 'where': 'Date >= DateTime(2025, 1, 1)'}
    assert xero_api[0][1] == 'access-1'

    listed = client.get('/api/get-clients').get_json()['clients']
    assert len(listed) == 1
    imported = listed[0]
    assert imported['name'] == 'Jane Doe'
    assert imported['email'] == 'jane@example.com'
    assert imported['phone_number'] == '+61 0400 000 000'
    assert imported['item_description'] == 'Boiler service | Pipe repair'
    assert imported['invoice_status'] == 'SENT'
    assert imported['sentiment'] == 'unreviewed'

    again = client.post('/api/xero/get-clients-from-xero', json={'since': '2025-02-15'}).get_json()
    assert again['inserted'] == 0
    assert again['updated'] == 1
    assert again['since'] == '2025-02-15'


def test_get_clients_from_xero_errors(client, xero_api):
    user_id = sign_up(client)
    resp = client.post('/api/xero/get-clients-from-xero', json={})
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'NO_XERO_CONNECTION'

    insert_xero_tenant(user_id)
    resp = client.post('/api/xero/get-clients-from-xero', json={'since': 'last tuesday'})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'INVALID_SINCE'

    resp = client.post('/api/xero/get-clients-from-xero', json={'userId': 'someone-else'})
    assert resp.status_code == 403


def test_get_clients_from_xero_refreshes_expired_token(client, xero_api, monkeypatch):
    user_id = sign_up(client)
    insert_xero_tenant(user_id, expires_at='2020-01-01T00:00:00.000000Z')
    posted = []

    def fake_post(url, data=None, timeout=None):
        posted.append((url, data))
        return FakeResponse(200, {'access_token': 'access-2', 'refresh_token': 'refresh-2', 'expires_in': 1800})

    monkeypatch.setattr(xero_service.requests, 'post', fake_post)
    client.post('/api/xero/get-clients-from-xero', json={})
    assert posted[0][0] == xero_service.XERO_TOKEN_URL
    assert posted[0][1]['refresh_token'] == 'refresh-1'
    assert xero_api[0][1] == 'access-2'

    with app.app_context():
        conn = db_connect()
        row = conn.execute('SELECT access_token, refresh_token FROM xero_details WHERE auth_id = ?', (user_id,)).fetchone()
        conn.close()
    assert row == ('access-2', 'refresh-2')


def test_xero_upstream_failure(client, monkeypatch):
    user_id = sign_up(client)
    insert_xero_tenant(user_id)
    monkeypatch.setattr(xero_service.requests, 'get', lambda *args, **kwargs: FakeResponse(500))
    resp = client.post('/api/xero/get-clients-from-xero', json={})
    assert resp.status_code == 502
    assert resp.get_json() == {'error': 'XERO_REQUEST_FAILED', 'upstreamStatus': 500}


def test_invoice_status_and_phone_helpers():
    assert xero_service.compute_invoice_status(True, 'PAID') == 'PAID'
    assert xero_service.compute_invoice_status(False, 'paid') == 'PAID BUT NOT SENT'
    assert xero_service.compute_invoice_status(True, 'AUTHORISED') == 'SENT'
    assert xero_service.compute_invoice_status(None, None) == 'DRAFT'
    assert xero_service.pick_phone([{'PhoneType': 'FAX', 'PhoneNumber': '123'}]) == '123'
    assert xero_service.pick_phone([]) is None


# ===== GOOGLE =====

def save_google_account(user_id, scope=GOOGLE_SCOPES, expires_in=3600, refresh_token='g-refresh'):
    with app.app_context():
        google_service.save_account(user_id, {
            'access_token': 'g-access',
            'refresh_token': refresh_token,
            'expires_in': expires_in,
            'scope': scope,
        }, account_id='google-sub')


def test_google_has_connection(client):
    user_id = sign_up(client)
    assert client.get('/api/google/has-connection').get_json() == {'connected': False, 'scopeOk': False}

    save_google_account(user_id, scope='openid email')
    assert client.get('/api/google/has-connection').get_json() == {'connected': True, 'scopeOk': False}

    save_google_account(user_id)
    assert client.get('/api/google/has-connection').get_json() == {'connected': True, 'scopeOk': True}


def test_google_callback_links_account(client, monkeypatch):
    user_id = sign_up(client)
    monkeypatch.setattr(oauth.google, 'authorize_access_token', lambda **kwargs: {
        'access_token': 'g-access',
        'refresh_token': 'g-refresh',
        'expires_in': 3600,
        'scope': GOOGLE_SCOPES,
        'userinfo': {'sub': 'google-sub'},
    })
    resp = client.get('/api/google/callback?code=abc&state=xyz')
    assert resp.status_code == 302
    assert resp.headers['Location'] == f'/onboarding-flow/onboarding?UserID={user_id}'
    assert user_actions(user_id) == ['signed_in', 'google_connected']
    assert client.get('/api/google/has-connection').get_json()['scopeOk'] is True


def test_google_callback_errors(client, monkeypatch):
    sign_up(client)
    resp = client.get('/api/google/callback?error=access_denied')
    assert resp.get_json()['error'] == 'GOOGLE_AUTH_DENIED'

    def failing_exchange(**kwargs):
        raise OAuthError(error='mismatching_state')

    monkeypatch.setattr(oauth.google, 'authorize_access_token', failing_exchange)
    resp = client.get('/api/google/callback?code=abc')
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'GOOGLE_AUTH_FAILED'


@pytest.fixture
def google_api(monkeypatch):
    responses = {}

    def fake_get(url, access_token, params=None):
        handler = responses[url]
        return handler(access_token) if callable(handler) else handler

    monkeypatch.setattr(google_service, '_get', fake_get)
    return responses


def test_onboarding_details_from_business_profile(client, google_api):
    user_id = sign_up(client)
    save_google_account(user_id)
    google_api[google_service.USERINFO_URL] = FakeResponse(200, {'name': 'Pat Owner', 'email': 'pat@gmail.com'})
    google_api[google_service.ACCOUNTS_URL] = FakeResponse(200, {'accounts': [{'name': 'accounts/123'}]})
    google_api[google_service.LOCATIONS_URL.format(account_id='123')] = FakeResponse(200, {'locations': [
        {'metadata': {'listingStatus': 'DRAFT', 'mapsUri': 'https://maps.google.com/?cid=9'}},
        {
            'profile': {'description': 'Local plumbers'},
            'metadata': {
                'listingStatus': 'PUBLISHED',
                'placeId': 'place-1',
                'mapsUri': 'https://maps.google.com/?cid=1',
            },
        },
    ]})

    body = client.get('/api/onboarding-get-user-details').get_json()
    assert body == {
        'name': 'Pat Owner',
        'email': 'pat@gmail.com',
        'description': 'Local plumbers',
        'googleBusinessLink': 'https://maps.google.com/?cid=1',
        'googleReviewLink': 'https://search.google.com/local/writereview?placeid=place-1',
    }


def test_onboarding_details_without_business_access(client, google_api):
    user_id = sign_up(client)
    save_google_account(user_id)
    google_api[google_service.USERINFO_URL] = FakeResponse(200, {'name': 'Pat Owner', 'email': 'pat@gmail.com'})
    google_api[google_service.ACCOUNTS_URL] = FakeResponse(403)

    body = client.get('/api/onboarding-get-user-details').get_json()
    assert body['name'] == 'Pat Owner'
    assert body['googleBusinessLink'] is None
    assert body['googleReviewLink'] is None


def test_onboarding_details_refreshes_on_401(client, google_api, monkeypatch):
    user_id = sign_up(client)
    save_google_account(user_id, scope='openid email profile')
    google_api[google_service.USERINFO_URL] = lambda token: (
        FakeResponse(200, {'name': 'Pat', 'email': 'pat@gmail.com'}) if token == 'g-fresh' else FakeResponse(401)
    )
    monkeypatch.setattr(
        google_service.requests,
        'post',
        lambda url, data=None, timeout=None: FakeResponse(200, {'access_token': 'g-fresh', 'expires_in': 3600}),
    )

    body = client.get('/api/onboarding-get-user-details').get_json()
    assert body['email'] == 'pat@gmail.com'
    assert body['googleReviewLink'] is None


def test_onboarding_details_errors(client, google_api):
    user_id = sign_up(client)
    resp = client.get('/api/onboarding-get-user-details')
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'NO_GOOGLE_LINKED'

    save_google_account(user_id, expires_in=-3600, refresh_token=None)
    resp = client.get('/api/onboarding-get-user-details')
    assert resp.status_code == 401
    assert resp.get_json()['error'] == 'EXPIRED_NO_REFRESH'


def raise_timeout(*args, **kwargs):
    raise xero_service.requests.Timeout('read timed out')


def raise_connection_error(*args, **kwargs):
    raise xero_service.requests.ConnectionError('connection refused')


def test_xero_import_timeout_is_bad_gateway(client, monkeypatch):
    user_id = sign_up(client)
    insert_xero_tenant(user_id)
    monkeypatch.setattr(xero_service.requests, 'get', raise_timeout)
    resp = client.post('/api/xero/get-clients-from-xero', json={})
    assert resp.status_code == 502
    assert resp.get_json()['error'] == 'XERO_REQUEST_FAILED'


def test_xero_refresh_connection_error_is_bad_gateway(client, xero_api, monkeypatch):
    user_id = sign_up(client)
    insert_xero_tenant(user_id, expires_at='2020-01-01T00:00:00.000000Z')
    monkeypatch.setattr(xero_service.requests, 'post', raise_connection_error)
    resp = client.post('/api/xero/get-clients-from-xero', json={})
    assert resp.status_code == 502
    assert resp.get_json()['error'] == 'XERO_REQUEST_FAILED'
    assert xero_api == []


def test_xero_connections_timeout_is_bad_gateway(client, monkeypatch):
    sign_up(client)
    monkeypatch.setattr(oauth.xero, 'authorize_access_token', lambda **kwargs: {'access_token': 'a'})
    monkeypatch.setattr(xero_service.requests, 'get', raise_timeout)
    resp = client.get('/api/xero/receive-xero-connection?code=abc')
    assert resp.status_code == 502
    assert resp.get_json()['error'] == 'XERO_REQUEST_FAILED'


def test_google_userinfo_timeout_is_bad_gateway(client, monkeypatch):
    user_id = sign_up(client)
    save_google_account(user_id)
    monkeypatch.setattr(google_service.requests, 'get', raise_timeout)
    resp = client.get('/api/onboarding-get-user-details')
    assert resp.status_code == 502
    assert resp.get_json()['error'] == 'GOOGLE_USERINFO_FAILED'


def test_google_refresh_connection_error_is_bad_gateway(client, monkeypatch):
    user_id = sign_up(client)
    save_google_account(user_id, expires_in=-3600)
    monkeypatch.setattr(google_service.requests, 'post', raise_connection_error)
    resp = client.get('/api/onboarding-get-user-details')
    assert resp.status_code == 502
    assert resp.get_json()['error'] == 'GOOGLE_REFRESH_FAILED'
