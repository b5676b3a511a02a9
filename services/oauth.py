"""OAuth client registry for the Google and Xero authorization-code flows."""

from authlib.integrations.flask_client import OAuth

oauth = OAuth()

GOOGLE_METADATA_URL = 'https://accounts.google.com/.well-known/openid-configuration'
GOOGLE_BUSINESS_SCOPE = 'https://www.googleapis.com/auth/business.manage'
GOOGLE_SCOPES = f'openid email profile {GOOGLE_BUSINESS_SCOPE}'

XERO_AUTHORIZE_URL = 'https://login.xero.com/identity/connect/authorize'
XERO_TOKEN_URL = 'https://identity.xero.com/connect/token'


def init_oauth(app):
    oauth.init_app(app)
    oauth.register(
        name='google',
        client_id=app.config.get('GOOGLE_CLIENT_ID'),
        client_secret=app.config.get('GOOGLE_CLIENT_SECRET'),
        server_metadata_url=GOOGLE_METADATA_URL,
        client_kwargs={'scope': GOOGLE_SCOPES},
    )
    oauth.register(
        name='xero',
        client_id=app.config.get('XERO_CLIENT_ID'),
        client_secret=app.config.get('XERO_CLIENT_SECRET'),
        authorize_url=XERO_AUTHORIZE_URL,
        access_token_url=XERO_TOKEN_URL,
        client_kwargs={'scope': app.config.get('XERO_SCOPES')},
    )
