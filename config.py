"""
Configuration for the Review Remind application
Loads settings from environment variables
"""

import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    """Application configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        raise RuntimeError("SECRET_KEY environment variable must be set")

    APP_ENV = os.environ.get('APP_ENV', 'production')
    DEBUG = os.environ.get('FLASK_ENV') == 'development' or os.environ.get('FLASK_DEBUG') == '1'

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.environ.get('SESSION_COOKIE_SAMESITE', 'Lax')
    SESSION_COOKIE_SECURE = os.environ.get('SESSION_COOKIE_SECURE', '1') == '1'

    # Public URL used in review-request emails
    BASE_URL = (os.environ.get('BASE_URL') or 'http://localhost:5000').rstrip('/')

    # Database
    DATABASE_PATH = os.environ.get('DATABASE_PATH') or 'reviewremind.db'

    # File upload (company logos)
    MAX_CONTENT_LENGTH = int(os.environ.get('MAX_CONTENT_LENGTH', str(5 * 1024 * 1024)))
    LOGO_BUCKET = os.environ.get('LOGO_BUCKET', 'company-logos')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    AWS_REGION = os.environ.get('AWS_REGION')

    # Google OAuth / Business Profile
    GOOGLE_CLIENT_ID = os.environ.get('GOOGLE_CLIENT_ID')
    GOOGLE_CLIENT_SECRET = os.environ.get('GOOGLE_CLIENT_SECRET')

    # Xero OAuth
    XERO_CLIENT_ID = os.environ.get('XERO_CLIENT_ID')
    XERO_CLIENT_SECRET = os.environ.get('XERO_CLIENT_SECRET')
    XERO_REDIRECT_URI = os.environ.get('XERO_REDIRECT_URI')
    XERO_SCOPES = os.environ.get(
        'XERO_SCOPES',
        'offline_access accounting.transactions.read accounting.contacts.read',
    )

    # Generative review writing
    GEMINI_API_KEY = os.environ.get('GEMINI_API_KEY') or os.environ.get('GOOGLE_GENERATIVE_AI_API_KEY')
    GEMINI_MODEL = os.environ.get('GEMINI_MODEL', 'gemini-2.5-flash')

    # Mail configuration
    MAIL_ENABLED = os.environ.get('MAIL_ENABLED', '0') == '1'
    MAIL_SUPPRESS_SEND = not MAIL_ENABLED
    MAIL_SERVER = os.environ.get('MAIL_SERVER', 'smtp.sendgrid.net')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', '587'))
    MAIL_USE_TLS = os.environ.get('MAIL_USE_TLS', '1') == '1'
    MAIL_USE_SSL = os.environ.get('MAIL_USE_SSL', '0') == '1'
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER', 'no-reply@reviewremind.app')
    MAIL_MAX_RETRIES = int(os.environ.get('MAIL_MAX_RETRIES', '3'))
    BULK_EMAIL_CONCURRENCY = int(os.environ.get('BULK_EMAIL_CONCURRENCY', '5'))

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')

    # Monitoring / logging
    SENTRY_DSN = os.environ.get('SENTRY_DSN')
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get('SENTRY_TRACES_SAMPLE_RATE', '0.1'))
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_DIR = os.environ.get('LOG_DIR', 'logs')
