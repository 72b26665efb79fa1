import os


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'library_secret_key_2025')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///library.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SESSION_COOKIE_SAMESITE = 'Lax'

    # SMTP transport (Flask-Mail)
    MAIL_SERVER = os.environ.get('EMAIL_SERVER_HOST', 'smtp.gmail.com')
    MAIL_PORT = int(os.environ.get('EMAIL_SERVER_PORT', 587))
    MAIL_USE_TLS = _env_bool('EMAIL_SERVER_TLS', True)
    MAIL_USERNAME = os.environ.get('EMAIL_SERVER_USER', '')
    MAIL_PASSWORD = os.environ.get('EMAIL_SERVER_PASSWORD', '')
    MAIL_DEFAULT_SENDER = os.environ.get('EMAIL_FROM', 'noreply@davellibrary.com')

    # Library policy
    LIBRARY_NAME = os.environ.get('LIBRARY_NAME', 'Davel Library')
    SITE_URL = os.environ.get('SITE_URL', 'http://localhost:5000')
    CURRENCY = os.environ.get('CURRENCY', 'ZAR')
    LOAN_PERIOD_DAYS = int(os.environ.get('LOAN_PERIOD_DAYS', 14))
    FEE_GRACE_PERIOD_DAYS = int(os.environ.get('FEE_GRACE_PERIOD_DAYS', 7))

    SEED_DEFAULTS = _env_bool('SEED_DEFAULTS', True)
    DEFAULT_ADMIN_PASSWORD = os.environ.get('DEFAULT_ADMIN_PASSWORD', 'admin123')
    DEFAULT_LIBRARIAN_PASSWORD = os.environ.get('DEFAULT_LIBRARIAN_PASSWORD', 'librarian123')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    MAIL_USERNAME = 'library-test'
    MAIL_PASSWORD = 'library-test'
    MAIL_SUPPRESS_SEND = True
    LOG_LEVEL = 'DEBUG'
