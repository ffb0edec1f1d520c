import os

from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'change-me-club-share-secret'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'club_shares.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Busy timeout for the persistence layer (seconds)
    DB_TIMEOUT_SECONDS = float(os.environ.get('DB_TIMEOUT_SECONDS', 5))
    SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}
    if SQLALCHEMY_DATABASE_URI.startswith('sqlite'):
        SQLALCHEMY_ENGINE_OPTIONS['connect_args'] = {'timeout': DB_TIMEOUT_SECONDS}
    else:
        SQLALCHEMY_ENGINE_OPTIONS['connect_args'] = {'connect_timeout': int(DB_TIMEOUT_SECONDS)}

    # Consent workflow
    CONSENT_WINDOW_DAYS = int(os.environ.get('CONSENT_WINDOW_DAYS', 30))
    APP_BASE_URL = os.environ.get('APP_BASE_URL', 'http://localhost:5000')

    # Notification dispatcher. Without a URL every send fails unless
    # NOTIFICATION_LOG_ONLY is on (or TESTING), which only logs messages.
    NOTIFICATION_URL = os.environ.get('NOTIFICATION_URL', '')
    NOTIFICATION_LOG_ONLY = os.environ.get('NOTIFICATION_LOG_ONLY', '').lower() in ('1', 'true', 'yes')
    NOTIFICATION_TIMEOUT_SECONDS = float(os.environ.get('NOTIFICATION_TIMEOUT_SECONDS', 5))

    # Account provisioning
    ACTIVATION_TOKEN_MAX_AGE = int(os.environ.get('ACTIVATION_TOKEN_MAX_AGE', 7 * 24 * 3600))

    # Converted shares are credited at zero cost in this currency
    SHARE_CURRENCY = os.environ.get('SHARE_CURRENCY', 'UGX')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    NOTIFICATION_URL = ''
    NOTIFICATION_LOG_ONLY = True
    LOG_LEVEL = 'DEBUG'
