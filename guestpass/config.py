# GuestPass Configuration

import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def _env(*keys, default=None):
    """Return the first non-blank environment variable among keys"""
    for key in keys:
        value = os.environ.get(key)
        if value and value.strip():
            return value.strip()
    return default


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = _env('SECRET_KEY', default='guestpass-secret-key-change-this')
    PERMANENT_SESSION_LIFETIME = timedelta(seconds=int(_env('PERMANENT_SESSION_LIFETIME', default='86400')))
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_SECURE = False

    # Backend Configuration ('supabase' or 'memory')
    BACKEND = _env('BACKEND', default='supabase')
    SUPABASE_URL = _env('SUPABASE_URL', 'NEXT_PUBLIC_SUPABASE_URL')
    SUPABASE_SERVICE_ROLE_KEY = _env('SUPABASE_SERVICE_ROLE_KEY')
    SUPABASE_ANON_KEY = _env('SUPABASE_ANON_KEY', 'NEXT_PUBLIC_SUPABASE_ANON_KEY')
    MEMORY_ACCOUNTS = {}

    # Auth gate: seconds to wait for the session check before rendering the loading view
    AUTH_CHECK_TIMEOUT = float(_env('AUTH_CHECK_TIMEOUT', default='5'))
    LOADING_REFRESH_SECONDS = 2

    # QR Code Configuration
    QR_CODE_SIZE = int(_env('QR_CODE_SIZE', default='512'))
    QR_CODE_BORDER = int(_env('QR_CODE_BORDER', default='2'))
    QR_CODE_CACHE_CONTROL = 'public, max-age=31536000, immutable'

    # Logging Configuration
    LOG_LEVEL = _env('LOG_LEVEL', default='INFO')
    LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'

    DEBUG = _env('DEBUG', default='False').lower() in ['true', 'on', '1']


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'
    SECRET_KEY = 'dev-secret-key-change-in-production'
    BACKEND = _env('BACKEND', default='memory')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SESSION_COOKIE_SECURE = True
    LOG_LEVEL = 'WARNING'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'testing-secret-key'
    BACKEND = 'memory'
    AUTH_CHECK_TIMEOUT = 2.0
    LOG_LEVEL = 'WARNING'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': Config,
}


def get_config(config_name=None):
    """Get configuration class by name"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')
    return config.get(config_name, Config)
