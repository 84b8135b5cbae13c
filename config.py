import os
from dotenv import load_dotenv

# Load .env file only in development environment
if os.environ.get('FLASK_ENV') != 'production':
    load_dotenv()


def _env_flag(name, default='False'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'a_very_secret_key_for_dev')
    MONGO_URI = os.environ.get('MONGODB_URI')
    MONGO_DB_NAME = os.environ.get('MONGODB_DB_NAME', 'impactlens')
    GOOGLE_API_KEY = os.environ.get('GOOGLE_API_KEY')
    GEMINI_MODEL = os.environ.get('GEMINI_MODEL', 'gemini-2.0-flash-001')
    FLASK_ENV = os.environ.get('FLASK_ENV', 'development')
    FLASK_DEBUG = _env_flag('FLASK_DEBUG')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Debug aids, never enable in production
    EXPOSE_ERROR_STACK = _env_flag('EXPOSE_ERROR_STACK')
    LOG_REQUEST_BODIES = _env_flag('LOG_REQUEST_BODIES')

    ALLOW_ANONYMOUS_WRITES = _env_flag('ALLOW_ANONYMOUS_WRITES')
    TOKEN_MAX_AGE_SECONDS = int(os.environ.get('TOKEN_MAX_AGE_SECONDS', 7 * 24 * 3600))

    WRITER_MAX_WORKERS = int(os.environ.get('WRITER_MAX_WORKERS', 4))
    SWEEP_INTERVAL_HOURS = int(os.environ.get('SWEEP_INTERVAL_HOURS', 6))
    ORPHAN_GRACE_MINUTES = int(os.environ.get('ORPHAN_GRACE_MINUTES', 30))

    @classmethod
    def validate(cls):
        if not cls.MONGO_URI:
            raise ValueError("No MONGODB_URI provided in environment variables")
        if not cls.GOOGLE_API_KEY:
            raise ValueError("No GOOGLE_API_KEY provided in environment variables")


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False
    FLASK_ENV = 'production'
    EXPOSE_ERROR_STACK = False
    LOG_REQUEST_BODIES = False


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'testing-secret'
    MONGO_URI = 'mongodb://localhost:27017'
    MONGO_DB_NAME = 'impactlens_test'
    GOOGLE_API_KEY = 'testing-key'
    ALLOW_ANONYMOUS_WRITES = False
    EXPOSE_ERROR_STACK = False
    WRITER_MAX_WORKERS = 1


def get_config():
    env = os.environ.get('FLASK_ENV', 'development')
    if env == 'development':
        return DevelopmentConfig
    if env == 'testing':
        return TestingConfig
    return ProductionConfig
