import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _flag(name, default='false'):
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key')
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///parking.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Gemini query parsing
    GEMINI_API_KEY = os.getenv('GEMINI_API_KEY') or os.getenv('GOOGLE_API_KEY')
    GEMINI_MODEL = os.getenv('GEMINI_MODEL', 'gemini-2.0-flash')
    GEMINI_MAX_RETRIES = int(os.getenv('GEMINI_MAX_RETRIES', '2'))
    GEMINI_BACKOFF_SECONDS = float(os.getenv('GEMINI_BACKOFF_SECONDS', '0.5'))

    # Booking rules
    MIN_BOOKING_HOURS = float(os.getenv('MIN_BOOKING_HOURS', '1'))
    MAX_BOOKING_HOURS = float(os.getenv('MAX_BOOKING_HOURS', '24'))
    ADVANCE_HORIZON_DAYS = int(os.getenv('ADVANCE_HORIZON_DAYS', '7'))
    IMMEDIATE_START_TOLERANCE_SECONDS = int(os.getenv('IMMEDIATE_START_TOLERANCE_SECONDS', '300'))
    ARRIVAL_GRACE_MINUTES = int(os.getenv('ARRIVAL_GRACE_MINUTES', '15'))
    FAIL_OPEN_ON_STALE_READ = _flag('FAIL_OPEN_ON_STALE_READ')

    DEFAULT_SEARCH_RADIUS_M = float(os.getenv('DEFAULT_SEARCH_RADIUS_M', '1000'))

    # Live views
    SOCKETIO_CORS_ORIGINS = os.getenv('SOCKETIO_CORS_ORIGINS', '*')


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    GEMINI_API_KEY = None
    GEMINI_MAX_RETRIES = 1
    GEMINI_BACKOFF_SECONDS = 0
    FAIL_OPEN_ON_STALE_READ = False
