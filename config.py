import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return int(value)


class Config:
    GOOGLE_APPLICATION_CREDENTIALS = os.environ.get('GOOGLE_APPLICATION_CREDENTIALS', './firebase-service-account.json')
    FIREBASE_PROJECT_ID = os.environ.get('FIREBASE_PROJECT_ID')

    ACTIVITIES_PAGE_SIZE = _int_env('ACTIVITIES_PAGE_SIZE', 10)
    CLASS_HISTORY_LIMIT = _int_env('CLASS_HISTORY_LIMIT', 50)
    ATTENDANCE_SESSION_LIMIT = _int_env('ATTENDANCE_SESSION_LIMIT', 20)

    PRIVATE_NOTIFICATION_LIMIT = _int_env('PRIVATE_NOTIFICATION_LIMIT', 20)
    NOTIFICATION_WINDOW_DAYS = _int_env('NOTIFICATION_WINDOW_DAYS', 7)
    BROADCAST_TTL_DAYS = _int_env('BROADCAST_TTL_DAYS', 30)

    NETWORK_TIMEOUT_SECONDS = float(os.environ.get('NETWORK_TIMEOUT_SECONDS') or 15)
    NETWORK_RETRY_ATTEMPTS = _int_env('NETWORK_RETRY_ATTEMPTS', 3)

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
