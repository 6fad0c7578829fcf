import os

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def parse_seed_users(raw):
    """Parse 'alice:secret,bob:secret' into {'alice': 'secret', 'bob': 'secret'}"""
    users = {}
    for item in (raw or '').split(','):
        if ':' in item:
            name, password = item.split(':', 1)
            if name.strip():
                users[name.strip()] = password.strip()
    return users


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or os.urandom(24)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///chat.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    HOST = os.environ.get('HOST', '0.0.0.0')
    PORT = int(os.environ.get('PORT', 5000))
    CORS_ORIGINS = os.environ.get('CHAT_CORS_ORIGINS', '*')
    # None lets Flask-SocketIO pick eventlet, gevent or threading
    ASYNC_MODE = os.environ.get('CHAT_ASYNC_MODE')

    UPLOAD_FOLDER = os.environ.get('CHAT_UPLOAD_FOLDER', os.path.join(BASE_DIR, 'uploads'))
    MAX_CONTENT_LENGTH = 30 * 1024 * 1024  # 30MB max upload size
    MAX_FILE_SIZE = int(os.environ.get('CHAT_MAX_FILE_SIZE', 30 * 1024 * 1024))
    # Socket.IO frames carry base64 data URLs, a third larger than the file
    SOCKET_BUFFER_SIZE = int(os.environ.get('CHAT_SOCKET_BUFFER_SIZE', MAX_FILE_SIZE * 4 // 3 + 64 * 1024))

    # 'per-user' or 'shared-secret'
    AUTH_MODE = os.environ.get('CHAT_AUTH_MODE', 'per-user')
    SHARED_PASSWORD = os.environ.get('CHAT_PASSWORD')
    SEED_USERS = parse_seed_users(os.environ.get('CHAT_SEED_USERS'))
    PRUNE_UNKNOWN_USERS = os.environ.get('CHAT_PRUNE_USERS', '0') == '1'
    MIN_PASSWORD_LENGTH = int(os.environ.get('CHAT_MIN_PASSWORD_LENGTH', 6))

    HISTORY_LIMIT = int(os.environ.get('CHAT_HISTORY_LIMIT', 50))
    PAGE_SIZE = int(os.environ.get('CHAT_PAGE_SIZE', 50))
    DUPLICATE_WINDOW_SECONDS = int(os.environ.get('CHAT_DUPLICATE_WINDOW', 10))

    # Per-operation overrides of router.DEFAULT_DURABILITY, e.g. {'broadcast': 'required'}
    DURABILITY = {}

    RETENTION_ENABLED = os.environ.get('CHAT_RETENTION', '1') == '1'
    RETENTION_THRESHOLD_BYTES = int(os.environ.get('CHAT_RETENTION_THRESHOLD', 350 * 1024 * 1024))
    RETENTION_BATCH_SIZE = int(os.environ.get('CHAT_RETENTION_BATCH', 100))
    RETENTION_INTERVAL_SECONDS = int(os.environ.get('CHAT_RETENTION_INTERVAL', 3600))
