import pytest

from app import create_app
from models import db, Message, BROADCAST_THREAD, thread_id, utcnow

SEED_USERS = {
    'alice': 'wonderland',
    'bob': 'builder123',
    'carol': 'carolpass',
}


class RecordingEmitter:
    """Stands in for SocketIO.emit and keeps every call"""

    def __init__(self):
        self.events = []

    def emit(self, event, data, to=None):
        self.events.append((event, data, to))

    def named(self, event):
        return [(data, to) for name, data, to in self.events if name == event]


@pytest.fixture
def app(tmp_path):
    flask_app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'tests_secret_key',
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'SEED_USERS': dict(SEED_USERS),
        'RETENTION_ENABLED': False,
        'PRUNE_UNKNOWN_USERS': False,
    })
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def socketio(app):
    return app.extensions['socketio']


@pytest.fixture
def chat_server(app):
    return app.extensions['chat_server']


@pytest.fixture
def connect(app, socketio):
    """Open a Socket.IO test client, authenticated when a username is given"""
    clients = []

    def _connect(username=None, password=None):
        sio_client = socketio.test_client(app)
        clients.append(sio_client)
        if username:
            sio_client.emit('auth', {
                'username': username,
                'password': password or SEED_USERS[username],
            })
        sio_client.get_received()
        return sio_client

    yield _connect
    for sio_client in clients:
        if sio_client.is_connected():
            sio_client.disconnect()


@pytest.fixture
def emitter():
    return RecordingEmitter()


def received(sio_client):
    """Payloads received since the last call, grouped by event name"""
    events = {}
    for pkt in sio_client.get_received():
        events.setdefault(pkt['name'], []).append(pkt['args'][0] if pkt['args'] else None)
    return events


def store_message(sender, content, receiver=None, timestamp=None, **fields):
    chat_id = thread_id(sender, receiver) if receiver else BROADCAST_THREAD
    msg = Message(
        sender=sender,
        receiver=receiver,
        content=content,
        chat_id=chat_id,
        read_by=[],
        timestamp=timestamp or utcnow(),
        **fields
    )
    db.session.add(msg)
    db.session.commit()
    return msg
