from models import db, Message, User, thread_id
from conftest import received, store_message


def test_auth_failure(connect, chat_server):
    sio_client = connect()
    sio_client.emit('auth', {'username': 'alice', 'password': 'wrong'})
    events = received(sio_client)
    assert events['auth-failed'] == [{'message': 'Invalid credentials'}]
    assert 'auth-success' not in events
    assert chat_server.registry.list_active() == []


def test_auth_success_sends_history_and_active_users(app, connect, chat_server):
    with app.app_context():
        store_message('bob', 'first')
        store_message('carol', 'second')
        store_message('bob', 'not for alice', receiver='carol')

    sio_client = connect()
    sio_client.emit('auth', {'username': 'alice', 'password': 'wonderland'})
    events = received(sio_client)

    assert events['auth-success'] == [{'username': 'alice', 'profilePic': None}]
    history = events['message-history'][0]
    assert [m['message'] for m in history] == ['first', 'second']
    assert events['users-update'] == [['alice']]
    assert chat_server.registry.list_active() == ['alice']

    with app.app_context():
        assert User.query.filter_by(username='alice').first().online is True


def test_users_update_on_connect_and_disconnect(app, connect):
    alice = connect('alice')
    bob = connect('bob')
    assert received(alice)['users-update'] == [['alice', 'bob']]

    bob.disconnect()
    assert received(alice)['users-update'] == [['alice']]
    with app.app_context():
        assert User.query.filter_by(username='bob').first().online is False


def test_broadcast_reaches_everyone(app, connect):
    alice = connect('alice')
    bob = connect('bob')
    received(alice)

    alice.emit('send-message', {'message': 'hi all'})
    for sio_client in (alice, bob):
        records = received(sio_client)['receive-message']
        assert len(records) == 1
        assert records[0]['sender'] == 'alice'
        assert records[0]['message'] == 'hi all'
        assert records[0]['receiver'] is None


def test_plain_string_message_is_a_broadcast(connect):
    alice = connect('alice')
    alice.emit('send-message', 'just text')
    assert received(alice)['receive-message'][0]['message'] == 'just text'


def test_unauthenticated_broadcast_is_dropped(app, connect):
    bob = connect('bob')
    stranger = connect()
    stranger.emit('send-message', {'message': 'hi'})

    assert 'receive-message' not in received(bob)
    assert 'receive-message' not in received(stranger)
    with app.app_context():
        assert Message.query.count() == 0


def test_direct_message_reaches_only_the_pair(connect):
    alice = connect('alice')
    bob = connect('bob')
    carol = connect('carol')
    received(alice)
    received(bob)

    alice.emit('send-message', {'message': 'psst', 'receiver': 'bob'})
    bob_records = received(bob)['receive-message']
    alice_records = received(alice)['receive-message']
    assert bob_records == alice_records
    assert bob_records[0]['chatId'] == thread_id('alice', 'bob')
    assert 'receive-message' not in received(carol)


def test_repeated_direct_message_is_delivered_once(app, connect):
    alice = connect('alice')
    bob = connect('bob')
    received(bob)

    alice.emit('send-message', {'message': 'retry', 'receiver': 'bob'})
    alice.emit('send-message', {'message': 'retry', 'receiver': 'bob'})
    assert len(received(bob)['receive-message']) == 1
    with app.app_context():
        assert Message.query.count() == 1


def test_empty_message_is_reported(connect):
    alice = connect('alice')
    alice.emit('send-message', {'message': ''})
    failure = received(alice)['message-failed'][0]
    assert failure['reason'] == 'invalid_payload'


def test_send_file(connect):
    alice = connect('alice')
    bob = connect('bob')
    received(bob)

    alice.emit('send-file', {
        'name': 'cat.png',
        'type': 'image/png',
        'data': 'data:image/png;base64,iVBORw0KGgo=',
        'size': 8,
    })
    record = received(bob)['receive-file'][0]
    assert record['isFile'] is True
    assert record['fileData']['name'] == 'cat.png'
    assert record['sender'] == 'alice'


def test_send_file_with_bad_payload(connect):
    alice = connect('alice')
    alice.emit('send-file', {'name': 'empty.bin'})
    assert received(alice)['file-failed'][0]['reason'] == 'invalid_payload'


def test_delete_by_non_participant_fails(app, connect):
    with app.app_context():
        msg_id = store_message('alice', 'ours', receiver='bob').id
    carol = connect('carol')
    carol.emit('delete-message', {'messageId': msg_id})
    failure = received(carol)['delete-failed'][0]
    assert failure['reason'] == 'unauthorized'
    assert failure['messageId'] == msg_id
    with app.app_context():
        assert db.session.get(Message, msg_id) is not None


def test_delete_by_sender_retracts_everywhere(app, connect):
    with app.app_context():
        msg_id = store_message('alice', 'oops').id
    alice = connect('alice')
    carol = connect('carol')
    received(alice)

    alice.emit('delete-message', {'messageId': msg_id})
    notice = {'messageId': msg_id, 'chatId': 'broadcast'}
    assert received(alice)['message-deleted'] == [notice]
    assert received(carol)['message-deleted'] == [notice]
    with app.app_context():
        assert db.session.get(Message, msg_id) is None


def test_delete_missing_message(connect):
    alice = connect('alice')
    alice.emit('delete-message', {'messageId': 12345})
    assert received(alice)['delete-failed'][0]['reason'] == 'not_found'


def test_mark_read_notifies_sender(app, connect):
    with app.app_context():
        msg_id = store_message('alice', 'did you see?', receiver='bob').id
    alice = connect('alice')
    bob = connect('bob')
    received(alice)

    bob.emit('mark-message-read', {'messageId': msg_id})
    bob.emit('mark-message-read', {'messageId': msg_id})
    notices = received(alice)['message-read']
    assert notices[0] == {'messageId': msg_id, 'reader': 'bob', 'chatId': thread_id('alice', 'bob')}
    with app.app_context():
        assert db.session.get(Message, msg_id).read_by == ['bob']


def test_change_password(connect, chat_server, app):
    alice = connect('alice')
    alice.emit('change-password', {
        'username': 'alice',
        'oldPassword': 'wonderland',
        'newPassword': 'looking-glass',
    })
    assert received(alice)['password-change-success'] == [{'username': 'alice'}]
    with app.app_context():
        assert chat_server.authenticator.authenticate('alice', 'looking-glass')


def test_change_password_for_someone_else_fails(connect):
    alice = connect('alice')
    alice.emit('change-password', {
        'username': 'bob',
        'oldPassword': 'builder123',
        'newPassword': 'hijacked!',
    })
    assert received(alice)['password-change-failed'][0]['reason'] == 'unauthorized'


def test_change_password_with_wrong_old_password(connect):
    alice = connect('alice')
    alice.emit('change-password', {
        'username': 'alice',
        'oldPassword': 'nope',
        'newPassword': 'looking-glass',
    })
    assert received(alice)['password-change-failed'][0]['reason'] == 'invalid_credentials'


def test_update_profile_pic_is_broadcast(app, connect):
    alice = connect('alice')
    bob = connect('bob')
    received(bob)

    picture = 'data:image/png;base64,iVBORw0KGgo='
    alice.emit('update-profile-pic', {'username': 'alice', 'profilePic': picture})
    assert received(bob)['profile-pic-updated'] == [{'username': 'alice', 'profilePic': picture}]
    with app.app_context():
        assert User.query.filter_by(username='alice').first().profile_pic == picture


def test_update_profile_pic_rejects_non_images(connect):
    alice = connect('alice')
    alice.emit('update-profile-pic', {'username': 'alice', 'profilePic': 'javascript:alert(1)'})
    assert received(alice)['profile-pic-update-failed'][0]['reason'] == 'invalid_image'


def test_duplicate_login_routes_to_latest_connection(connect, chat_server):
    first = connect('bob')
    second = connect('bob')
    alice = connect('alice')
    received(first)
    received(second)

    assert chat_server.registry.list_active() == ['bob', 'alice']
    alice.emit('send-message', {'message': 'which bob?', 'receiver': 'bob'})
    assert 'receive-message' in received(second)
    assert 'receive-message' not in received(first)


def test_shared_secret_mode(tmp_path):
    from app import create_app
    shared_app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'SEED_USERS': {},
        'AUTH_MODE': 'shared-secret',
        'SHARED_PASSWORD': 'letmein',
        'RETENTION_ENABLED': False,
    })
    socketio = shared_app.extensions['socketio']
    sio_client = socketio.test_client(shared_app)
    sio_client.emit('auth', {'username': 'zoe', 'password': 'letmein'})
    assert 'auth-success' in received(sio_client)
    sio_client.emit('auth', {'username': 'zoe', 'password': 'wonderland'})
    assert 'auth-failed' in received(sio_client)
    sio_client.disconnect()


def test_malformed_receiver_is_reported(app, connect):
    alice = connect('alice')
    alice.emit('send-message', {'message': 'hi', 'receiver': 42})
    assert received(alice)['message-failed'][0]['reason'] == 'invalid_receiver'

    alice.emit('send-file', {'name': 'a.txt', 'data': 'data:text/plain;base64,aGk=', 'receiver': {}})
    assert received(alice)['file-failed'][0]['reason'] == 'invalid_receiver'
    with app.app_context():
        assert Message.query.count() == 0


def test_reauth_as_another_user_clears_previous_presence(app, connect, chat_server):
    sio_client = connect('alice')
    sio_client.emit('auth', {'username': 'bob', 'password': 'builder123'})
    assert 'auth-success' in received(sio_client)
    assert chat_server.registry.list_active() == ['bob']
    with app.app_context():
        assert User.query.filter_by(username='alice').first().online is False
        assert User.query.filter_by(username='bob').first().online is True


def test_reauth_keeps_presence_of_user_still_connected(app, connect):
    connect('alice')
    sio_client = connect('alice')
    sio_client.emit('auth', {'username': 'bob', 'password': 'builder123'})
    with app.app_context():
        assert User.query.filter_by(username='alice').first().online is True


def test_socket_buffer_fits_largest_file(app, socketio):
    assert socketio.server.eio.max_http_buffer_size >= app.config['MAX_FILE_SIZE']
