import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError

from auth import Authenticator
from errors import ChatError, Unauthorized
from models import db
from registry import SessionRegistry
from retention import RetentionSweeper
from router import MessageRouter

logger = logging.getLogger('ChatRelayServer')


class ChatServer:
    def __init__(self, app, socketio):
        """Wire the registry, authenticator, router and sweeper to Socket.IO events"""
        self.app = app
        self.socketio = socketio
        self.history_limit = app.config['HISTORY_LIMIT']

        self.registry = SessionRegistry()
        self.authenticator = Authenticator.from_config(app.config)
        self.router = MessageRouter.from_config(self.registry, socketio, app.config)
        self.sweeper = RetentionSweeper.from_config(app, socketio)

        handlers = {
            'connect': self.handle_connect,
            'disconnect': self.handle_disconnect,
            'auth': self.handle_auth,
            'send-message': self.handle_send_message,
            'send-file': self.handle_send_file,
            'delete-message': self.handle_delete_message,
            'mark-message-read': self.handle_mark_read,
            'change-password': self.handle_change_password,
            'update-profile-pic': self.handle_update_profile_pic,
        }
        for event, handler in handlers.items():
            socketio.on_event(event, handler)

    def start(self):
        """Start background work that runs beside the event handlers"""
        if self.app.config['RETENTION_ENABLED']:
            self.sweeper.start()

    def stop(self):
        self.sweeper.stop()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def handle_connect(self, auth=None):
        logger.info(f"Client connected: {request.sid}")

    def handle_disconnect(self, reason=None):
        sid = request.sid
        username = self.registry.unregister(sid)
        if username and self.registry.connection_for(username) is None:
            self.authenticator.touch(username, False)
        self.broadcast_active_users()
        logger.info(f"Client disconnected: {sid} ({username or 'unauthenticated'})")

    def handle_auth(self, data):
        sid = request.sid
        data = self._payload(data)
        username = str(data.get('username') or '').strip()
        password = data.get('password') or ''

        if not self.authenticator.authenticate(username, password):
            self.send(sid, 'auth-failed', {'message': 'Invalid credentials'})
            return

        previous = self.registry.resolve(sid)
        self.registry.register(sid, username)
        if previous and previous != username and self.registry.connection_for(previous) is None:
            self.authenticator.touch(previous, False)
        user = self.authenticator.touch(username, True)
        self.send(sid, 'auth-success', {
            'username': username,
            'profilePic': user.profile_pic if user else None,
        })
        self.send(sid, 'message-history', self._history(username))
        self.broadcast_active_users()
        logger.info(f"Authenticated {username} on {sid}")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def handle_send_message(self, data):
        sid = request.sid
        if isinstance(data, str):
            data = {'message': data}
        data = self._payload(data)
        try:
            self.router.send_direct(sid, data.get('receiver'), data.get('message'))
        except ChatError as e:
            self.fail(sid, 'message-failed', e)

    def handle_send_file(self, data):
        sid = request.sid
        try:
            self.router.send_file(sid, data)
        except ChatError as e:
            self.fail(sid, 'file-failed', e)

    def handle_delete_message(self, data):
        sid = request.sid
        message_id = self._payload(data).get('messageId')
        try:
            self.router.delete_message(sid, message_id)
        except ChatError as e:
            self.fail(sid, 'delete-failed', e, messageId=message_id)

    def handle_mark_read(self, data):
        sid = request.sid
        message_id = self._payload(data).get('messageId')
        try:
            self.router.mark_read(sid, message_id)
        except ChatError as e:
            self.fail(sid, 'read-failed', e, messageId=message_id)

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def handle_change_password(self, data):
        sid = request.sid
        data = self._payload(data)
        username = data.get('username')
        try:
            self._require_user(sid, username)
            self.authenticator.change_password(
                username, data.get('oldPassword'), data.get('newPassword')
            )
        except ChatError as e:
            self.fail(sid, 'password-change-failed', e)
            return
        self.send(sid, 'password-change-success', {'username': username})

    def handle_update_profile_pic(self, data):
        sid = request.sid
        data = self._payload(data)
        username = data.get('username')
        try:
            self._require_user(sid, username)
            user = self.authenticator.update_profile_pic(username, data.get('profilePic'))
        except ChatError as e:
            self.fail(sid, 'profile-pic-update-failed', e)
            return
        self.socketio.emit('profile-pic-updated', {
            'username': user.username,
            'profilePic': user.profile_pic,
        })

    # ------------------------------------------------------------------
    # Emission helpers
    # ------------------------------------------------------------------

    def send(self, sid, event, data):
        self.socketio.emit(event, data, to=sid)

    def fail(self, sid, event, error, **extra):
        logger.warning(f"{event} for {sid}: {error}")
        payload = {'message': str(error), 'reason': error.reason}
        payload.update(extra)
        self.send(sid, event, payload)

    def broadcast_active_users(self):
        """Send the list of active usernames to all connections"""
        self.socketio.emit('users-update', self.registry.list_active())

    def _history(self, username):
        try:
            return self.router.history_for(username, self.history_limit)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to load history for {username}: {e}")
            return []

    def _require_user(self, sid, username):
        if not username or self.registry.resolve(sid) != username:
            raise Unauthorized("Not authenticated as this user")

    @staticmethod
    def _payload(data):
        return data if isinstance(data, dict) else {}
