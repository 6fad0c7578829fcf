import logging
from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from errors import InvalidPayload, NotFound, PersistenceFailure, Unauthorized
from models import db, Message, BROADCAST_THREAD, thread_id, utcnow, valid_username

logger = logging.getLogger('ChatRelayRouter')

BEST_EFFORT = 'best-effort'
REQUIRED = 'required'

DEFAULT_DURABILITY = {
    'broadcast': BEST_EFFORT,
    'file': BEST_EFFORT,
    'direct': REQUIRED,
    'delete': REQUIRED,
    'read': BEST_EFFORT,
}


class MessageRouter:
    def __init__(self, registry, emitter, durability=None, duplicate_window=10,
                 max_file_size=None):
        """Persist chat events and fan them out through the emitter.

        The emitter only needs ``emit(event, data, to=None)``; without ``to``
        the event goes to every connection.
        """
        self.registry = registry
        self.emitter = emitter
        self.durability = dict(DEFAULT_DURABILITY)
        self.durability.update(durability or {})
        self.duplicate_window = duplicate_window
        self.max_file_size = max_file_size

    @classmethod
    def from_config(cls, registry, emitter, config):
        return cls(
            registry,
            emitter,
            durability=config.get('DURABILITY'),
            duplicate_window=config.get('DUPLICATE_WINDOW_SECONDS', 10),
            max_file_size=config.get('MAX_FILE_SIZE'),
        )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_broadcast(self, sid, text):
        """Store a message for everyone and push it to all connections"""
        sender = self.registry.resolve(sid)
        if not sender:
            logger.debug(f"Dropped broadcast from unauthenticated connection {sid}")
            return None
        text = self._clean_text(text)

        msg = Message(
            sender=sender,
            receiver=None,
            content=text,
            is_file=False,
            chat_id=BROADCAST_THREAD,
            read=False,
            read_by=[],
            timestamp=utcnow(),
        )
        record = self._persist(msg, 'broadcast')
        self.emitter.emit('receive-message', record)
        return record

    def send_direct(self, sid, receiver, text):
        """Store a message between two users and deliver it to both ends"""
        sender = self.registry.resolve(sid)
        if not sender:
            logger.debug(f"Dropped direct message from unauthenticated connection {sid}")
            return None
        receiver = self._clean_receiver(receiver)
        if not receiver:
            return self.send_broadcast(sid, text)
        text = self._clean_text(text)

        chat_id = thread_id(sender, receiver)
        if self._is_duplicate(chat_id, Message.content == text):
            logger.info(f"Duplicate message from {sender} to {receiver} suppressed")
            return None

        msg = Message(
            sender=sender,
            receiver=receiver,
            content=text,
            is_file=False,
            chat_id=chat_id,
            read=False,
            read_by=[],
            timestamp=utcnow(),
        )
        record = self._persist(msg, 'direct')
        self._deliver(sid, receiver, 'receive-message', record)
        return record

    def send_file(self, sid, payload):
        """Store a file message; optional ``receiver`` makes it direct"""
        sender = self.registry.resolve(sid)
        if not sender:
            logger.debug(f"Dropped file from unauthenticated connection {sid}")
            return None
        if not isinstance(payload, dict):
            raise InvalidPayload("File payload must be an object")

        data = payload.get('data')
        name = payload.get('name')
        if not data or not isinstance(data, str) or not name:
            raise InvalidPayload("File name and data are required")
        # Measured here, never taken from the payload
        size = len(data)
        if self.max_file_size and size > self.max_file_size:
            raise InvalidPayload(f"File {name} is too large ({size} bytes)", reason='file_too_large')

        receiver = self._clean_receiver(payload.get('receiver'))
        chat_id = thread_id(sender, receiver)
        if self._is_duplicate(chat_id, Message.file_data == data):
            logger.info(f"Duplicate file {name} from {sender} suppressed")
            return None

        msg = Message(
            sender=sender,
            receiver=receiver,
            content=payload.get('message') or '',
            is_file=True,
            file_name=name,
            file_type=payload.get('type') or 'application/octet-stream',
            file_data=data,
            file_size=size,
            chat_id=chat_id,
            read=False,
            read_by=[],
            timestamp=utcnow(),
        )
        record = self._persist(msg, 'file')
        if receiver:
            self._deliver(sid, receiver, 'receive-file', record)
        else:
            self.emitter.emit('receive-file', record)
        return record

    # ------------------------------------------------------------------
    # Read state and deletion
    # ------------------------------------------------------------------

    def delete_message(self, sid, message_id):
        """Hard-delete a message for its sender or direct receiver"""
        requester = self.registry.resolve(sid)
        if not requester:
            raise Unauthorized("Not authenticated")
        msg = self._load(message_id)
        if requester not in (msg.sender, msg.receiver):
            logger.warning(f"{requester} tried to delete message {msg.id} from {msg.sender}")
            raise Unauthorized("Only the sender or receiver can delete this message")

        notice = {'messageId': msg.id, 'chatId': msg.chat_id}
        try:
            db.session.delete(msg)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            self._persistence_error('delete', f"delete message {notice['messageId']}", e)

        logger.info(f"Message {notice['messageId']} deleted by {requester}")
        self.emitter.emit('message-deleted', notice)
        return notice

    def mark_read(self, sid, message_id):
        """Add the reader to the message's readers and tell the sender"""
        reader = self.registry.resolve(sid)
        if not reader:
            logger.debug(f"Ignored read receipt from unauthenticated connection {sid}")
            return None
        msg = self._load(message_id)
        if msg.receiver and reader not in (msg.sender, msg.receiver):
            raise Unauthorized("Not a participant of this conversation")
        if reader == msg.sender:
            return msg.to_dict()

        readers = list(msg.read_by or [])
        if reader not in readers:
            # Reassign so the JSON column is flagged as changed
            msg.read_by = readers + [reader]
        msg.read = True
        notice = {'messageId': msg.id, 'reader': reader, 'chatId': msg.chat_id}
        sender = msg.sender
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            self._persistence_error('read', f"mark message {notice['messageId']} read", e)

        sender_sid = self.registry.connection_for(sender)
        if sender_sid:
            self.emitter.emit('message-read', notice, to=sender_sid)
        return notice

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history_for(self, username, limit=50):
        """Latest messages a user may see, oldest first"""
        messages = Message.query.filter(
            or_(
                Message.chat_id == BROADCAST_THREAD,
                Message.sender == username,
                Message.receiver == username,
            )
        ).order_by(Message.timestamp.desc(), Message.id.desc()).limit(limit).all()
        return [m.to_dict() for m in reversed(messages)]

    def thread_page(self, chat_id, page=1, per_page=50):
        """One page of a thread counting back from the newest message"""
        page = max(int(page), 1)
        per_page = max(int(per_page), 1)
        messages = Message.query.filter(
            Message.chat_id == chat_id
        ).order_by(
            Message.timestamp.desc(), Message.id.desc()
        ).offset((page - 1) * per_page).limit(per_page + 1).all()
        has_more = len(messages) > per_page
        messages = messages[:per_page]
        return {
            'messages': [m.to_dict() for m in reversed(messages)],
            'page': page,
            'hasMore': has_more,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _clean_text(self, text):
        if not isinstance(text, str) or not text.strip():
            raise InvalidPayload("Message text is required")
        return text

    def _clean_receiver(self, receiver):
        """None for a broadcast, otherwise a username that can form a thread id"""
        if receiver is None or receiver == '':
            return None
        if not valid_username(receiver):
            raise InvalidPayload(f"Invalid receiver: {receiver!r}", reason='invalid_receiver')
        return receiver

    def _deliver(self, sender_sid, receiver, event, record):
        receiver_sid = self.registry.connection_for(receiver)
        if receiver_sid:
            self.emitter.emit(event, record, to=receiver_sid)
        else:
            logger.info(f"{receiver} is offline, message stored only")
        if receiver_sid != sender_sid:
            self.emitter.emit(event, record, to=sender_sid)

    def _is_duplicate(self, chat_id, criterion):
        query = Message.query.filter(Message.chat_id == chat_id, criterion)
        if self.duplicate_window:
            since = utcnow() - timedelta(seconds=self.duplicate_window)
            query = query.filter(Message.timestamp >= since)
        try:
            return query.first() is not None
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Duplicate check failed for {chat_id}: {e}")
            return False

    def _load(self, message_id):
        try:
            message_id = int(message_id)
        except (TypeError, ValueError):
            raise NotFound(f"Message {message_id} not found")
        try:
            msg = db.session.get(Message, message_id)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceFailure(f"Failed to load message {message_id}") from e
        if msg is None:
            raise NotFound(f"Message {message_id} not found")
        return msg

    def _persist(self, msg, operation):
        """Save a new message and return its record"""
        try:
            db.session.add(msg)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            self._persistence_error(operation, f"store {operation} message from {msg.sender}", e)
        return msg.to_dict()

    def _persistence_error(self, operation, action, error):
        if self.durability.get(operation, REQUIRED) == REQUIRED:
            logger.error(f"Failed to {action}: {error}")
            raise PersistenceFailure(f"Failed to {action}") from error
        logger.error(f"Failed to {action}, delivering anyway: {error}")
