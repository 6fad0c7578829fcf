from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

# Initialize SQLAlchemy (to be initialized with app in app.py)
db = SQLAlchemy()

BROADCAST_THREAD = 'broadcast'
THREAD_SEPARATOR = ':'


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def valid_username(username):
    """Usernames are non-empty strings without the thread separator"""
    return isinstance(username, str) and bool(username.strip()) and THREAD_SEPARATOR not in username


def thread_id(user_a, user_b=None):
    """Return the chat id shared by two users, or the broadcast sentinel"""
    if user_b is None:
        return BROADCAST_THREAD
    return THREAD_SEPARATOR.join(sorted([user_a, user_b]))


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password = db.Column(db.LargeBinary, nullable=False)
    has_changed_password = db.Column(db.Boolean, default=False, nullable=False)
    profile_pic = db.Column(db.Text, nullable=True)
    last_active = db.Column(db.DateTime, default=utcnow)
    online = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'username': self.username,
            'profilePic': self.profile_pic,
            'online': bool(self.online),
            'lastActive': self.last_active.isoformat() if self.last_active else None,
        }


class Message(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    sender = db.Column(db.String(80), nullable=False, index=True)
    receiver = db.Column(db.String(80), nullable=True)  # Null for broadcast
    content = db.Column(db.Text, nullable=True)
    is_file = db.Column(db.Boolean, default=False, nullable=False)
    file_name = db.Column(db.String(255), nullable=True)
    file_type = db.Column(db.String(255), nullable=True)
    file_data = db.Column(db.Text, nullable=True)  # data URL or upload path
    file_size = db.Column(db.Integer, nullable=True)
    chat_id = db.Column(db.String(170), nullable=False, index=True)
    read = db.Column(db.Boolean, default=False, nullable=False)
    read_by = db.Column(db.JSON, default=list, nullable=False)
    timestamp = db.Column(db.DateTime, default=utcnow, index=True)

    def to_dict(self):
        record = {
            'id': self.id,
            'sender': self.sender,
            'receiver': self.receiver,
            'message': self.content,
            'isFile': bool(self.is_file),
            'chatId': self.chat_id,
            'read': bool(self.read),
            'readBy': list(self.read_by or []),
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }
        if self.is_file:
            record['fileData'] = {
                'name': self.file_name,
                'type': self.file_type,
                'data': self.file_data,
                'size': self.file_size,
            }
        return record
