import hmac
import logging

import bcrypt
from sqlalchemy.exc import SQLAlchemyError

from errors import AuthRejected, InvalidPayload, NotFound, PersistenceFailure
from models import db, User, utcnow, valid_username

logger = logging.getLogger('ChatRelayAuth')

PER_USER = 'per-user'
SHARED_SECRET = 'shared-secret'

UPLOAD_PREFIX = '/uploads/'


def hash_password(password):
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt())


def check_password(password, hashed):
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed)
    except ValueError:
        # Malformed hash in the store
        return False


def _same(a, b):
    return hmac.compare_digest(a.encode('utf-8'), b.encode('utf-8'))


class Authenticator:
    def __init__(self, mode=PER_USER, shared_password=None, seed_users=None, min_password_length=6):
        """Validate credentials against the user store, the seed list or a shared secret"""
        if mode not in (PER_USER, SHARED_SECRET):
            raise ValueError(f"Unknown auth mode: {mode}")
        if mode == SHARED_SECRET and not shared_password:
            raise ValueError("Shared-secret mode needs a shared password")
        self.mode = mode
        self.shared_password = shared_password
        self.seed_users = dict(seed_users or {})
        self.min_password_length = min_password_length

    @classmethod
    def from_config(cls, config):
        return cls(
            mode=config.get('AUTH_MODE', PER_USER),
            shared_password=config.get('SHARED_PASSWORD'),
            seed_users=config.get('SEED_USERS'),
            min_password_length=config.get('MIN_PASSWORD_LENGTH', 6),
        )

    def authenticate(self, username, password):
        """Return True when the credentials are accepted"""
        if not username or not password:
            return False
        if not valid_username(username) or not isinstance(password, str):
            logger.warning(f"Rejected malformed credentials for {username!r}")
            return False

        if self.mode == SHARED_SECRET:
            accepted = _same(password, self.shared_password)
            if not accepted:
                logger.warning(f"Shared password rejected for {username}")
            return accepted

        try:
            user = User.query.filter_by(username=username).first()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"User store unavailable, using seed list for {username}: {e}")
            user = None

        if user is not None:
            if check_password(password, user.password):
                return True
            logger.warning(f"Invalid password for user: {username}")
            return False

        seed_password = self.seed_users.get(username)
        if seed_password is not None and _same(password, seed_password):
            logger.info(f"Accepted {username} from seed list")
            return True

        logger.warning(f"Username not found: {username}")
        return False

    def provision_seed_users(self):
        """Create any seed user missing from the store"""
        created = []
        for username, password in self.seed_users.items():
            if User.query.filter_by(username=username).first() is None:
                db.session.add(User(username=username, password=hash_password(password)))
                created.append(username)
        db.session.commit()
        if created:
            logger.info(f"Provisioned seed users: {', '.join(created)}")
        return created

    def prune_users(self):
        """Delete every user that is not on the seed list"""
        stale = User.query.filter(User.username.notin_(list(self.seed_users))).all()
        removed = [u.username for u in stale]
        for user in stale:
            db.session.delete(user)
        db.session.commit()
        if removed:
            logger.info(f"Removed users outside the seed list: {', '.join(removed)}")
        return removed

    def change_password(self, username, old_password, new_password):
        if not isinstance(new_password, str) or len(new_password) < self.min_password_length:
            raise InvalidPayload(
                f"Password must be at least {self.min_password_length} characters",
                reason='password_too_short',
            )
        user = User.query.filter_by(username=username).first()
        if user is None:
            raise NotFound(f"User {username} not found")
        if not isinstance(old_password, str) or not check_password(old_password, user.password):
            raise AuthRejected("Current password is incorrect")

        user.password = hash_password(new_password)
        user.has_changed_password = True
        self._commit(f"change password for {username}")
        logger.info(f"Password changed for user: {username}")

    def update_profile_pic(self, username, profile_pic):
        if not isinstance(profile_pic, str) or not (
            profile_pic.startswith('data:image/') or profile_pic.startswith(UPLOAD_PREFIX)
        ):
            raise InvalidPayload("Profile picture must be an image", reason='invalid_image')
        user = User.query.filter_by(username=username).first()
        if user is None:
            raise NotFound(f"User {username} not found")
        user.profile_pic = profile_pic
        self._commit(f"update profile picture for {username}")
        return user

    def touch(self, username, online):
        """Record activity; failures here never block a connection"""
        try:
            user = User.query.filter_by(username=username).first()
            if user is None:
                return None
            user.online = online
            user.last_active = utcnow()
            db.session.commit()
            return user
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to update presence for {username}: {e}")
            return None

    def _commit(self, action):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceFailure(f"Failed to {action}") from e
