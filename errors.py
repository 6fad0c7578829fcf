class ChatError(Exception):
    """Base class for failures reported back to a connection"""
    reason = 'error'

    def __init__(self, message=None, reason=None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class AuthRejected(ChatError):
    reason = 'invalid_credentials'


class Unauthorized(ChatError):
    reason = 'unauthorized'


class NotFound(ChatError):
    reason = 'not_found'


class PersistenceFailure(ChatError):
    reason = 'persistence_failure'


class InvalidPayload(ChatError):
    reason = 'invalid_payload'
