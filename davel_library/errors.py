"""Exceptions raised by the reservation, fee and membership services.

Every service error derives from :class:`LibraryError` and carries the HTTP
status the API layer should answer with.  Services roll back the session
before raising, so a caught error never leaves a half-written transition.
"""


class LibraryError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'success': False, 'error': self.message}


class InvalidStateError(LibraryError):
    """An illegal status transition was attempted."""


class NoCopiesAvailableError(LibraryError):
    """Activation attempted while the book has zero available copies."""


class NoActiveFeeStructureError(LibraryError):
    """A fee was assessed for a type with no active fee structure."""


class ValidationError(LibraryError):

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors or {}

    def to_dict(self):
        payload = super().to_dict()
        if self.errors:
            payload['errors'] = self.errors
        return payload


class NotFoundError(LibraryError):
    status_code = 404


class AuthorizationError(LibraryError):
    status_code = 401

    def __init__(self, message='Unauthorized', status_code=None):
        super().__init__(message, status_code)
