"""Exception types raised across CogniPath."""


class CogniPathError(Exception):
    """Base class for all CogniPath errors."""


class GenerationError(CogniPathError):
    """A content generation call failed or returned unusable data.

    The message is safe to show to the user as-is.
    """


class ChatError(CogniPathError):
    """The tutor model could not produce a reply."""


class PersistenceError(CogniPathError):
    """A remote document store read, write or delete failed."""


class AuthError(CogniPathError):
    """Sign-in or sign-out failed."""


class StorageError(CogniPathError):
    """The local session snapshot could not be read or written."""


class InvalidTransitionError(CogniPathError):
    """An operation is not allowed in the current session step."""
