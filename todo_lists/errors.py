class TodoListsError(Exception):
    """Base class for errors raised by the task store, list policy and auth gate."""


class ValidationError(TodoListsError):
    """Empty or malformed input."""


class UsernameTaken(ValidationError):
    pass


class NotFoundError(TodoListsError):
    """The targeted task does not exist in the caller's owner scope."""


class Unauthenticated(TodoListsError):
    """An owner-scoped operation was attempted without a valid session."""


class InvalidCredentials(TodoListsError):
    pass


class ProtectedListError(TodoListsError):
    """Attempt to delete the default list."""
