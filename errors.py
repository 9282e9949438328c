from enum import Enum

from pydantic import ValidationError


class NotFoundError(ValueError):
    pass


class PreconditionFailed(ValueError):
    pass


class BackendUnavailable(ConnectionError):
    pass


class InvalidTransition(RuntimeError):
    pass


class ErrorKind(str, Enum):
    validation = "validation"
    precondition = "precondition"
    not_found = "not_found"
    permission = "permission"
    network = "network"
    unknown = "unknown"


def classify_error(error: BaseException) -> ErrorKind:
    # Order matters: the specific ValueError subclasses come before ValueError.
    if isinstance(error, NotFoundError):
        return ErrorKind.not_found
    if isinstance(error, PreconditionFailed):
        return ErrorKind.precondition
    if isinstance(error, (ValidationError, ValueError)):
        return ErrorKind.validation
    if isinstance(error, PermissionError):
        return ErrorKind.permission
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.network
    return ErrorKind.unknown


_MESSAGES: dict[str, dict[ErrorKind, str]] = {
    "load": {
        ErrorKind.network: "Unable to load data. Please check your connection and try again.",
        ErrorKind.validation: "The stored data is invalid. Please refresh the page.",
        ErrorKind.permission: "You don't have permission to view this.",
        ErrorKind.not_found: "We couldn't find what you were looking for.",
    },
    "update": {
        ErrorKind.network: "Unable to save changes. Please check your connection and try again.",
        ErrorKind.validation: "Some values are invalid. Please check your inputs and try again.",
        ErrorKind.permission: "You don't have permission to make this change.",
        ErrorKind.not_found: "This item no longer exists.",
    },
    "delete": {
        ErrorKind.network: "Unable to delete. Please check your connection and try again.",
        ErrorKind.validation: "This item cannot be deleted.",
        ErrorKind.permission: "You don't have permission to delete this.",
        ErrorKind.not_found: "This item was already deleted.",
    },
}

_FALLBACK = {
    "load": "Unable to load data. Please try again later.",
    "update": "Unable to save changes. Please try again later.",
    "delete": "Unable to delete. Please try again later.",
}


def user_message(error: BaseException, context: str = "update") -> str:
    """Short, user-facing text for a failed operation.

    Precondition failures carry their own explanation, so it is shown as is.
    """
    kind = classify_error(error)
    if kind is ErrorKind.precondition:
        return str(error)
    messages = _MESSAGES.get(context, _MESSAGES["update"])
    return messages.get(kind, _FALLBACK.get(context, _FALLBACK["update"]))
