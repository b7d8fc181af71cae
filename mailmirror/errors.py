"""Project-wide error types."""


class ProjectError(Exception):
    """Base for all mailmirror errors."""


class ValidationError(ProjectError):
    """Invalid input data."""


class DecodeError(ProjectError):
    """Durable cache payload could not be decoded."""


class ExternalServiceError(ProjectError):
    """Third-party API or service failure."""


class MailError(ExternalServiceError):
    """Remote mail provider call failed."""


class TransientNetworkError(MailError):
    """Connectivity problem, timeout or retryable server response."""


class AuthRequiredError(MailError):
    """The account has no usable session and needs the user to sign in again."""


class NotFoundError(MailError):
    """The mutation target no longer exists locally or remotely."""


__all__ = [
    "ProjectError",
    "ValidationError",
    "DecodeError",
    "ExternalServiceError",
    "MailError",
    "TransientNetworkError",
    "AuthRequiredError",
    "NotFoundError",
]
