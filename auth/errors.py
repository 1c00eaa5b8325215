"""
auth/errors.py -- Exceptions the auth service raises to its callers.

Only two classes of failure are exceptions:
  - ValidationError: bad input (malformed email, duplicate account). Surfaced
    to the caller as-is, never retried.
  - ServiceUnavailableError: the identity store could not be reached during
    signup or login. The caller should tell the user to try again.

Everything else (wrong password, locked account, expired session) is a typed
negative result, see LoginFailure in auth/models.py.
"""


class AuthError(Exception):
    """Base class for auth service exceptions."""


class ValidationError(AuthError):
    """Input rejected before any state was written."""


class InvalidSignupError(ValidationError):
    pass


class EmailAlreadyRegistered(ValidationError):
    def __init__(self, email: str) -> None:
        super().__init__(f"An account already exists for {email}")
        self.email = email


class ServiceUnavailableError(AuthError):
    """Store failure during signup/login. Message is safe to show users."""

    def __init__(self, message: str = "Service temporarily unavailable. Please try again.") -> None:
        super().__init__(message)
