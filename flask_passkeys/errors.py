"""
Flask-Passkeys Errors
=====================
Every failure raised by the ceremony orchestrator is a ``PasskeyError``.

Identity and verification failures share ``CeremonyError`` so the
transport layer can answer all of them with the same generic message
and never reveal whether a username exists or which step failed.
"""


class PasskeyError(Exception):
    """Base class for flask-passkeys errors."""


class InvalidInput(PasskeyError):
    """Caller supplied a missing or malformed identifier or response."""


class StoreError(PasskeyError):
    """A storage backend failed. The driver exception is the __cause__."""


class CeremonyError(PasskeyError):
    """A registration or authentication ceremony was rejected."""

    public_message = "Passkey ceremony failed"


class UserNotFound(CeremonyError):
    pass


class ChallengeNotFound(CeremonyError):
    pass


class CredentialNotFound(CeremonyError):
    pass


class VerificationFailed(CeremonyError):
    pass


class RegistrationFailed(CeremonyError):
    """Unexpected failure while completing a registration."""


class AuthenticationFailed(CeremonyError):
    """Unexpected failure while completing an authentication."""
