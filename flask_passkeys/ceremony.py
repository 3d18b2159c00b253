"""
ceremony.py: passkey registration and authentication ceremonies

Flow for either ceremony:
  1) begin_*(username) -> options for the browser's WebAuthn API
  2) browser: navigator.credentials.create()/get()
  3) complete_*(username, response) -> updated User, or a CeremonyError

Guarantees:
- One pending challenge per user; a new begin_* supersedes the old one.
- A challenge is consumed before verification, whatever the outcome.
- A new credential or counter is persisted only after verification passes.
- The signature counter is written with compare-and-swap, never blindly.
"""

from __future__ import annotations

import json
import logging
import secrets
from typing import Any, Dict, Optional

from .errors import (
    AuthenticationFailed,
    ChallengeNotFound,
    CredentialNotFound,
    InvalidInput,
    RegistrationFailed,
    UserNotFound,
    VerificationFailed,
)
from .gateway import VerificationGateway
from .models import User
from .storage import ChallengeStore, UserCredentialStore

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32
DEFAULT_EXCLUDE_TRANSPORTS = ("internal", "usb", "ble", "nfc")


def _response_credential_id(response) -> Optional[str]:
    """Credential id (base64url, unpadded) from a dict or JSON-string response."""
    if isinstance(response, (str, bytes)):
        try:
            response = json.loads(response)
        except ValueError:
            return None
    if not isinstance(response, dict):
        return None
    credential_id = response.get("id") or response.get("rawId")
    if not isinstance(credential_id, str):
        return None
    return credential_id.rstrip("=")


class CeremonyOrchestrator:
    """
    Sequences challenge issuance, user binding, gateway verification and
    counter updates. Holds configuration only; all state lives in the stores.
    """

    def __init__(
        self,
        rp_id: str,
        rp_name: str,
        user_store: UserCredentialStore,
        challenge_store: ChallengeStore,
        gateway: VerificationGateway,
        *,
        origin: Optional[str] = None,
    ):
        self._rp_id = rp_id
        self._rp_name = rp_name
        self._origin = origin or f"https://{rp_id}"
        self._users = user_store
        self._challenges = challenge_store
        self._gateway = gateway

    @property
    def rp_id(self) -> str:
        return self._rp_id

    @property
    def rp_name(self) -> str:
        return self._rp_name

    @property
    def origin(self) -> str:
        return self._origin

    @staticmethod
    def _require(value, name):
        if not value:
            raise InvalidInput(f"{name} is required")

    @staticmethod
    def _require_username(username):
        # JSON bodies can carry lists, dicts or numbers here
        if not isinstance(username, str) or not username:
            raise InvalidInput("Username must be a non-empty string")

    def _get_user(self, username: str) -> User:
        user = self._users.get(username)
        if user is None:
            raise UserNotFound(username)
        return user

    def _consume_challenge(self, user: User) -> bytes:
        challenge = self._challenges.pop(user.user_id)
        if challenge is None:
            raise ChallengeNotFound(user.username)
        return challenge

    def _issue_challenge(self, user: User) -> bytes:
        challenge = secrets.token_bytes(CHALLENGE_BYTES)
        self._challenges.save(user.user_id, challenge)
        return challenge

    # ==================== Registration ====================

    def begin_registration(self, username: str) -> Dict[str, Any]:
        """
        Start a registration ceremony, creating the user on first use.

        The new user is persisted right away, so an abandoned ceremony
        still reserves the username for its user id.
        """
        self._require_username(username)

        user = self._users.get(username)
        if user is None:
            user = User.create(username)
            self._users.save(user)
            logger.info("Created user %s", username)

        exclude = [
            {"id": cred.id, "transports": list(cred.transports or DEFAULT_EXCLUDE_TRANSPORTS)}
            for cred in user.credentials
        ]
        challenge = self._issue_challenge(user)

        return self._gateway.registration_options(
            rp_id=self._rp_id,
            rp_name=self._rp_name,
            user_id=user.user_id,
            username=user.username,
            challenge=challenge,
            exclude_credentials=exclude,
        )

    def complete_registration(self, username: str, response) -> User:
        """Verify a registration response and attach the new passkey."""
        self._require_username(username)
        self._require(response, "Credential")

        try:
            user = self._get_user(username)
            challenge = self._consume_challenge(user)

            result = self._gateway.verify_registration(
                response,
                expected_challenge=challenge,
                expected_origin=self._origin,
                expected_rp_id=self._rp_id,
                require_user_verification=True,
            )
            if not result.verified:
                raise VerificationFailed("Registration response not verified")
            if result.credential is None:
                raise VerificationFailed("Verified registration carried no credential")
            if user.find_credential(result.credential.id):
                raise VerificationFailed("Credential already registered")

            updated = self._users.add_credential(user.user_id, result.credential)
        except (InvalidInput, UserNotFound, ChallengeNotFound, VerificationFailed) as exc:
            logger.warning("Registration rejected for %s: %s", username, type(exc).__name__)
            raise
        except Exception as exc:
            logger.exception("Registration failed for %s", username)
            raise RegistrationFailed("Registration could not be completed") from exc

        logger.info("Registered passkey for %s", username)
        return updated

    # ==================== Authentication ====================

    def begin_authentication(self, username: str) -> Dict[str, Any]:
        """
        Start an authentication ceremony.

        Platform (internal) passkeys are preferred: when the user has any,
        only those are allowed; otherwise any registered passkey may answer.
        """
        self._require_username(username)
        user = self._get_user(username)

        platform = [c for c in user.credentials if c.is_platform()]
        allow = None
        if platform:
            allow = [{"id": c.id, "transports": list(c.transports)} for c in platform]

        challenge = self._issue_challenge(user)

        return self._gateway.authentication_options(
            rp_id=self._rp_id,
            challenge=challenge,
            allow_credentials=allow,
        )

    def complete_authentication(self, username: str, response) -> User:
        """Verify an assertion, then persist the gateway's new signature counter."""
        self._require_username(username)
        self._require(response, "Credential")

        try:
            user = self._get_user(username)
            challenge = self._consume_challenge(user)

            # Lookup is scoped to this user: another user's passkey never matches
            credential_id = _response_credential_id(response)
            credential = user.find_credential(credential_id) if credential_id else None
            if credential is None:
                raise CredentialNotFound(username)

            result = self._gateway.verify_authentication(
                response,
                expected_challenge=challenge,
                expected_origin=self._origin,
                expected_rp_id=self._rp_id,
                credential=credential,
                require_user_verification=True,
            )
            if not result.verified:
                raise VerificationFailed("Authentication response not verified")
            if result.new_counter is None:
                raise VerificationFailed("Verified authentication carried no counter")

            swapped = self._users.update_counter(
                user.user_id, credential.id, credential.counter, result.new_counter
            )
            if not swapped:
                raise AuthenticationFailed("Signature counter changed during verification")

            updated = self._users.get(user.user_id, by_user_id=True)
            if updated is None:
                raise AuthenticationFailed("User disappeared during authentication")
        except (InvalidInput, UserNotFound, ChallengeNotFound,
                CredentialNotFound, VerificationFailed) as exc:
            logger.warning("Authentication rejected for %s: %s", username, type(exc).__name__)
            raise
        except AuthenticationFailed:
            logger.warning("Authentication failed for %s", username)
            raise
        except Exception as exc:
            logger.exception("Authentication failed for %s", username)
            raise AuthenticationFailed("Authentication could not be completed") from exc

        logger.info("Authenticated %s", username)
        return updated
