"""
gateway.py: verification gateway for flask-passkeys

The orchestrator never inspects signatures, attestation statements or
client data itself. It hands ceremony responses to a VerificationGateway
and trusts the verified/not-verified answer. WebAuthnGateway is the
production implementation, backed by py_webauthn; tests inject a fake.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import (
    base64url_to_bytes,
    bytes_to_base64url,
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .models import Credential

logger = logging.getLogger(__name__)

_KNOWN_TRANSPORTS = {t.value: t for t in AuthenticatorTransport}


@dataclass(frozen=True)
class RegistrationVerification:
    verified: bool
    credential: Optional[Credential] = None


@dataclass(frozen=True)
class AuthenticationVerification:
    verified: bool
    new_counter: Optional[int] = None


class VerificationGateway(ABC):
    """
    Option generation and response verification for both ceremonies.

    Credential descriptor lists are plain dicts:
      [{"id": "<base64url>", "transports": ["internal", ...]}]
    """

    @abstractmethod
    def registration_options(self, *, rp_id: str, rp_name: str, user_id: str,
                             username: str, challenge: bytes,
                             exclude_credentials: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Build JSON-ready creation options for navigator.credentials.create()."""

    @abstractmethod
    def authentication_options(self, *, rp_id: str, challenge: bytes,
                               allow_credentials: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
        """Build JSON-ready request options for navigator.credentials.get()."""

    @abstractmethod
    def verify_registration(self, response, *, expected_challenge: bytes,
                            expected_origin: str, expected_rp_id: str,
                            require_user_verification: bool) -> RegistrationVerification:
        """Verify an attestation response and extract the new credential."""

    @abstractmethod
    def verify_authentication(self, response, *, expected_challenge: bytes,
                              expected_origin: str, expected_rp_id: str,
                              credential: Credential,
                              require_user_verification: bool) -> AuthenticationVerification:
        """Verify an assertion against the stored credential and report the new counter."""


class WebAuthnGateway(VerificationGateway):
    """VerificationGateway backed by py_webauthn."""

    def __init__(self, timeout_ms: int = 60000):
        self.timeout_ms = int(timeout_ms)

    @staticmethod
    def _descriptors(credentials):
        descriptors = []
        for cred in credentials or []:
            transports = [
                _KNOWN_TRANSPORTS[t] for t in cred.get("transports") or []
                if t in _KNOWN_TRANSPORTS
            ]
            descriptors.append(PublicKeyCredentialDescriptor(
                id=base64url_to_bytes(cred["id"]),
                transports=transports or None,
            ))
        return descriptors

    def registration_options(self, *, rp_id, rp_name, user_id, username, challenge,
                             exclude_credentials):
        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=username,
            challenge=challenge,
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            exclude_credentials=self._descriptors(exclude_credentials),
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.REQUIRED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
        )
        return json.loads(options_to_json(options))

    def authentication_options(self, *, rp_id, challenge, allow_credentials):
        options = generate_authentication_options(
            rp_id=rp_id,
            challenge=challenge,
            timeout=self.timeout_ms,
            allow_credentials=self._descriptors(allow_credentials) if allow_credentials else None,
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        return json.loads(options_to_json(options))

    def verify_registration(self, response, *, expected_challenge, expected_origin,
                            expected_rp_id, require_user_verification):
        try:
            parsed = parse_registration_credential_json(response)
            verification = verify_registration_response(
                credential=parsed,
                expected_challenge=expected_challenge,
                expected_origin=expected_origin,
                expected_rp_id=expected_rp_id,
                require_user_verification=require_user_verification,
            )
        except WebAuthnException as exc:
            logger.debug("Registration response rejected: %s", exc)
            return RegistrationVerification(verified=False)

        transports = [t.value for t in (parsed.response.transports or [])]
        return RegistrationVerification(
            verified=True,
            credential=Credential(
                id=bytes_to_base64url(verification.credential_id),
                public_key=bytes(verification.credential_public_key),
                counter=verification.sign_count,
                transports=transports,
            ),
        )

    def verify_authentication(self, response, *, expected_challenge, expected_origin,
                              expected_rp_id, credential, require_user_verification):
        try:
            verification = verify_authentication_response(
                credential=parse_authentication_credential_json(response),
                expected_challenge=expected_challenge,
                expected_origin=expected_origin,
                expected_rp_id=expected_rp_id,
                credential_public_key=credential.public_key,
                credential_current_sign_count=credential.counter,
                require_user_verification=require_user_verification,
            )
        except WebAuthnException as exc:
            # Includes a sign count that failed to increase
            logger.debug("Authentication response rejected: %s", exc)
            return AuthenticationVerification(verified=False)

        return AuthenticationVerification(verified=True, new_counter=verification.new_sign_count)
