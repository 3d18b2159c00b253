"""
py_webauthn gateway tests for Flask-Passkeys.
"""

from unittest.mock import MagicMock, patch

import pytest
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import AuthenticatorTransport

from flask_passkeys.gateway import WebAuthnGateway
from flask_passkeys.models import Credential

CHALLENGE = b"\x01" * 32


@pytest.fixture
def webauthn_gateway():
    return WebAuthnGateway()


@pytest.mark.unit
class TestOptionGeneration:

    def test_registration_options(self, webauthn_gateway):
        cred_id = bytes_to_base64url(b"existing-credential")
        options = webauthn_gateway.registration_options(
            rp_id="localhost",
            rp_name="Test App",
            user_id="user-1",
            username="alice",
            challenge=CHALLENGE,
            exclude_credentials=[{"id": cred_id, "transports": ["internal", "carrier-pigeon"]}],
        )

        assert options["challenge"] == bytes_to_base64url(CHALLENGE)
        assert options["rp"]["id"] == "localhost"
        assert options["rp"]["name"] == "Test App"
        assert options["user"]["name"] == "alice"
        assert options["user"]["id"] == bytes_to_base64url(b"user-1")
        assert options["attestation"] == "none"

        selection = options["authenticatorSelection"]
        assert selection["userVerification"] == "required"
        assert selection["residentKey"] == "required"
        assert selection["authenticatorAttachment"] == "platform"

        assert [c["id"] for c in options["excludeCredentials"]] == [cred_id]
        # Unknown transport hints are dropped
        assert options["excludeCredentials"][0]["transports"] == ["internal"]

    def test_authentication_options_with_allow_list(self, webauthn_gateway):
        cred_id = bytes_to_base64url(b"platform-credential")
        options = webauthn_gateway.authentication_options(
            rp_id="localhost",
            challenge=CHALLENGE,
            allow_credentials=[{"id": cred_id, "transports": ["internal"]}],
        )

        assert options["challenge"] == bytes_to_base64url(CHALLENGE)
        assert options["rpId"] == "localhost"
        assert options["userVerification"] == "required"
        assert [c["id"] for c in options["allowCredentials"]] == [cred_id]

    def test_authentication_options_unrestricted(self, webauthn_gateway):
        options = webauthn_gateway.authentication_options(
            rp_id="localhost", challenge=CHALLENGE, allow_credentials=None,
        )
        assert options.get("allowCredentials", []) == []


@pytest.mark.unit
class TestRegistrationVerification:

    @patch('flask_passkeys.gateway.parse_registration_credential_json')
    @patch('flask_passkeys.gateway.verify_registration_response')
    def test_verified_registration_extracts_credential(self, mock_verify, mock_parse,
                                                       webauthn_gateway):
        parsed = MagicMock()
        parsed.response.transports = [AuthenticatorTransport.INTERNAL,
                                      AuthenticatorTransport.HYBRID]
        mock_parse.return_value = parsed

        verification = MagicMock()
        verification.credential_id = b"new-credential"
        verification.credential_public_key = b"public-key"
        verification.sign_count = 0
        mock_verify.return_value = verification

        result = webauthn_gateway.verify_registration(
            {"id": "irrelevant"},
            expected_challenge=CHALLENGE,
            expected_origin="http://localhost:5000",
            expected_rp_id="localhost",
            require_user_verification=True,
        )

        assert result.verified is True
        assert result.credential.id == bytes_to_base64url(b"new-credential")
        assert result.credential.public_key == b"public-key"
        assert result.credential.counter == 0
        assert result.credential.transports == ["internal", "hybrid"]

        kwargs = mock_verify.call_args.kwargs
        assert kwargs["credential"] is parsed
        assert kwargs["expected_challenge"] == CHALLENGE
        assert kwargs["expected_origin"] == "http://localhost:5000"
        assert kwargs["expected_rp_id"] == "localhost"
        assert kwargs["require_user_verification"] is True

    @patch('flask_passkeys.gateway.parse_registration_credential_json')
    @patch('flask_passkeys.gateway.verify_registration_response')
    def test_rejected_registration(self, mock_verify, mock_parse, webauthn_gateway):
        mock_verify.side_effect = InvalidRegistrationResponse("Unexpected client data challenge")

        result = webauthn_gateway.verify_registration(
            {"id": "irrelevant"},
            expected_challenge=CHALLENGE,
            expected_origin="http://localhost:5000",
            expected_rp_id="localhost",
            require_user_verification=True,
        )

        assert result.verified is False
        assert result.credential is None

    @patch('flask_passkeys.gateway.parse_registration_credential_json')
    @patch('flask_passkeys.gateway.verify_registration_response')
    def test_unexpected_errors_propagate(self, mock_verify, mock_parse, webauthn_gateway):
        mock_verify.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            webauthn_gateway.verify_registration(
                {"id": "irrelevant"},
                expected_challenge=CHALLENGE,
                expected_origin="http://localhost:5000",
                expected_rp_id="localhost",
                require_user_verification=True,
            )


@pytest.mark.unit
class TestAuthenticationVerification:

    @pytest.fixture
    def stored(self):
        return Credential(id="cred", public_key=b"stored-key", counter=5, transports=["internal"])

    @patch('flask_passkeys.gateway.parse_authentication_credential_json')
    @patch('flask_passkeys.gateway.verify_authentication_response')
    def test_verified_authentication_reports_counter(self, mock_verify, mock_parse,
                                                     webauthn_gateway, stored):
        verification = MagicMock()
        verification.new_sign_count = 6
        mock_verify.return_value = verification

        result = webauthn_gateway.verify_authentication(
            {"id": "cred"},
            expected_challenge=CHALLENGE,
            expected_origin="http://localhost:5000",
            expected_rp_id="localhost",
            credential=stored,
            require_user_verification=True,
        )

        assert result.verified is True
        assert result.new_counter == 6

        kwargs = mock_verify.call_args.kwargs
        assert kwargs["credential_public_key"] == b"stored-key"
        assert kwargs["credential_current_sign_count"] == 5
        assert kwargs["require_user_verification"] is True

    @patch('flask_passkeys.gateway.parse_authentication_credential_json')
    @patch('flask_passkeys.gateway.verify_authentication_response')
    def test_counter_regression_is_not_verified(self, mock_verify, mock_parse,
                                                webauthn_gateway, stored):
        mock_verify.side_effect = InvalidAuthenticationResponse(
            "Response sign count of 4 was not greater than current count of 5")

        result = webauthn_gateway.verify_authentication(
            {"id": "cred"},
            expected_challenge=CHALLENGE,
            expected_origin="http://localhost:5000",
            expected_rp_id="localhost",
            credential=stored,
            require_user_verification=True,
        )

        assert result.verified is False
        assert result.new_counter is None
