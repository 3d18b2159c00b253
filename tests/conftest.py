"""
Pytest fixtures for Flask-Passkeys tests.

Pytest automatically discovers this file (conftest.py) and uses it to provide
fixtures to tests under this directory tree.
"""

import sys
import threading
from pathlib import Path

import pytest
from flask import Flask
from webauthn.helpers import bytes_to_base64url

# Ensure project root is importable when running tests from /tests
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from flask_passkeys import Passkeys
from flask_passkeys.ceremony import CeremonyOrchestrator
from flask_passkeys.gateway import (
    AuthenticationVerification,
    RegistrationVerification,
    VerificationGateway,
)
from flask_passkeys.models import Credential, User
from flask_passkeys.storage import InMemoryChallengeStore, InMemoryUserStore


class FakeGateway(VerificationGateway):
    """
    Stand-in for the cryptographic verifier.

    Responses are plain dicts that echo the challenge they answer:
      {"id": ..., "challenge": <b64url>, "counter": n, "transports": [...]}
    Every verify call is recorded in `calls` for assertions.
    """

    def __init__(self):
        self.calls = []

    def registration_options(self, *, rp_id, rp_name, user_id, username, challenge,
                             exclude_credentials):
        return {
            "challenge": bytes_to_base64url(challenge),
            "rp": {"id": rp_id, "name": rp_name},
            "user": {"id": user_id, "name": username},
            "excludeCredentials": exclude_credentials,
            "authenticatorSelection": {
                "userVerification": "required",
                "residentKey": "required",
                "authenticatorAttachment": "platform",
            },
        }

    def authentication_options(self, *, rp_id, challenge, allow_credentials):
        options = {
            "challenge": bytes_to_base64url(challenge),
            "rpId": rp_id,
            "userVerification": "required",
        }
        if allow_credentials:
            options["allowCredentials"] = allow_credentials
        return options

    def verify_registration(self, response, **kwargs):
        self.calls.append(("registration", response, kwargs))
        if response.get("challenge") != bytes_to_base64url(kwargs["expected_challenge"]):
            return RegistrationVerification(verified=False)
        if response.get("omit_credential"):
            return RegistrationVerification(verified=True)
        return RegistrationVerification(
            verified=True,
            credential=Credential(
                id=response["id"],
                public_key=response.get("public_key", "public-key").encode(),
                counter=response.get("counter", 0),
                transports=list(response.get("transports", ["internal"])),
            ),
        )

    def verify_authentication(self, response, **kwargs):
        self.calls.append(("authentication", response, kwargs))
        if response.get("challenge") != bytes_to_base64url(kwargs["expected_challenge"]):
            return AuthenticationVerification(verified=False)
        if response.get("omit_counter"):
            return AuthenticationVerification(verified=True)

        stored = kwargs["credential"].counter
        new = response["counter"]
        if new <= stored and not (new == 0 and stored == 0):
            return AuthenticationVerification(verified=False)
        return AuthenticationVerification(verified=True, new_counter=new)


class BarrierGateway(FakeGateway):
    """
    FakeGateway that lines up concurrent authentications at the counter swap.

    Callers hold `issue_lock` from begin_authentication until their challenge
    has been popped; the lock is released once verification is reached, then
    every caller waits at the barrier so all swaps see the same stored counter.
    """

    def __init__(self, parties):
        super().__init__()
        self.issue_lock = threading.Lock()
        self.barrier = threading.Barrier(parties)

    def verify_authentication(self, response, **kwargs):
        result = super().verify_authentication(response, **kwargs)
        self.issue_lock.release()
        self.barrier.wait(timeout=5)
        return result


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def barrier_gateway():
    return BarrierGateway(parties=4)


@pytest.fixture
def user_store():
    return InMemoryUserStore()


@pytest.fixture
def challenge_store():
    return InMemoryChallengeStore()


@pytest.fixture
def orchestrator(user_store, challenge_store, gateway):
    return CeremonyOrchestrator(
        "localhost",
        "Test App",
        user_store,
        challenge_store,
        gateway,
        origin="http://localhost:5000",
    )


@pytest.fixture
def make_registration_response():
    def _make(options, credential_id="cred-1", counter=0, transports=("internal",), **extra):
        response = {
            "id": credential_id,
            "rawId": credential_id,
            "type": "public-key",
            "challenge": options["challenge"],
            "counter": counter,
            "transports": list(transports),
        }
        response.update(extra)
        return response
    return _make


@pytest.fixture
def make_authentication_response():
    def _make(options, credential_id, counter, **extra):
        response = {
            "id": credential_id,
            "rawId": credential_id,
            "type": "public-key",
            "challenge": options["challenge"],
            "counter": counter,
        }
        response.update(extra)
        return response
    return _make


@pytest.fixture
def bob(user_store):
    """Existing user with one platform passkey at counter 5."""
    user = User(
        user_id="bob-user-id",
        username="bob",
        credentials=[Credential(id="bob-cred", public_key=b"bob-public-key",
                                counter=5, transports=["internal"])],
    )
    user_store.save(user)
    return user


@pytest.fixture
def carol(user_store):
    """Existing user whose only passkey is a roaming security key."""
    user = User(
        user_id="carol-user-id",
        username="carol",
        credentials=[Credential(id="carol-cred", public_key=b"carol-public-key",
                                counter=0, transports=["usb", "nfc"])],
    )
    user_store.save(user)
    return user


@pytest.fixture
def base_config():
    # Keep config minimal and explicit for test determinism
    return {
        "SECRET_KEY": "test-secret-key",
        "TESTING": True,

        "PASSKEYS_RP_ID": "localhost",
        "PASSKEYS_RP_NAME": "Test App",
        "PASSKEYS_ORIGIN": "http://localhost:5000",
        "PASSKEYS_LOGIN_URL": "/login",
        "PASSKEYS_SESSION_DURATION": 3600,    # seconds
    }


@pytest.fixture
def app(base_config, user_store, challenge_store, gateway):
    """Flask app with Passkeys + in-memory stores + fake gateway."""
    app = Flask(__name__)
    app.config.update(base_config)

    passkeys = Passkeys(app, user_store=user_store, challenge_store=challenge_store,
                        gateway=gateway)

    @app.route("/login")
    def login_page():
        return "Login page"

    @app.route("/protected")
    @passkeys.login_required
    def protected():
        return "Protected content"

    yield app


@pytest.fixture
def client(app):
    return app.test_client()
