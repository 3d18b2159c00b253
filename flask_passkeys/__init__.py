from .auth import Passkeys
from .ceremony import CeremonyOrchestrator
from .errors import (
    AuthenticationFailed,
    CeremonyError,
    ChallengeNotFound,
    CredentialNotFound,
    InvalidInput,
    PasskeyError,
    RegistrationFailed,
    StoreError,
    UserNotFound,
    VerificationFailed,
)
from .gateway import (
    AuthenticationVerification,
    RegistrationVerification,
    VerificationGateway,
    WebAuthnGateway,
)
from .models import Credential, User
from .storage import (
    ChallengeStore,
    InMemoryChallengeStore,
    InMemoryUserStore,
    SQLAlchemyChallengeStore,
    SQLAlchemyUserStore,
    UserCredentialStore,
)
from .utils import login_required, get_current_user, is_authenticated, logout

__version__ = '0.1.0'

__all__ = [
    'Passkeys',
    'CeremonyOrchestrator',
    'VerificationGateway',
    'WebAuthnGateway',
    'RegistrationVerification',
    'AuthenticationVerification',
    'User',
    'Credential',
    'UserCredentialStore',
    'ChallengeStore',
    'InMemoryUserStore',
    'InMemoryChallengeStore',
    'SQLAlchemyUserStore',
    'SQLAlchemyChallengeStore',
    'PasskeyError',
    'InvalidInput',
    'StoreError',
    'CeremonyError',
    'UserNotFound',
    'ChallengeNotFound',
    'CredentialNotFound',
    'VerificationFailed',
    'RegistrationFailed',
    'AuthenticationFailed',
    'login_required',
    'get_current_user',
    'is_authenticated',
    'logout',
]
