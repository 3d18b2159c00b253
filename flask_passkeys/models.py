import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from webauthn.helpers import bytes_to_base64url

PLATFORM_TRANSPORT = "internal"


@dataclass
class Credential:
    """A registered passkey. ``id`` is the base64url credential id."""

    id: str
    public_key: bytes
    counter: int = 0
    transports: List[str] = field(default_factory=list)

    def is_platform(self) -> bool:
        return PLATFORM_TRANSPORT in (self.transports or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "public_key": bytes_to_base64url(self.public_key),
            "counter": self.counter,
            "transports": list(self.transports or []),
        }


@dataclass
class User:
    """
    Identity record owning zero or more passkeys.

    ``user_id`` is generated once by ``User.create`` and never reused;
    ``username`` is the lookup key for ceremonies.
    """

    user_id: str
    username: str
    credentials: List[Credential] = field(default_factory=list)

    @classmethod
    def create(cls, username: str) -> "User":
        return cls(user_id=str(uuid.uuid4()), username=username)

    def find_credential(self, credential_id: str) -> Optional[Credential]:
        for credential in self.credentials:
            if credential.id == credential_id:
                return credential
        return None

    def copy(self) -> "User":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "credentials": [c.to_dict() for c in self.credentials],
        }
