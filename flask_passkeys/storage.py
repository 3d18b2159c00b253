"""
Flask-Passkeys Storage Adapters
===============================
Two pluggable stores back the ceremony orchestrator:

- UserCredentialStore: users and their registered passkeys
- ChallengeStore: at most one pending challenge per user id

Both expose atomic primitives (challenge get-and-delete, counter
compare-and-swap) so a challenge is consumed once and a signature
counter never moves backwards under concurrent requests.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column, DateTime, ForeignKey, Integer, LargeBinary, MetaData, String,
    Table, UniqueConstraint, and_,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import StoreError
from .models import Credential, User

DEFAULT_CHALLENGE_TTL = 300


class UserCredentialStore(ABC):
    """Base user/credential store interface"""

    @abstractmethod
    def get(self, identifier, by_user_id=False):
        """Retrieve a user by username, or by user id when by_user_id is set"""
        pass

    @abstractmethod
    def save(self, user):
        """Insert or replace a user record"""
        pass

    @abstractmethod
    def add_credential(self, user_id, credential):
        """Atomically append a credential and return the updated user"""
        pass

    @abstractmethod
    def update_counter(self, user_id, credential_id, expected, new):
        """Compare-and-swap a credential's signature counter"""
        pass


class ChallengeStore(ABC):
    """Base pending-challenge store interface"""

    @abstractmethod
    def save(self, user_id, challenge):
        """Store a challenge, replacing any pending one for this user"""
        pass

    @abstractmethod
    def get(self, user_id):
        """Retrieve the pending challenge without consuming it"""
        pass

    @abstractmethod
    def delete(self, user_id):
        """Delete the pending challenge (no error if absent)"""
        pass

    @abstractmethod
    def pop(self, user_id):
        """Retrieve and consume the pending challenge (single-use)"""
        pass


class InMemoryUserStore(UserCredentialStore):
    """
    In-memory user store for development only.
    DO NOT USE IN PRODUCTION - data lost on restart.
    """

    def __init__(self):
        self.users = {}
        self._usernames = {}
        self._lock = threading.Lock()

    def get(self, identifier, by_user_id=False):
        with self._lock:
            if not by_user_id:
                identifier = self._usernames.get(identifier)
            user = self.users.get(identifier)
            return user.copy() if user else None

    def save(self, user):
        with self._lock:
            owner = self._usernames.get(user.username)
            if owner is not None and owner != user.user_id:
                raise StoreError(f"Username {user.username!r} is bound to another user")

            previous = self.users.get(user.user_id)
            if previous is not None and previous.username != user.username:
                del self._usernames[previous.username]

            self.users[user.user_id] = user.copy()
            self._usernames[user.username] = user.user_id

    def add_credential(self, user_id, credential):
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                raise StoreError(f"Unknown user id {user_id!r}")
            if user.find_credential(credential.id):
                raise StoreError("Credential already registered")

            user.credentials.append(Credential(
                id=credential.id,
                public_key=bytes(credential.public_key),
                counter=credential.counter,
                transports=list(credential.transports or []),
            ))
            return user.copy()

    def update_counter(self, user_id, credential_id, expected, new):
        if new < expected:
            return False

        with self._lock:
            user = self.users.get(user_id)
            credential = user.find_credential(credential_id) if user else None
            if credential is None or credential.counter != expected:
                return False
            credential.counter = new
            return True


class InMemoryChallengeStore(ChallengeStore):
    """
    In-memory challenge store for development only.
    Challenges expire after challenge_ttl_seconds (None disables expiry).
    """

    def __init__(self, challenge_ttl_seconds=DEFAULT_CHALLENGE_TTL):
        self.challenges = {}
        self.challenge_ttl = challenge_ttl_seconds
        self._lock = threading.Lock()

    def _expires_at(self):
        if self.challenge_ttl is None:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=self.challenge_ttl)

    @staticmethod
    def _is_expired(entry):
        expires_at = entry['expires_at']
        return expires_at is not None and expires_at <= datetime.now(timezone.utc)

    def save(self, user_id, challenge):
        with self._lock:
            self.challenges[user_id] = {
                'challenge': bytes(challenge),
                'created_at': datetime.now(timezone.utc),
                'expires_at': self._expires_at(),
            }

    def get(self, user_id):
        with self._lock:
            entry = self.challenges.get(user_id)
            if not entry:
                return None
            if self._is_expired(entry):
                del self.challenges[user_id]
                return None
            return entry['challenge']

    def delete(self, user_id):
        with self._lock:
            self.challenges.pop(user_id, None)

    def pop(self, user_id):
        with self._lock:
            entry = self.challenges.pop(user_id, None)
            if not entry or self._is_expired(entry):
                return None
            return entry['challenge']

    def cleanup_expired(self):
        """Remove expired challenges"""
        with self._lock:
            expired = [k for k, v in self.challenges.items() if self._is_expired(v)]
            for k in expired:
                del self.challenges[k]


# ==================== SQLAlchemy ====================

def _utcnow():
    # SQLite drops tzinfo, so timestamps are stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _join_transports(transports):
    return ','.join(transports or [])


def _split_transports(value):
    return [t for t in (value or '').split(',') if t]


class _SQLAlchemyStore(ABC):
    """Shared session handling: every driver error becomes a StoreError."""

    def __init__(self, session):
        self.session = session
        self.metadata = MetaData()
        self._define_tables()
        self.metadata.create_all(self.session.get_bind(), checkfirst=True)

    @abstractmethod
    def _define_tables(self):
        """Declare this store's tables on self.metadata."""

    def _execute(self, statement):
        try:
            return self.session.execute(statement)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(str(exc)) from exc

    def _commit(self):
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(str(exc)) from exc


class SQLAlchemyUserStore(_SQLAlchemyStore, UserCredentialStore):
    """
    SQLAlchemy-backed user store.

    Tables:
    - passkey_users (user_id, username)
    - passkey_credentials (credential_id, user_id, public_key, counter, transports)
    """

    def _define_tables(self):
        self.users_table = Table(
            'passkey_users',
            self.metadata,
            Column('user_id', String(64), primary_key=True),
            Column('username', String(255), unique=True, nullable=False, index=True),
            Column('created_at', DateTime, nullable=False),
            extend_existing=True
        )
        self.credentials_table = Table(
            'passkey_credentials',
            self.metadata,
            Column('id', Integer, primary_key=True),
            Column('user_id', String(64), ForeignKey('passkey_users.user_id'),
                   nullable=False, index=True),
            Column('credential_id', String(1024), nullable=False),
            Column('public_key', LargeBinary, nullable=False),
            Column('counter', Integer, nullable=False, default=0),
            Column('transports', String(255), nullable=False, default=''),
            Column('created_at', DateTime, nullable=False),
            UniqueConstraint('user_id', 'credential_id', name='uq_passkey_user_credential'),
            extend_existing=True
        )

    def _load_user(self, row):
        creds = self._execute(
            self.credentials_table.select()
            .where(self.credentials_table.c.user_id == row.user_id)
            .order_by(self.credentials_table.c.id)
        ).fetchall()

        return User(
            user_id=row.user_id,
            username=row.username,
            credentials=[
                Credential(
                    id=c.credential_id,
                    public_key=bytes(c.public_key),
                    counter=c.counter,
                    transports=_split_transports(c.transports),
                )
                for c in creds
            ],
        )

    def get(self, identifier, by_user_id=False):
        column = self.users_table.c.user_id if by_user_id else self.users_table.c.username
        row = self._execute(
            self.users_table.select().where(column == identifier)
        ).fetchone()
        return self._load_user(row) if row else None

    def save(self, user):
        users = self.users_table
        creds = self.credentials_table

        existing = self._execute(
            users.select().where(users.c.username == user.username)
        ).fetchone()
        if existing and existing.user_id != user.user_id:
            raise StoreError(f"Username {user.username!r} is bound to another user")

        current = self._execute(
            users.select().where(users.c.user_id == user.user_id)
        ).fetchone()
        if current:
            self._execute(
                users.update().where(users.c.user_id == user.user_id)
                .values(username=user.username)
            )
        else:
            self._execute(users.insert().values(
                user_id=user.user_id,
                username=user.username,
                created_at=_utcnow(),
            ))

        # Credentials are replaced wholesale to mirror the in-memory record
        self._execute(creds.delete().where(creds.c.user_id == user.user_id))
        for credential in user.credentials:
            self._execute(creds.insert().values(
                user_id=user.user_id,
                credential_id=credential.id,
                public_key=bytes(credential.public_key),
                counter=credential.counter,
                transports=_join_transports(credential.transports),
                created_at=_utcnow(),
            ))
        self._commit()

    def add_credential(self, user_id, credential):
        user = self.get(user_id, by_user_id=True)
        if user is None:
            raise StoreError(f"Unknown user id {user_id!r}")

        try:
            self.session.execute(self.credentials_table.insert().values(
                user_id=user_id,
                credential_id=credential.id,
                public_key=bytes(credential.public_key),
                counter=credential.counter,
                transports=_join_transports(credential.transports),
                created_at=_utcnow(),
            ))
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise StoreError("Credential already registered") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(str(exc)) from exc

        return self.get(user_id, by_user_id=True)

    def update_counter(self, user_id, credential_id, expected, new):
        """Conditional UPDATE: only one concurrent writer can match `expected`."""
        if new < expected:
            return False

        creds = self.credentials_table
        result = self._execute(
            creds.update().where(and_(
                creds.c.user_id == user_id,
                creds.c.credential_id == credential_id,
                creds.c.counter == expected,
            )).values(counter=new)
        )
        self._commit()
        return result.rowcount == 1


class SQLAlchemyChallengeStore(_SQLAlchemyStore, ChallengeStore):
    """
    SQLAlchemy-backed challenge store.

    Features:
    - One row per user id (save overwrites)
    - Single-use enforcement via conditional DELETE
    - Automatic expiry
    """

    def __init__(self, session, challenge_ttl_seconds=DEFAULT_CHALLENGE_TTL):
        self.challenge_ttl = challenge_ttl_seconds
        super().__init__(session)

    def _define_tables(self):
        self.challenges_table = Table(
            'passkey_challenges',
            self.metadata,
            Column('user_id', String(64), primary_key=True),
            Column('challenge', LargeBinary, nullable=False),
            Column('created_at', DateTime, nullable=False),
            Column('expires_at', DateTime, index=True),
            extend_existing=True
        )

    def _live(self):
        table = self.challenges_table
        return (table.c.expires_at.is_(None)) | (table.c.expires_at > _utcnow())

    def save(self, user_id, challenge):
        table = self.challenges_table
        now = _utcnow()
        expires_at = None
        if self.challenge_ttl is not None:
            expires_at = now + timedelta(seconds=self.challenge_ttl)

        values = {
            'challenge': bytes(challenge),
            'created_at': now,
            'expires_at': expires_at,
        }

        if self._update_challenge(user_id, values):
            self._commit()
            return

        try:
            self.session.execute(table.insert().values(user_id=user_id, **values))
            self.session.commit()
        except IntegrityError:
            # A concurrent save inserted the row first; overwrite it
            self.session.rollback()
            self._update_challenge(user_id, values)
            self._commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(str(exc)) from exc

    def _update_challenge(self, user_id, values):
        """Replace the pending challenge in place. False when the user has none."""
        table = self.challenges_table
        result = self._execute(
            table.update().where(table.c.user_id == user_id).values(**values)
        )
        return result.rowcount > 0

    def get(self, user_id):
        table = self.challenges_table
        row = self._execute(
            table.select().where(table.c.user_id == user_id, self._live())
        ).fetchone()
        return bytes(row.challenge) if row else None

    def delete(self, user_id):
        table = self.challenges_table
        self._execute(table.delete().where(table.c.user_id == user_id))
        self._commit()

    def pop(self, user_id):
        """Consume challenge atomically: only the caller whose DELETE matched wins."""
        table = self.challenges_table
        row = self._execute(
            table.select().where(table.c.user_id == user_id, self._live())
        ).fetchone()
        if not row:
            # Only an expired leftover is purged; a live row saved after the
            # SELECT belongs to a newer ceremony
            self._execute(table.delete().where(
                table.c.user_id == user_id,
                table.c.expires_at.isnot(None),
                table.c.expires_at <= _utcnow(),
            ))
            self._commit()
            return None

        result = self._execute(
            table.delete().where(and_(
                table.c.user_id == user_id,
                table.c.challenge == row.challenge,
            ))
        )
        self._commit()
        if result.rowcount != 1:
            return None
        return bytes(row.challenge)

    def cleanup_expired(self):
        """Remove expired challenges - call periodically via cron"""
        table = self.challenges_table
        self._execute(table.delete().where(
            table.c.expires_at.isnot(None),
            table.c.expires_at <= _utcnow(),
        ))
        self._commit()
