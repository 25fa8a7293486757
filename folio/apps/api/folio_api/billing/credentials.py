"""Temporary credentials for newly provisioned accounts.

The plaintext lives only in a TemporaryCredential: generated and hashed
before the provisioning transaction starts, revealed at most once to the
caller that delivers it, then zeroed.
"""

import secrets
import string

import bcrypt

from folio_api.config.env import get_password_hash_rounds

TEMP_PASSWORD_LENGTH = 12
TEMP_PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


class CredentialDiscarded(RuntimeError):
    pass


class TemporaryCredential:
    """Single-use holder for a plaintext temporary password.

    The plaintext is kept in a mutable buffer so discard() can overwrite it.
    repr/str never show it.
    """

    __slots__ = ("_buffer", "password_hash")

    def __init__(self, plaintext: str, password_hash: str):
        self._buffer: bytearray | None = bytearray(plaintext.encode("utf-8"))
        self.password_hash = password_hash

    @property
    def discarded(self) -> bool:
        return self._buffer is None

    def reveal(self) -> str:
        """Return the plaintext.

        Raises:
            CredentialDiscarded: After discard()
        """
        if self._buffer is None:
            raise CredentialDiscarded("temporary credential already discarded")
        return self._buffer.decode("utf-8")

    def discard(self) -> None:
        """Zero and drop the plaintext. Idempotent."""
        if self._buffer is not None:
            for i in range(len(self._buffer)):
                self._buffer[i] = 0
            self._buffer = None

    def __repr__(self) -> str:
        state = "discarded" if self.discarded else "[REDACTED]"
        return f"TemporaryCredential({state})"

    __str__ = __repr__


def generate_temporary_password(length: int = TEMP_PASSWORD_LENGTH) -> str:
    """Random password from letters, digits and !@#$%^&* (CSPRNG)."""
    return "".join(secrets.choice(TEMP_PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str, rounds: int | None = None) -> str:
    """bcrypt hash (deliberately slow; never call inside a DB transaction)."""
    salt = bcrypt.gensalt(rounds=rounds or get_password_hash_rounds())
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def issue_temporary_credential(rounds: int | None = None) -> TemporaryCredential:
    """Generate and hash a fresh temporary password."""
    plaintext = generate_temporary_password()
    credential = TemporaryCredential(plaintext, hash_password(plaintext, rounds))
    del plaintext
    return credential
