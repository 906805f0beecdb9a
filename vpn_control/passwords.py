"""
Account password hashing.
bcrypt with a fixed work factor, guarded by the password-strength policy.
"""
import base64
import hashlib
import re

import bcrypt

from .errors import ValidationError

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def _encode(password: str) -> bytes:
    # bcrypt reads at most 72 bytes; the SHA-256 digest (44 base64 bytes) keeps
    # every character of a 128-character password significant
    return base64.b64encode(hashlib.sha256(password.encode()).digest())


class CredentialStore:
    def __init__(self, rounds: int = 12):
        self.rounds = rounds
        # Used to spend the same time on unknown accounts as on real ones
        self._dummy_hash = bcrypt.hashpw(_encode("dummy-password"), bcrypt.gensalt(rounds))

    @staticmethod
    def check_policy(password: str) -> None:
        """Raise ValidationError if the password is too weak."""
        if not password or len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
        if len(password) > PASSWORD_MAX_LENGTH:
            raise ValidationError(f"Password must be at most {PASSWORD_MAX_LENGTH} characters long")
        if not re.search(r"[A-Z]", password):
            raise ValidationError("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", password):
            raise ValidationError("Password must contain at least one lowercase letter")
        if not re.search(r"[0-9]", password):
            raise ValidationError("Password must contain at least one digit")

    def hash(self, password: str) -> str:
        """Hash a policy-valid password using bcrypt."""
        self.check_policy(password)
        return bcrypt.hashpw(_encode(password), bcrypt.gensalt(self.rounds)).decode()

    def verify(self, hashed: str, password: str) -> bool:
        """
        Verify a password against its hash.
        Returns False on mismatch; raises ValueError only if the stored hash is malformed.
        """
        return bcrypt.checkpw(_encode(password), hashed.encode())

    def dummy_verify(self, password: str) -> bool:
        bcrypt.checkpw(_encode(password), self._dummy_hash)
        return False
