"""
auth/passwords.py -- One-way salted password hashing (bcrypt, direct usage).

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which current
bcrypt releases reject with an explicit error.

Hashing is an explicit step called by AuthService (register, change password,
reset password). The store never hashes on save.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import bcrypt

from auth.errors import EncodingError

DEFAULT_ROUNDS = 12

# bcrypt only looks at the first 72 bytes of its input.
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    """bcrypt hasher with a fixed work factor.

    Usage:
        hasher = PasswordHasher()
        stored = hasher.hash("pw123456")
        hasher.verify("pw123456", stored)   # True
    """

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        self.rounds = rounds
        # Timing equalization dummy hash [C1]. Computed once so the first
        # failed lookup is not measurably slower than later ones.
        self._dummy_hash = self.hash("scaffold_timing_dummy")

    def hash(self, plaintext: str) -> str:
        """Return a bcrypt hash of plaintext with a fresh salt.

        Raises EncodingError if the text cannot be handed to bcrypt (NUL byte,
        unencodable surrogate, or input the primitive refuses).
        """
        if "\x00" in plaintext:
            raise EncodingError("Password may not contain NUL bytes.")
        try:
            encoded = plaintext.encode("utf-8")
            return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        except ValueError as exc:
            raise EncodingError(str(exc)) from exc

    def verify(self, plaintext: str, hashed: str | None) -> bool:
        """Return True if plaintext matches hashed. Any malformed input yields False.

        An account without a stored hash still costs one comparison [C1].
        """
        if not hashed:
            self.dummy_verify(plaintext)
            return False
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    def dummy_verify(self, plaintext: str) -> None:
        """Burn one bcrypt comparison so rejection paths cost the same as a real check."""
        self.verify(plaintext, self._dummy_hash)
