"""Password hashing for user accounts.

Passwords are stored as bcrypt hashes; the plaintext never reaches the
workbook.
"""

from __future__ import annotations

import bcrypt

from .errors import ValidationError


# Cost factor for new hashes. Tests lower it to keep fixtures fast.
BCRYPT_ROUNDS = 12


def hash_password(password: str) -> str:
    """Hash ``password`` with a fresh salt and return it as text."""

    if not password:
        raise ValidationError("Password must not be empty")
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Check ``password`` against a stored bcrypt hash.

    Empty or malformed hashes never match.
    """

    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False
