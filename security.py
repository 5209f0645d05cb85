"""
Password hashing.
"""

import hmac

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def get_password_hash(password):
    return pwd_context.hash(password)


def verify_password(plain_password, hashed_password):
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # not a hash this context recognises
        return False


def verify_legacy_password(plain_password, stored_password) -> bool:
    """Constant-time check for records that still carry a plaintext password."""
    if not isinstance(stored_password, str):
        return False
    return hmac.compare_digest(plain_password.encode(), stored_password.encode())
