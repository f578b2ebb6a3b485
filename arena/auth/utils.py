import secrets
from functools import lru_cache

import bcrypt

from arena.config import settings

# bcrypt only accepts this many bytes of input
MAX_PASSWORD_BYTES = 72

# 32 random bytes, i.e. 256 bits of entropy per session token
TOKEN_BYTES = 32


def password_too_long(password: str) -> bool:
    return len(password.encode()) > MAX_PASSWORD_BYTES


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        # Malformed stored hash
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password(secrets.token_hex(16))


def burn_password_check(password: str) -> None:
    """Spend the same bcrypt work as a real check when no account matched."""
    verify_password(password, _dummy_hash())


def generate_session_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)
