import logging
import re
import sqlite3

from arena import db
from arena.auth.utils import MAX_PASSWORD_BYTES, hash_password, password_too_long, verify_password
from arena.config import settings
from arena.errors import RegistrationError

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def register_user(username: str, email: str, password: str) -> int:
    """Create an account and return its id."""
    username = username.strip()
    email = email.strip().lower()

    if not username or not email or not password:
        raise RegistrationError("All fields are required")
    if not USERNAME_RE.match(username):
        raise RegistrationError("Username must be 3-32 letters, digits, '.', '_' or '-'")
    if not EMAIL_RE.match(email):
        raise RegistrationError("Invalid email address")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise RegistrationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if password_too_long(password):
        raise RegistrationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")

    if db.get_user_by_username(username):
        raise RegistrationError("Username already taken")
    if db.get_user_by_email(email):
        raise RegistrationError("Email already registered")

    try:
        role = "admin" if username in settings.admin_usernames else "user"
        user_id = db.create_user(username, email, hash_password(password), role)
    except sqlite3.IntegrityError as e:
        # Lost a race with a concurrent registration for the same name or email
        logger.info(f"Registration conflict for {username}: {e}")
        raise RegistrationError("Username or email already registered") from e
    logger.info(f"User registered: {username}")
    db.log_event("USER_REGISTERED", user_id, details=f"username={username}")
    return user_id


def change_password(user_id: int, current_password: str, new_password: str) -> bool:
    user = db.get_user_by_id(user_id)
    if not user or not verify_password(current_password, user.password_hash):
        return False
    if len(new_password) < MIN_PASSWORD_LENGTH or password_too_long(new_password):
        return False

    db.update_password(user_id, hash_password(new_password))
    logger.info(f"Password changed for user {user_id}")
    db.log_event("PASSWORD_CHANGED", user_id)
    return True
