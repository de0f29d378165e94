# Overview: Service-layer operations for auth; password hashing and credential checks.

"""
Authentication Service

WHY: Every key movement must be attributable to an account. Uses bcrypt
for password hashing and validates password strength.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, 12 by default)
- Minimum 8 characters, upper, lower, digit and special character
- Generated passwords satisfy the same rules and are returned exactly once
- Session tokens managed separately (see session_service.py)
"""

import re
import secrets
import string

import bcrypt
from flask import current_app

from ..extensions import db
from ..errors import InvalidArgumentError
from ..models import Account
from keyflow.time_utils import utcnow


SPECIAL_CHARACTERS = "!@#$%^&*(),.:{}|<>"


class PasswordValidationError(InvalidArgumentError):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Raises PasswordValidationError if requirements not met.
    """
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def generate_password(length: int = 12) -> str:
    """Random password that always passes validate_password_strength."""
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(SPECIAL_CHARACTERS),
    ]
    alphabet = string.ascii_letters + string.digits + SPECIAL_CHARACTERS
    rest = [secrets.choice(alphabet) for _ in range(max(length, 8) - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    rounds = int(current_app.config.get("BCRYPT_ROUNDS", 12))
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    WHY timing-safe: bcrypt.checkpw() prevents timing attacks automatically.
    """
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed hash in storage
        return False


def authenticate(email: str, password: str) -> Account | None:
    """
    Authenticate an account by email and password.

    Returns the Account if credentials are valid and the account is active,
    None otherwise. Updates last_login_at on success.
    """
    if not email or not password:
        return None

    account = db.session.query(Account).filter(
        Account.email == email.strip().lower(),
        Account.is_active.is_(True),
    ).first()

    if not account or account.status != "active":
        return None

    if not verify_password(password, account.password_hash):
        return None

    account.last_login_at = utcnow()
    db.session.commit()
    return account
