"""Input validation for pairing requests."""

import re
import secrets
import string

from wapair.errors import ValidationError

# Random suffix appended to every session id
SESSION_SUFFIX_LENGTH = 10
SESSION_SUFFIX_ALPHABET = string.ascii_letters + string.digits

USER_ID_MAX_LENGTH = 64
USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

# Session ids double as directory names
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def generate_session_id(prefix: str, user_id: str) -> str:
    """Generate a session id of the form ``<prefix>_<user_id>_<suffix>``.

    Args:
        prefix: Deployment-specific prefix.
        user_id: Validated user id.

    Returns:
        Session id string.
    """
    suffix = "".join(
        secrets.choice(SESSION_SUFFIX_ALPHABET) for _ in range(SESSION_SUFFIX_LENGTH)
    )
    return f"{prefix}_{user_id}_{suffix}"


def normalize_phone_number(phone_number: object, min_digits: int = 8) -> str:
    """Strip everything but digits and check the length.

    Args:
        phone_number: Raw phone number from the request body.
        min_digits: Minimum number of digits.

    Returns:
        Digits-only phone number.

    Raises:
        ValidationError: If missing or too short.
    """
    if not isinstance(phone_number, str) or not phone_number.strip():
        raise ValidationError("Phone number and user ID are required")

    digits = re.sub(r"[^0-9]", "", phone_number)
    if len(digits) < min_digits:
        raise ValidationError("Please enter a valid phone number")
    return digits


def validate_user_id(user_id: object) -> str:
    """Validate a caller-supplied user id.

    Returns:
        The stripped user id.

    Raises:
        ValidationError: If empty, too long or containing unsafe characters.
    """
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("Phone number and user ID are required")

    user_id = user_id.strip()
    if len(user_id) > USER_ID_MAX_LENGTH:
        raise ValidationError(
            f"User ID must be at most {USER_ID_MAX_LENGTH} characters"
        )
    if not USER_ID_PATTERN.match(user_id):
        raise ValidationError(
            "User ID may only contain letters, digits, '.', '_' and '-'"
        )
    return user_id


def is_valid_session_id(session_id: str) -> bool:
    """Check a session id is safe to use as a path component."""
    return bool(SESSION_ID_PATTERN.match(session_id)) and session_id not in (".", "..")
