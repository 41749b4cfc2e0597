"""Hashing and token helpers.

WHAT:
    Centralizes one-way hashing of identifiers (IP, user agent, phone,
    email), OTP generation/hashing and single-use retrieval tokens.

WHY:
    - Raw IPs, user agents and OTP codes must never be persisted.
    - Ad platforms require lower-cased, trimmed SHA-256 identifiers for
      enhanced-conversion matching; both adapters share one implementation.
"""

import hashlib
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from passlib.hash import bcrypt


OTP_BCRYPT_ROUNDS = 10
OTP_EXPIRY_MINUTES = 5
RETRIEVAL_TOKEN_TTL_MINUTES = 15

_NON_DIGITS = re.compile(r"\D")


def sha256_hex(value: str) -> str:
    """Hex SHA-256 of a UTF-8 string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_optional(value: Optional[str]) -> Optional[str]:
    """Hash a request attribute, keeping None/empty as None."""
    if not value:
        return None
    return sha256_hex(value)


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """Normalize (trim + lower-case) and hash a user identifier for ad platforms."""
    if not value:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    return sha256_hex(normalized)


def phone_digits(phone: Optional[str]) -> str:
    return _NON_DIGITS.sub("", phone or "")


def mask_phone(phone: Optional[str]) -> str:
    """Mask a phone number for logs and API responses (***1234)."""
    return f"***{phone_digits(phone)[-4:]}"


# =============================================================================
# OTP
# =============================================================================

def generate_otp() -> str:
    """Random 6-digit code in [100000, 999999]."""
    return str(100000 + secrets.randbelow(900000))


def hash_otp(otp: str) -> str:
    return bcrypt.using(rounds=OTP_BCRYPT_ROUNDS).hash(otp)


def verify_otp(otp: str, otp_hash: str) -> bool:
    try:
        return bcrypt.verify(otp, otp_hash)
    except ValueError:
        # Malformed stored hash
        return False


def otp_expiry(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(minutes=OTP_EXPIRY_MINUTES)


# =============================================================================
# RETRIEVAL TOKENS
# =============================================================================

def generate_retrieval_token(now: Optional[datetime] = None) -> Tuple[str, str, datetime]:
    """Create a single-use token.

    Returns:
        (token, token_hash, expires_at). Only token_hash is stored; the
        plaintext token goes back to the client once.
    """
    now = now or datetime.now(timezone.utc)
    token = secrets.token_urlsafe(32)
    return token, sha256_hex(token), now + timedelta(minutes=RETRIEVAL_TOKEN_TTL_MINUTES)
