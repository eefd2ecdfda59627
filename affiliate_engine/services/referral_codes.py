# affiliate_engine/services/referral_codes.py
import re
import string
import secrets
import time
import logging
from sqlalchemy.orm import Session

from ..repositories.profiles import AffiliateProfileRepository

logger = logging.getLogger(__name__)

MAX_CODE_LENGTH = 24
MAX_BASE_LENGTH = 12
SUFFIX_LENGTH = 4
MAX_ATTEMPTS = 10
DEFAULT_BASE = "PARTNER"

_NON_CODE_CHARS = re.compile(r"[^A-Z0-9]")
_BASE36_DIGITS = string.digits + string.ascii_uppercase


def normalize_referral_code(code: str) -> str:
    """Canonical form used at issuance and at every lookup"""
    if not code:
        return ""
    return _NON_CODE_CHARS.sub("", code.strip().upper())[:MAX_CODE_LENGTH]


def _random_suffix(length: int = SUFFIX_LENGTH) -> str:
    chars = string.ascii_uppercase + string.digits
    return ''.join(secrets.choice(chars) for _ in range(length))


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return ''.join(reversed(digits))


def generate_unique_referral_code(db: Session, seed: str) -> str:
    """
    Generate a referral code that no profile holds yet.

    Args:
        db: Database session
        seed: Free text the code is derived from, usually the email local part

    Returns:
        str: Normalized code, base plus a random suffix
    """
    base = normalize_referral_code(seed or "")[:MAX_BASE_LENGTH] or DEFAULT_BASE
    profiles = AffiliateProfileRepository(db)

    for _ in range(MAX_ATTEMPTS):
        candidate = f"{base}{_random_suffix()}"
        if not profiles.referral_code_exists(candidate):
            return candidate

    fallback = f"{base}{_to_base36(int(time.time() * 1000))}"[:MAX_CODE_LENGTH - 1]
    while profiles.referral_code_exists(fallback):
        fallback = f"{fallback[:MAX_CODE_LENGTH - 1]}{_random_suffix(1)}"
    logger.warning(f"Referral code suffixes exhausted for base {base}, using {fallback}")
    return fallback
