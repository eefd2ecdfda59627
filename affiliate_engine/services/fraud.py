# affiliate_engine/services/fraud.py
from typing import Optional


def normalize_email_for_fraud_check(email: Optional[str]) -> Optional[str]:
    """
    Collapse plus-aliases so jane+x@mail.com and jane@mail.com compare equal.

    Only the plus-alias trick is caught; dots, provider aliases and disposable
    domains are not.
    """
    if not email:
        return None

    normalized = email.strip().lower()
    if not normalized:
        return None

    local, _, domain = normalized.partition("@")
    if not local or not domain:
        return normalized

    local = local.split("+")[0]
    return f"{local}@{domain}"
