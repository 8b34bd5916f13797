"""
Lead helper utilities for consistent identity and normalization.
"""
import re
from typing import Any, Dict, Optional


def normalize_phone(phone: Any) -> Optional[str]:
    """Keep digits and a leading '+' so the same number matches across imports"""
    if phone is None:
        return None
    text = str(phone).strip()
    if not text:
        return None
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None
    return f"+{digits}" if text.startswith("+") else digits


def normalize_email(email: Any) -> Optional[str]:
    """Normalize email for consistent matching"""
    if not email:
        return None
    return str(email).strip().lower() or None


def lead_identity(lead: Dict[str, Any]) -> str:
    """
    Identifying field used in log lines for a lead that failed to insert.

    Phone first (always present after validation), then email, then name.
    """
    phone = normalize_phone(lead.get("phone"))
    if phone:
        return f"phone={phone}"
    email = normalize_email(lead.get("email"))
    if email:
        return f"email={email}"
    return f"name={lead.get('name') or 'unknown'}"
