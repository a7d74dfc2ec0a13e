import re
from typing import Optional

E164_PATTERN = re.compile(r"^\+\d{8,15}$")
_SEPARATORS = re.compile(r"[\s\-\.\(\)]")

def normalize_phone_number(raw: Optional[str]) -> str:
    """Strip formatting characters and make sure the number starts with '+'."""
    if raw is None:
        return ""
    phone = _SEPARATORS.sub("", str(raw).strip())
    if phone and not phone.startswith("+"):
        phone = f"+{phone}"
    return phone

def is_valid_phone_number(phone: Optional[str]) -> bool:
    return bool(phone) and E164_PATTERN.match(phone) is not None

def mask_phone_number(phone: Optional[str]) -> str:
    """Hide the last four digits, e.g. +1555123**** for log lines."""
    if not phone:
        return "unknown"
    if len(phone) <= 4:
        return "****"
    return f"{phone[:-4]}****"
