# watercan/privacy_utils.py
"""
PII masking for logs.

Privacy Rails:
- Never log raw phone numbers (use mask_phone)
- Never log raw principal IDs (use hash_principal_id)
- Never log OTPs (not even hashed)
"""

from __future__ import annotations

import re
from hashlib import sha256
from typing import Optional


def mask_phone(phone: Optional[str]) -> str:
    """
    Mask phone for logs: 9876543210 → ******3210

    Examples:
        mask_phone("9876543210") → "******3210"
        mask_phone("+919876543210") → "+91****3210"
        mask_phone("12345") → "****"
        mask_phone(None) → "****"
    """
    if not phone or not isinstance(phone, str):
        return "****"

    phone = phone.strip()
    digits = re.sub(r'\D', '', phone)

    if len(digits) < 6:
        return "****"

    if phone.startswith('+'):
        return f"+{digits[:2]}****{digits[-4:]}"
    return f"******{digits[-4:]}"


def hash_principal_id(principal_id: Optional[str]) -> str:
    """
    Hash principal ID for logs: full UUID → first 8 chars of SHA-256.

    Returns "anon" for missing IDs.
    """
    if not principal_id or not isinstance(principal_id, str):
        return "anon"

    principal_id = principal_id.strip()
    if not principal_id:
        return "anon"

    return sha256(principal_id.encode("utf-8")).hexdigest()[:8]
