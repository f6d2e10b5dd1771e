import hashlib
import re

SAFARICOM_PATTERN = re.compile(r"^254[71]\d{8}$")
HASHED_MSISDN_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def normalize_phone(phone):
    """Return the 2547XXXXXXXX / 2541XXXXXXXX form of a Kenyan mobile number, or None."""
    if phone is None:
        return None
    cleaned = re.sub(r"\D", "", str(phone))
    if not cleaned:
        return None

    # Handle 07... / 01... -> 2547... / 2541...
    if cleaned.startswith('0') and len(cleaned) == 10:
        cleaned = '254' + cleaned[1:]
    # Handle 25407... -> 2547... (Common Double Prefix Error)
    elif cleaned.startswith('2540') and len(cleaned) == 13:
        cleaned = '254' + cleaned[4:]
    # Handle 712345678 -> 254712345678
    elif cleaned[0] in ('7', '1') and len(cleaned) == 9:
        cleaned = '254' + cleaned

    if not SAFARICOM_PATTERN.match(cleaned):
        return None
    return cleaned


def denormalize_phone(phone):
    """254712345678 -> 0712345678"""
    normalized = normalize_phone(phone)
    if not normalized:
        return None
    return '0' + normalized[3:]


def looks_hashed(msisdn):
    """The C2B channel delivers MSISDN as a SHA-256 hex digest on some shortcodes."""
    return bool(msisdn) and bool(HASHED_MSISDN_PATTERN.match(str(msisdn)))


def hash_phone(phone):
    """
    Canonical customer key: SHA-256 hex of the normalized number.
    Values the gateway already hashed are passed through (lowercased).
    """
    if not phone:
        return None
    if looks_hashed(phone):
        return str(phone).lower()
    normalized = normalize_phone(phone)
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def mask_phone(phone):
    if not phone:
        return "unknown"
    phone = str(phone)
    if looks_hashed(phone):
        return phone[:8] + "..."
    if len(phone) < 8:
        return "****"
    return phone[:4] + "****" + phone[-4:]


def normalize_mac(mac):
    """Format as AA:BB:CC:DD:EE:FF"""
    if not mac:
        return ""
    cleaned = re.sub(r"[^a-fA-F0-9]", "", str(mac)).upper()
    if not cleaned:
        return str(mac)
    return ":".join(cleaned[i:i + 2] for i in range(0, len(cleaned), 2))
