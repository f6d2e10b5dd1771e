"""
Voucher store helpers.

A voucher carries two identifiers: ``reference`` is public and is the only
value ever used as an M-Pesa billing reference; ``code``/``password`` is the
hotspot login and stays private until the purchaser has paid.
"""
import datetime
import secrets
import uuid

from pymongo import ReturnDocument

# Unambiguous characters only (no I, O, 0, 1, L)
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 10


class VoucherStatus:
    ACTIVE = "active"        # unsold
    PAID = "paid"            # payment confirmed, not yet activated
    USED = "used"            # activated on the network
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    ALL = (ACTIVE, PAID, USED, EXPIRED, CANCELLED)
    PAYABLE = (ACTIVE,)


def generate_voucher_code(length=CODE_LENGTH):
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_reference():
    return "VCH" + uuid.uuid4().hex[:8].upper()


def generate_unique_voucher_code(db, max_attempts=3):
    for _ in range(max_attempts):
        code = generate_voucher_code()
        if not db.vouchers.find_one({"code": code}, {"_id": 1}):
            return code
    # Fallback after repeated collisions
    return "V" + uuid.uuid4().hex[:11].upper()


def create_voucher(db, router_id, user_id, price, package_type, duration_minutes,
                   package_name=None, bandwidth=None, timed_on_purchase=False,
                   max_duration_minutes=None, validity_days=30, reference=None, code=None):
    """Insert an unsold voucher and return the stored document."""
    now = datetime.datetime.now()
    code = code or generate_unique_voucher_code(db)
    reference = reference or generate_reference()
    if reference == code:
        raise ValueError("Voucher reference must differ from its login code")

    voucher = {
        "reference": reference,
        "code": code,
        "password": code,
        "price": float(price),
        "currency": "KES",
        "package_type": package_type,
        "package_name": package_name or package_type,
        "duration_minutes": int(duration_minutes),
        "bandwidth": bandwidth or {"upload": 1024, "download": 2048},
        "router_id": router_id,
        "user_id": user_id,
        "status": VoucherStatus.ACTIVE,
        "usage": {
            "timed_on_purchase": bool(timed_on_purchase),
            "max_duration_minutes": max_duration_minutes,
            "purchase_expires_at": None,
            "expected_end_time": None,
        },
        "expires_at": now + datetime.timedelta(days=validity_days) if validity_days else None,
        "created_at": now,
        "updated_at": now,
    }
    result = db.vouchers.insert_one(voucher)
    voucher["_id"] = result.inserted_id
    return voucher


def find_payable_by_reference(db, reference):
    return db.vouchers.find_one({
        "reference": reference,
        "status": {"$in": list(VoucherStatus.PAYABLE)},
    })


def find_by_transaction_id(db, transaction_id):
    return db.vouchers.find_one({"payment.transaction_id": transaction_id})


def has_payment(voucher):
    return bool(((voucher or {}).get("payment") or {}).get("transaction_id"))


def purchase_expiry(voucher, now):
    """Deadline to activate a paid voucher, when its package enables one."""
    usage = voucher.get("usage") or {}
    minutes = usage.get("max_duration_minutes")
    if usage.get("timed_on_purchase") and minutes:
        return now + datetime.timedelta(minutes=minutes)
    return None


def assign_payment(db, voucher_id, payment, purchase_expires_at, now):
    """
    Write the payment sub-record and flip the voucher to ``paid``.

    Conditional on the sub-record still being empty and the voucher still
    payable; returns None when another writer got there first.
    """
    return db.vouchers.find_one_and_update(
        {
            "_id": voucher_id,
            "status": {"$in": list(VoucherStatus.PAYABLE)},
            "payment.transaction_id": {"$exists": False},
        },
        {
            "$set": {
                "payment": payment,
                "usage.purchase_expires_at": purchase_expires_at,
                "status": VoucherStatus.PAID,
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )


def format_duration(minutes):
    minutes = int(minutes or 0)
    if minutes < 60:
        return "1 Minute" if minutes == 1 else f"{minutes} Minutes"
    if minutes < 1440:
        hours = minutes // 60
        return "1 Hour" if hours == 1 else f"{hours} Hours"
    if minutes < 10080:
        days = minutes // 1440
        return "1 Day" if days == 1 else f"{days} Days"
    weeks = minutes // 10080
    return "1 Week" if weeks == 1 else f"{weeks} Weeks"


def format_bandwidth(bandwidth):
    def speed(kbps):
        kbps = int(kbps or 0)
        if kbps >= 1024:
            return f"{kbps // 1024}Mbps"
        return f"{kbps}kbps"

    bandwidth = bandwidth or {}
    return f"{speed(bandwidth.get('upload'))}/{speed(bandwidth.get('download'))}"


def credential_payload(voucher):
    """Login details handed to a purchaser whose payment has settled."""
    expires_at = voucher.get("expires_at")
    return {
        "reference": voucher.get("reference"),
        "code": voucher["code"],
        "password": voucher.get("password") or voucher["code"],
        "package_name": voucher.get("package_name") or voucher.get("package_type"),
        "duration": voucher.get("duration_minutes"),
        "duration_display": format_duration(voucher.get("duration_minutes")),
        "bandwidth": format_bandwidth(voucher.get("bandwidth")),
        "expires_at": expires_at.isoformat() if isinstance(expires_at, datetime.datetime) else expires_at,
    }
