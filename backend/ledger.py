"""
STK initiation ledger and the purchaser-facing payment records.

An STK initiation row correlates a gateway checkout id with what is being
paid for. Its status only moves along ALLOWED_TRANSITIONS, and every move is
a conditional update on the current status, so a late or repeated callback
can never drag a row backwards.
"""
import datetime
import logging

from pymongo import DESCENDING

from phone_utils import hash_phone

logger = logging.getLogger(__name__)

USER_CANCELLED_RESULT_CODE = 1032


class StkStatus:
    PENDING = "pending"
    PENDING_CONFIRMATION = "pending_confirmation"
    FAILED = "failed"
    COMPLETED = "completed"


# Statuses in which a purchaser may still be looking at a PIN prompt
OPEN_STATUSES = [StkStatus.PENDING, StkStatus.PENDING_CONFIRMATION]


# Only the C2B confirmation may enter COMPLETED; a failed STK prompt can still
# be settled by a payment the customer made by other means.
ALLOWED_TRANSITIONS = {
    StkStatus.PENDING: {StkStatus.PENDING_CONFIRMATION, StkStatus.FAILED, StkStatus.COMPLETED},
    StkStatus.PENDING_CONFIRMATION: {StkStatus.COMPLETED},
    StkStatus.FAILED: {StkStatus.COMPLETED},
    StkStatus.COMPLETED: set(),
}


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Purpose:
    VOUCHER = "voucher"
    SMS_CREDITS = "sms_credits"


def can_transition(current, target):
    return target in ALLOWED_TRANSITIONS.get(current, set())


def sources_for(target):
    return [state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets]


# ================= STK INITIATIONS =================

def create_initiation(db, account_reference, phone_number, amount, purpose,
                      voucher=None, user_id=None, metadata=None, now=None):
    now = now or datetime.datetime.now()
    doc = {
        "account_reference": account_reference,
        "phone_number": phone_number,
        "amount": float(amount),
        "purpose": purpose,
        "voucher_id": voucher["_id"] if voucher else None,
        "router_id": voucher.get("router_id") if voucher else None,
        "user_id": voucher.get("user_id") if voucher else user_id,
        "metadata": metadata or {},
        "status": StkStatus.PENDING,
        "created_at": now,
        "updated_at": now,
    }
    result = db.stk_initiations.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def attach_checkout(db, initiation_id, checkout_request_id, merchant_request_id, now=None):
    now = now or datetime.datetime.now()
    db.stk_initiations.update_one(
        {"_id": initiation_id},
        {"$set": {
            "checkout_request_id": checkout_request_id,
            "merchant_request_id": merchant_request_id,
            "updated_at": now,
        }},
    )


def find_by_checkout(db, checkout_request_id, merchant_request_id=None):
    initiation = None
    if checkout_request_id:
        initiation = db.stk_initiations.find_one({"checkout_request_id": checkout_request_id})
    if initiation is None and merchant_request_id:
        initiation = db.stk_initiations.find_one({"merchant_request_id": merchant_request_id})
    return initiation


def find_open_for_voucher(db, voucher_id, since):
    """An unsettled STK prompt for this voucher started after ``since``."""
    return db.stk_initiations.find_one(
        {"voucher_id": voucher_id, "status": {"$in": OPEN_STATUSES}, "created_at": {"$gt": since}},
        sort=[("created_at", DESCENDING)],
    )


def find_for_settlement(db, account_reference, payer_hash=None, purpose=Purpose.VOUCHER):
    """
    The initiation a C2B confirmation settles.

    An unsettled initiation started from the paying number is preferred over
    a newer one started by somebody else. Without a phone match the most
    recent unsettled row is used, then the most recent row of any status.
    """
    candidates = list(db.stk_initiations.find(
        {"account_reference": account_reference, "purpose": purpose},
    ).sort("created_at", DESCENDING))
    if not candidates:
        return None

    unsettled = [c for c in candidates if c["status"] != StkStatus.COMPLETED]
    if payer_hash:
        for candidate in unsettled:
            if hash_phone(candidate.get("phone_number")) == payer_hash:
                return candidate
    if unsettled:
        return unsettled[0]
    return candidates[0]


def transition(db, initiation_id, target, extra=None, now=None):
    """Move an initiation to ``target``. Returns False when the current status forbids it."""
    now = now or datetime.datetime.now()
    update = {"status": target, "updated_at": now}
    update.update(extra or {})
    result = db.stk_initiations.update_one(
        {"_id": initiation_id, "status": {"$in": sources_for(target)}},
        {"$set": update},
    )
    if result.matched_count == 0:
        logger.debug("[STK] Transition to %s refused for initiation %s", target, initiation_id)
        return False
    return True


# ================= PAYMENT RECORDS =================

def create_payment(db, initiation, now=None):
    now = now or datetime.datetime.now()
    doc = {
        "initiation_id": initiation["_id"],
        "purpose": initiation["purpose"],
        "reference": initiation["account_reference"],
        "voucher_id": initiation.get("voucher_id"),
        "router_id": initiation.get("router_id"),
        "user_id": initiation.get("user_id"),
        "amount": initiation["amount"],
        "currency": "KES",
        "phone_number": initiation.get("phone_number"),
        "transaction_id": None,
        "result_code": None,
        "result_desc": None,
        "status": PaymentStatus.PENDING,
        "created_at": now,
        "updated_at": now,
    }
    result = db.payments.insert_one(doc)
    doc["_id"] = result.inserted_id
    db.stk_initiations.update_one({"_id": initiation["_id"]}, {"$set": {"payment_id": result.inserted_id}})
    return doc


def find_recent_pending_payment(db, router_id, phone_number, since):
    return db.payments.find_one(
        {"router_id": router_id, "phone_number": phone_number, "purpose": Purpose.VOUCHER,
         "status": PaymentStatus.PENDING, "created_at": {"$gte": since}},
        sort=[("created_at", DESCENDING)],
    )


def attach_payment_checkout(db, payment_id, checkout_request_id, merchant_request_id, now=None):
    now = now or datetime.datetime.now()
    db.payments.update_one(
        {"_id": payment_id},
        {"$set": {
            "checkout_request_id": checkout_request_id,
            "merchant_request_id": merchant_request_id,
            "updated_at": now,
        }},
    )


def fail_payment(db, payment_id, result_desc, result_code=None, now=None):
    now = now or datetime.datetime.now()
    db.payments.update_one(
        {"_id": payment_id, "status": PaymentStatus.PENDING},
        {"$set": {
            "status": PaymentStatus.FAILED,
            "result_code": result_code,
            "result_desc": result_desc,
            "updated_at": now,
        }},
    )


def record_stk_result(db, payment_id, result_code, result_desc, receipt=None, now=None):
    """
    Best-effort status for the polling path. A success result leaves the
    payment pending: settlement only arrives with the C2B confirmation.
    """
    now = now or datetime.datetime.now()
    update = {"result_code": result_code, "result_desc": result_desc, "updated_at": now}
    if result_code == 0:
        if receipt:
            update["stk_receipt"] = receipt
    elif result_code == USER_CANCELLED_RESULT_CODE:
        update["status"] = PaymentStatus.CANCELLED
    else:
        update["status"] = PaymentStatus.FAILED

    result = db.payments.update_one(
        {"_id": payment_id, "status": PaymentStatus.PENDING},
        {"$set": update},
    )
    return result.matched_count > 0


def complete_payment(db, payment_id, transaction_id, amount_paid, voucher=None,
                     initiation=None, phone_hash=None, purpose=None, user_id=None,
                     reference=None, now=None):
    """Mark the purchaser's payment settled, creating one for counter payments."""
    now = now or datetime.datetime.now()
    fields = {
        "status": PaymentStatus.COMPLETED,
        "transaction_id": transaction_id,
        "amount_paid": amount_paid,
        "phone_hash": phone_hash,
        "completed_at": now,
        "updated_at": now,
    }
    if voucher is not None:
        fields["voucher_id"] = voucher["_id"]

    if payment_id is not None:
        db.payments.update_one({"_id": payment_id}, {"$set": fields})
        return payment_id

    doc = {
        "initiation_id": initiation["_id"] if initiation else None,
        "purpose": initiation["purpose"] if initiation else (purpose or Purpose.VOUCHER),
        "reference": voucher["reference"] if voucher else ((initiation or {}).get("account_reference") or reference),
        "voucher_id": voucher["_id"] if voucher else None,
        "router_id": voucher.get("router_id") if voucher else (initiation or {}).get("router_id"),
        "user_id": voucher.get("user_id") if voucher else ((initiation or {}).get("user_id") or user_id),
        "amount": voucher["price"] if voucher else amount_paid,
        "currency": "KES",
        "phone_number": (initiation or {}).get("phone_number"),
        "result_code": None,
        "result_desc": None,
        "source": "c2b",
        "created_at": now,
    }
    doc.update(fields)
    return db.payments.insert_one(doc).inserted_id
