"""
Purchaser-facing reads: payment status polling and manual verification of
an M-Pesa transaction code. Both return ``(body, http_status)``.
"""
import datetime
import logging
import re

from bson import ObjectId
from bson.errors import InvalidId

from audit import record_audit
from config import config
from errors import ValidationError
from ledger import PaymentStatus, Purpose, StkStatus
from phone_utils import normalize_mac
from vouchers import VoucherStatus, credential_payload, has_payment

logger = logging.getLogger(__name__)

CHECKOUT_ID_PREFIX = "ws_CO_"
CHECKOUT_ID_MIN_LENGTH = 25
CHECKOUT_ID_MAX_LENGTH = 40
TRANSACTION_CODE_PATTERN = re.compile(r"^[A-Z0-9]{10}$")

NOT_RECOGNIZED = "M-Pesa transaction code not recognized"


class PollStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


STATUS_MESSAGES = {
    PollStatus.PENDING: "Waiting for payment confirmation",
    PollStatus.COMPLETED: "Payment confirmed",
    PollStatus.FAILED: "Payment failed. Please try again.",
    PollStatus.CANCELLED: "Payment was cancelled",
    PollStatus.TIMEOUT: "Payment confirmation is taking longer than expected. "
                        "If you paid, enter your M-Pesa transaction code.",
    PollStatus.UNKNOWN: "Payment status unknown",
}


def valid_checkout_id(checkout_id):
    return (
        isinstance(checkout_id, str)
        and checkout_id.startswith(CHECKOUT_ID_PREFIX)
        and CHECKOUT_ID_MIN_LENGTH <= len(checkout_id) <= CHECKOUT_ID_MAX_LENGTH
    )


def classify(initiation, payment, now, timeout_seconds):
    """Map stored initiation/payment state onto the poll status enum."""
    initiation = initiation or {}
    payment = payment or {}
    stk_status = initiation.get("status")
    payment_status = payment.get("status")

    if stk_status == StkStatus.COMPLETED or payment_status == PaymentStatus.COMPLETED:
        return PollStatus.COMPLETED
    if payment_status == PaymentStatus.CANCELLED:
        return PollStatus.CANCELLED
    if stk_status == StkStatus.FAILED or payment_status == PaymentStatus.FAILED:
        return PollStatus.FAILED
    if stk_status in (StkStatus.PENDING, StkStatus.PENDING_CONFIRMATION) or payment_status == PaymentStatus.PENDING:
        created_at = initiation.get("created_at") or payment.get("created_at")
        if created_at and (now - created_at).total_seconds() > timeout_seconds:
            return PollStatus.TIMEOUT
        return PollStatus.PENDING
    return PollStatus.UNKNOWN


def payment_status(db, checkout_id, router_id=None, now=None, timeout_seconds=None):
    now = now or datetime.datetime.now()
    timeout_seconds = config.PAYMENT_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds

    if not checkout_id:
        raise ValidationError("checkout_id is required")
    if not valid_checkout_id(checkout_id):
        raise ValidationError("Invalid checkout_id format")

    initiation = db.stk_initiations.find_one({"checkout_request_id": checkout_id})
    payment = db.payments.find_one({"checkout_request_id": checkout_id})
    not_found = ({"success": False, "error": "not_found", "status": PollStatus.UNKNOWN,
                  "message": "Payment not found"}, 404)
    if not initiation and not payment:
        return not_found

    record_router = (initiation or {}).get("router_id") or (payment or {}).get("router_id")
    if router_id and str(record_router) != str(router_id):
        return not_found

    status = classify(initiation, payment, now, timeout_seconds)
    body = {
        "success": True,
        "status": status,
        "message": STATUS_MESSAGES[status],
        "result_code": (payment or {}).get("result_code"),
        "result_desc": (payment or {}).get("result_desc"),
    }

    if status != PollStatus.COMPLETED:
        return body, 200

    purpose = (initiation or payment).get("purpose", Purpose.VOUCHER)
    if purpose == Purpose.SMS_CREDITS:
        body["credits"] = ((initiation or {}).get("metadata") or {}).get("credits")
        return body, 200

    voucher_id = (initiation or {}).get("voucher_id") or (payment or {}).get("voucher_id")
    voucher = db.vouchers.find_one({"_id": voucher_id}) if voucher_id else None
    if not has_payment(voucher):
        # Completed ledger row without a settled voucher is an inconsistency
        logger.error("[CAPTIVE] Checkout %s completed but voucher %s is unpaid", checkout_id, voucher_id)
        body.update(status=PollStatus.UNKNOWN, message=STATUS_MESSAGES[PollStatus.UNKNOWN])
        return body, 200

    body["voucher"] = credential_payload(voucher)
    return body, 200


def _not_recognized():
    return {"success": False, "valid": False, "message": NOT_RECOGNIZED}, 404


def _expired(value, now):
    return isinstance(value, datetime.datetime) and value <= now


def verify_transaction_code(db, transaction_code, router_id, mac_address, ip_address=None, now=None):
    """
    Unlock a paid voucher with the M-Pesa code from the payer's SMS receipt.

    Every rejection after format validation answers with the same message.
    """
    now = now or datetime.datetime.now()
    if not transaction_code or not router_id or not mac_address:
        raise ValidationError("transaction_code, router_id and mac_address are required")

    code = str(transaction_code).strip().upper()
    if not TRANSACTION_CODE_PATTERN.match(code):
        raise ValidationError("Invalid M-Pesa transaction code format")

    try:
        router_oid = ObjectId(str(router_id))
    except (InvalidId, TypeError):
        raise ValidationError("Invalid router_id")

    router = db.routers.find_one({"_id": router_oid}, {"user_id": 1})
    if not router:
        return _not_recognized()

    payment = db.payments.find_one({
        "transaction_id": code,
        "user_id": router.get("user_id"),
        "purpose": {"$ne": Purpose.SMS_CREDITS},
    })
    if not payment or payment.get("status") != PaymentStatus.COMPLETED or not payment.get("voucher_id"):
        logger.info("[CAPTIVE] Manual verification rejected for router %s", router_oid)
        return _not_recognized()

    voucher = db.vouchers.find_one({"_id": payment["voucher_id"]})
    if (
        not voucher
        or str(voucher.get("router_id")) != str(router_oid)
        or voucher.get("status") != VoucherStatus.PAID
        or _expired(voucher.get("expires_at"), now)
        or _expired((voucher.get("usage") or {}).get("purchase_expires_at"), now)
    ):
        logger.info("[CAPTIVE] Manual verification rejected for router %s", router_oid)
        return _not_recognized()

    mac = normalize_mac(mac_address)
    record_audit(
        db, router.get("user_id"), "voucher_verified_manually", "voucher", voucher["_id"],
        details={"transaction_id": code, "mac_address": mac, "router_id": str(router_oid)},
        ip_address=ip_address or "captive-portal", user_agent="captive-portal", now=now,
    )
    logger.info("[CAPTIVE] Voucher %s released via manual verification", voucher["_id"])
    return {
        "success": True,
        "valid": True,
        "message": "Payment verified",
        "voucher": credential_payload(voucher),
    }, 200
