"""
Payment initiation for the captive portal.

The STK initiation row and the purchaser's payment record are written
before the gateway is called, so a callback can never arrive for a
checkout we have no record of. A failed gateway call marks both rows
failed before returning.

A voucher has at most one live PIN prompt at a time: while an
initiation for it is unsettled and younger than the payment timeout,
further purchase attempts are refused with 409.
"""
import datetime
import logging
import secrets

from bson import ObjectId
from bson.errors import InvalidId

import ledger
import mpesa_utils
from config import config
from errors import (BillingError, ConflictError, DuplicatePurchaseError, GatewayError,
                    NotFoundError, ValidationError)
from ledger import Purpose
from phone_utils import mask_phone, normalize_mac, normalize_phone
from vouchers import VoucherStatus

logger = logging.getLogger(__name__)

SMS_CREDIT_PRICE = 1.0  # KES per credit
MIN_SMS_CREDITS = 10
MAX_SMS_CREDITS = 100000
SMS_REFERENCE_PREFIX = "SMS"
SMS_REFERENCE_TOKEN_BYTES = 4  # "SMS" + 8 hex chars fits the gateway's 12


def _object_id(value, field):
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {field}")


def _require_phone(phone_number):
    phone = normalize_phone(phone_number)
    if not phone:
        raise ValidationError("Invalid phone number. Use format 07XXXXXXXX or 2547XXXXXXXX")
    return phone


def generate_sms_reference(db, max_attempts=3):
    for _ in range(max_attempts):
        reference = SMS_REFERENCE_PREFIX + secrets.token_hex(SMS_REFERENCE_TOKEN_BYTES).upper()
        if not db.stk_initiations.find_one({"account_reference": reference}, {"_id": 1}):
            return reference
    raise BillingError("Could not allocate a billing reference. Please try again.")


def _refuse_duplicate_purchase(db, voucher, phone, now, timeout_seconds, window_seconds):
    """Raise when the purchaser or the voucher already has a PIN prompt in flight."""
    window_start = now - datetime.timedelta(seconds=window_seconds)
    pending = ledger.find_recent_pending_payment(db, voucher.get("router_id"), phone, window_start)
    if pending:
        logger.info("[CAPTIVE] %s already has pending payment %s", mask_phone(phone), pending["_id"])
        raise DuplicatePurchaseError(
            "You already have a pending payment. Please complete or wait for it to expire.",
            pending.get("checkout_request_id"),
            amount=pending.get("amount"),
            created_at=pending.get("created_at"),
        )

    open_initiation = ledger.find_open_for_voucher(
        db, voucher["_id"], now - datetime.timedelta(seconds=timeout_seconds))
    if open_initiation is None:
        return
    if normalize_phone(open_initiation.get("phone_number")) == phone:
        raise DuplicatePurchaseError(
            "You already have a pending payment. Please complete or wait for it to expire.",
            open_initiation.get("checkout_request_id"),
            amount=open_initiation.get("amount"),
            created_at=open_initiation.get("created_at"),
        )
    logger.info("[CAPTIVE] Voucher %s is already being paid for by %s",
                voucher["_id"], mask_phone(open_initiation.get("phone_number")))
    raise ConflictError("This voucher is being purchased by another customer. Please choose another one.")


def _push(db, initiation, phone, description, stk_push, now):
    """Create the payment record, call the gateway and link the checkout ids."""
    payment = ledger.create_payment(db, initiation, now=now)
    push = stk_push or mpesa_utils.initiate_stk_push
    result = push(phone, initiation["amount"], initiation["account_reference"], description)

    if not result.get("success"):
        error = result.get("error") or "STK Push failed"
        logger.warning("[STK] Push for %s failed: %s", initiation["account_reference"], error)
        ledger.transition(db, initiation["_id"], ledger.StkStatus.FAILED,
                          extra={"failure_reason": error}, now=now)
        ledger.fail_payment(db, payment["_id"], error, now=now)
        raise GatewayError("Failed to initiate M-Pesa payment. Please try again.", details={"gateway": error})

    checkout_id = result.get("checkout_request_id")
    merchant_id = result.get("merchant_request_id")
    ledger.attach_checkout(db, initiation["_id"], checkout_id, merchant_id, now=now)
    ledger.attach_payment_checkout(db, payment["_id"], checkout_id, merchant_id, now=now)
    return checkout_id, merchant_id, result.get("customer_message")


def initiate_voucher_purchase(db, voucher_id, phone_number, mac_address=None, router_id=None,
                              stk_push=None, now=None, timeout_seconds=None, duplicate_window_seconds=None):
    """
    Send an STK Push for an unsold voucher.

    The amount is always the voucher's stored price and the account
    reference is its public ``reference``. Raises DuplicatePurchaseError
    when this phone already has a pending payment on the router, and
    ConflictError when someone else holds a live prompt for the voucher.
    """
    now = now or datetime.datetime.now()
    timeout_seconds = config.PAYMENT_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    if duplicate_window_seconds is None:
        duplicate_window_seconds = config.DUPLICATE_PURCHASE_WINDOW_SECONDS
    if not voucher_id or not phone_number:
        raise ValidationError("voucher_id and phone_number are required")

    phone = _require_phone(phone_number)
    voucher = db.vouchers.find_one({"_id": _object_id(voucher_id, "voucher_id")})
    if not voucher or voucher.get("status") not in VoucherStatus.PAYABLE:
        raise NotFoundError("Voucher not available")
    if router_id and str(voucher.get("router_id")) != str(router_id):
        raise NotFoundError("Voucher not available")

    reference = voucher.get("reference")
    if not reference or reference == voucher.get("code"):
        logger.error("[CAPTIVE] Voucher %s has no usable billing reference", voucher["_id"])
        raise BillingError("Voucher cannot be purchased right now")

    # M-Pesa only bills whole shillings
    price = float(voucher["price"])
    if price <= 0 or not price.is_integer():
        logger.error("[CAPTIVE] Voucher %s has unbillable price %s", voucher["_id"], voucher["price"])
        raise ValidationError("Voucher price must be a whole number of KES")

    _refuse_duplicate_purchase(db, voucher, phone, now, timeout_seconds, duplicate_window_seconds)

    initiation = ledger.create_initiation(
        db, reference, phone, price, Purpose.VOUCHER, voucher=voucher,
        metadata={"mac_address": normalize_mac(mac_address) if mac_address else None,
                  "package_type": voucher.get("package_type")},
        now=now,
    )
    logger.info("[CAPTIVE] Purchase of %s by %s for KES %.2f", reference, mask_phone(phone), price)

    checkout_id, merchant_id, customer_message = _push(
        db, initiation, phone, f"WiFi {voucher.get('package_name') or 'Voucher'}"[:13], stk_push, now)

    return {
        "success": True,
        "message": customer_message or "STK Push sent. Enter your M-Pesa PIN to complete payment.",
        "checkout_request_id": checkout_id,
        "merchant_request_id": merchant_id,
        "reference": reference,
        "amount": voucher["price"],
    }


def initiate_sms_credit_purchase(db, user_id, credits, phone_number, stk_push=None, now=None):
    """
    Send an STK Push for an SMS credit top-up on a router owner's account.

    The billing reference is a short random token; the confirmation finds
    the account through the initiation row it was issued with.
    """
    now = now or datetime.datetime.now()
    if not user_id or credits in (None, "") or not phone_number:
        raise ValidationError("user_id, credits and phone_number are required")

    try:
        credits = int(credits)
    except (TypeError, ValueError):
        raise ValidationError("credits must be a whole number")
    if credits < MIN_SMS_CREDITS or credits > MAX_SMS_CREDITS:
        raise ValidationError(f"credits must be between {MIN_SMS_CREDITS} and {MAX_SMS_CREDITS}")

    phone = _require_phone(phone_number)
    account_id = _object_id(user_id, "user_id")
    if not db.users.find_one({"_id": account_id}, {"_id": 1}):
        raise NotFoundError("Account not found")

    amount = credits * SMS_CREDIT_PRICE
    reference = generate_sms_reference(db)
    initiation = ledger.create_initiation(
        db, reference, phone, amount, Purpose.SMS_CREDITS, user_id=account_id,
        metadata={"credits": credits}, now=now,
    )
    logger.info("[CAPTIVE] SMS credit top-up of %s for account %s (ref %s)", credits, account_id, reference)

    checkout_id, merchant_id, customer_message = _push(db, initiation, phone, "SMS Credits", stk_push, now)

    return {
        "success": True,
        "message": customer_message or "STK Push sent. Enter your M-Pesa PIN to complete payment.",
        "checkout_request_id": checkout_id,
        "merchant_request_id": merchant_id,
        "reference": reference,
        "amount": amount,
        "credits": credits,
    }
