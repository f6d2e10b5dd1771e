"""
M-Pesa payment reconciliation.

Two gateway channels report on the same purchase, in any order, any number
of times:

* the STK result callback says whether the payer accepted the PIN prompt.
  It is a status hint: it moves the STK initiation to ``pending_confirmation``
  or ``failed`` and never touches a voucher.
* the C2B confirmation reports money actually received. It is the only
  writer of voucher payments.

Redelivered confirmations are recognised by the voucher's payment
sub-record (and the unique index on its transaction id); the final voucher
write is conditional on that sub-record still being empty.

A confirmation settles the STK initiation started from the paying number
when one is open for the reference, so a stale prompt from another
purchaser never receives the credential.

Handlers never raise to the gateway. Every delivery ends in a webhook-log
row and a ``{ResultCode, ResultDesc}`` acknowledgement.
"""
import datetime
import logging
import math
import time

from pymongo import ReturnDocument

import ledger
import vouchers
from audit import Outcome, WebhookSource, WebhookType, log_webhook, record_audit, record_transaction
from commission import CommissionRates
from config import config
from errors import AMOUNT_MISMATCH, INTERNAL_ERROR, NOT_FOUND, VALIDATION_ERROR
from ledger import Purpose, StkStatus
from mpesa_utils import parse_mpesa_timestamp
from phone_utils import hash_phone, mask_phone, normalize_phone

logger = logging.getLogger(__name__)

ACCEPT = 0
REJECT = 1
SMS_REFERENCE_PREFIX = "SMS"


class WebhookResult:
    """What a handler decided, and what the gateway is told."""

    def __init__(self, outcome, result_code, result_desc, reason=None,
                 voucher_id=None, transaction_id=None):
        self.outcome = outcome
        self.result_code = result_code
        self.result_desc = result_desc
        self.reason = reason
        self.voucher_id = voucher_id
        self.transaction_id = transaction_id

    @property
    def accepted(self):
        return self.result_code == ACCEPT

    def to_response(self):
        return {"ResultCode": self.result_code, "ResultDesc": self.result_desc}

    def __repr__(self):
        return f"WebhookResult({self.outcome!r}, {self.result_code}, reason={self.reason!r})"


def _elapsed_ms(started):
    return int((time.monotonic() - started) * 1000)


def _parse_amount(value):
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(amount) or amount <= 0:
        return None
    return amount


def parse_stk_metadata(stk_callback):
    """Flatten CallbackMetadata.Item into amount/receipt/transaction_date/phone."""
    parsed = {"amount": None, "receipt": None, "transaction_date": None, "phone": None}
    items = (stk_callback.get("CallbackMetadata") or {}).get("Item") or []
    for item in items:
        name = item.get("Name")
        value = item.get("Value")
        if name == "Amount":
            parsed["amount"] = _parse_amount(value)
        elif name == "MpesaReceiptNumber" and value is not None:
            parsed["receipt"] = str(value)
        elif name == "TransactionDate":
            parsed["transaction_date"] = parse_mpesa_timestamp(value)
        elif name == "PhoneNumber" and value is not None:
            parsed["phone"] = str(value)
    return parsed


class ReconciliationEngine:
    """
    Applies gateway callbacks to the voucher store and STK ledger.

    ``commission_rates`` may be injected; when omitted the rates are read
    from ``system_config`` on every confirmation.
    """

    def __init__(self, db, commission_rates=None, amount_epsilon=None, clock=None):
        self.db = db
        self.commission_rates = commission_rates
        self.amount_epsilon = config.AMOUNT_EPSILON if amount_epsilon is None else amount_epsilon
        self.clock = clock or datetime.datetime.now

    def _rates(self):
        if self.commission_rates is not None:
            return self.commission_rates
        return CommissionRates.from_db(self.db)

    def _amounts_match(self, paid, expected):
        return abs(float(paid) - float(expected)) <= self.amount_epsilon

    # ================= C2B CONFIRMATION =================

    def process_c2b_confirmation(self, payload):
        started = time.monotonic()
        try:
            return self._process_c2b(payload, started)
        except Exception as e:
            logger.exception("[C2B] Error processing confirmation")
            log_webhook(
                self.db, WebhookSource.C2B, WebhookType.C2B, Outcome.ERROR, payload,
                reason=INTERNAL_ERROR,
                metadata={
                    "error": str(e),
                    "TransID": (payload or {}).get("TransID") if isinstance(payload, dict) else None,
                    "BillRefNumber": (payload or {}).get("BillRefNumber") if isinstance(payload, dict) else None,
                },
                processing_time_ms=_elapsed_ms(started),
            )
            # Retrying a partially applied write would duplicate side effects
            return WebhookResult(Outcome.ERROR, ACCEPT, "Accepted", reason=INTERNAL_ERROR)

    def _c2b_result(self, payload, started, outcome, result_code, result_desc,
                    reason=None, metadata=None, voucher_id=None, transaction_id=None):
        log_webhook(
            self.db, WebhookSource.C2B, WebhookType.C2B, outcome, payload,
            reason=reason, metadata=metadata, processing_time_ms=_elapsed_ms(started),
        )
        return WebhookResult(outcome, result_code, result_desc, reason=reason,
                             voucher_id=voucher_id, transaction_id=transaction_id)

    def _process_c2b(self, payload, started):
        if not isinstance(payload, dict):
            return self._c2b_result(payload, started, Outcome.FAILED, REJECT,
                                    "Invalid payload", reason=VALIDATION_ERROR)

        trans_id = str(payload.get("TransID") or "").strip()
        bill_ref = str(payload.get("BillRefNumber") or "").strip()
        paid_amount = _parse_amount(payload.get("TransAmount"))
        msisdn = payload.get("MSISDN")
        msisdn = str(msisdn).strip() if msisdn not in (None, "") else None

        if not trans_id or not bill_ref or paid_amount is None:
            logger.warning("[C2B] Missing required fields (TransID=%r, BillRefNumber=%r, TransAmount=%r)",
                           trans_id, bill_ref, payload.get("TransAmount"))
            return self._c2b_result(payload, started, Outcome.FAILED, REJECT,
                                    "Missing required fields", reason=VALIDATION_ERROR)

        logger.info("[C2B] Confirmation %s: ref=%s amount=%.2f payer=%s",
                    trans_id, bill_ref, paid_amount, mask_phone(msisdn))

        payer_hash = hash_phone(msisdn)
        sms_initiation = ledger.find_for_settlement(self.db, bill_ref, payer_hash, purpose=Purpose.SMS_CREDITS)
        if sms_initiation is not None:
            return self._settle_sms_credits(payload, started, sms_initiation, trans_id, bill_ref,
                                            paid_amount, msisdn)
        if (bill_ref.upper().startswith(SMS_REFERENCE_PREFIX)
                and not self.db.vouchers.find_one({"reference": bill_ref}, {"_id": 1})):
            logger.error("[C2B] No SMS top-up issued for reference %s", bill_ref)
            return self._c2b_result(payload, started, Outcome.FAILED, REJECT,
                                    f"No account found for reference: {bill_ref}",
                                    reason="account_not_found",
                                    metadata={"TransID": trans_id, "BillRefNumber": bill_ref})

        base_meta = {"TransID": trans_id, "BillRefNumber": bill_ref}

        # Same receipt already settled a voucher
        settled = vouchers.find_by_transaction_id(self.db, trans_id)
        if settled:
            logger.info("[C2B] Duplicate delivery of %s (voucher %s)", trans_id, settled["_id"])
            return self._c2b_result(payload, started, Outcome.DUPLICATE, ACCEPT,
                                    "Duplicate transaction - already processed",
                                    reason="duplicate_transid",
                                    metadata=dict(base_meta, voucher_id=settled["_id"]),
                                    voucher_id=settled["_id"], transaction_id=trans_id)

        # Resolve the paying context: the payer's own STK initiation first, then the voucher's public reference
        initiation = ledger.find_for_settlement(self.db, bill_ref, payer_hash)

        voucher = None
        if initiation:
            if initiation["status"] == StkStatus.COMPLETED:
                logger.info("[C2B] Initiation for %s already completed", bill_ref)
                return self._c2b_result(payload, started, Outcome.DUPLICATE, ACCEPT,
                                        "Payment already processed",
                                        reason="initiation_completed",
                                        metadata=dict(base_meta, voucher_id=initiation.get("voucher_id"),
                                                      stk_status=initiation["status"]),
                                        voucher_id=initiation.get("voucher_id"))
            if initiation.get("voucher_id"):
                voucher = self.db.vouchers.find_one({"_id": initiation["voucher_id"]})

        if voucher is None:
            voucher = vouchers.find_payable_by_reference(self.db, bill_ref)

        if voucher is None:
            logger.error("[C2B] No voucher found for reference %s", bill_ref)
            return self._c2b_result(payload, started, Outcome.FAILED, REJECT,
                                    f"No voucher found for reference: {bill_ref}. Please contact support.",
                                    reason="voucher_not_found",
                                    metadata=dict(base_meta, payment_type="stk" if initiation else "manual"))

        base_meta["voucher_id"] = voucher["_id"]

        if vouchers.has_payment(voucher):
            existing = voucher["payment"]["transaction_id"]
            logger.warning("[C2B] Voucher %s already paid by %s; got %s", voucher["_id"], existing, trans_id)
            return self._c2b_result(payload, started, Outcome.DUPLICATE, ACCEPT,
                                    "Voucher already purchased",
                                    reason="voucher_already_paid",
                                    metadata=dict(base_meta, existing_transaction_id=existing),
                                    voucher_id=voucher["_id"])

        expected = float(voucher["price"])
        if not self._amounts_match(paid_amount, expected):
            logger.error("[C2B] Amount mismatch for %s. Expected: %.2f, Paid: %.2f", bill_ref, expected, paid_amount)
            return self._c2b_result(payload, started, Outcome.FAILED, REJECT,
                                    f"Amount mismatch. Expected {expected:.2f}, received {paid_amount:.2f}",
                                    reason=AMOUNT_MISMATCH,
                                    metadata=dict(base_meta, expected_amount=expected, paid_amount=paid_amount),
                                    voucher_id=voucher["_id"])

        if voucher.get("status") not in vouchers.VoucherStatus.PAYABLE:
            logger.error("[C2B] Voucher %s is %s and cannot be sold", voucher["_id"], voucher.get("status"))
            return self._c2b_result(payload, started, Outcome.FAILED, REJECT,
                                    "Voucher is no longer available. Please contact support.",
                                    reason="voucher_not_available",
                                    metadata=dict(base_meta, voucher_status=voucher.get("status")),
                                    voucher_id=voucher["_id"])

        return self._assign_voucher(payload, started, voucher, initiation, trans_id, bill_ref,
                                    paid_amount, msisdn, base_meta)

    def _payer_identity(self, initiation, msisdn):
        """
        The initiation carries the raw number the purchaser typed; the C2B
        MSISDN may arrive pre-hashed. Plaintext is only kept from the former.
        """
        if initiation and initiation.get("phone_number"):
            raw = normalize_phone(initiation["phone_number"])
            if raw:
                return raw, hash_phone(raw)
        return None, hash_phone(msisdn)

    def _assign_voucher(self, payload, started, voucher, initiation, trans_id, bill_ref,
                        paid_amount, msisdn, base_meta):
        db = self.db
        now = self.clock()

        owner = db.users.find_one({"_id": voucher.get("user_id")}) if voucher.get("user_id") else None
        commission_rate, commission_amount = self._rates().commission_for(owner, paid_amount)

        raw_phone, phone_hash = self._payer_identity(initiation, msisdn)
        purchase_expires_at = vouchers.purchase_expiry(voucher, now)

        payment = {
            "method": "mpesa",
            "transaction_id": trans_id,
            "phone_number": raw_phone,
            "phone_hash": phone_hash,
            "amount": paid_amount,
            "commission": commission_amount,
            "commission_rate": commission_rate,
            "paid_at": now,
            "transaction_time": parse_mpesa_timestamp(payload.get("TransTime")),
            "checkout_request_id": initiation.get("checkout_request_id") if initiation else None,
        }

        updated = vouchers.assign_payment(db, voucher["_id"], payment, purchase_expires_at, now)
        if updated is None:
            current = db.vouchers.find_one({"_id": voucher["_id"]})
            if vouchers.has_payment(current):
                logger.warning("[C2B] Lost settlement race for voucher %s", voucher["_id"])
                return self._c2b_result(payload, started, Outcome.DUPLICATE, ACCEPT,
                                        "Voucher already purchased",
                                        reason="concurrent_confirmation",
                                        metadata=dict(base_meta, existing_transaction_id=current["payment"]["transaction_id"]),
                                        voucher_id=voucher["_id"])
            raise RuntimeError(f"Failed to update voucher {voucher['_id']}")

        customer_id = self._upsert_customer(voucher, raw_phone, phone_hash, paid_amount, now)
        if customer_id is not None:
            db.vouchers.update_one({"_id": voucher["_id"]}, {"$set": {"customer_id": customer_id}})

        payment_id = None
        if initiation:
            ledger.transition(db, initiation["_id"], StkStatus.COMPLETED, extra={
                "voucher_id": voucher["_id"],
                "transaction_id": trans_id,
                "completed_at": now,
            }, now=now)
            payment_id = initiation.get("payment_id")
        payment_id = ledger.complete_payment(db, payment_id, trans_id, paid_amount, voucher=voucher,
                                             initiation=initiation, phone_hash=phone_hash, now=now)

        record_transaction(
            db,
            user_id=voucher.get("user_id"),
            router_id=voucher.get("router_id"),
            voucher_id=voucher["_id"],
            payment_id=payment_id,
            customer_id=customer_id,
            type="voucher_purchase",
            amount=paid_amount,
            commission=commission_amount,
            commission_rate=commission_rate,
            transaction_id=trans_id,
            reference=bill_ref,
            phone_hash=phone_hash,
            metadata={
                "checkout_request_id": payment["checkout_request_id"],
                "business_short_code": payload.get("BusinessShortCode"),
                "org_account_balance": payload.get("OrgAccountBalance"),
                "transaction_type": payload.get("TransactionType"),
                "transaction_time": payment["transaction_time"],
            },
            created_at=now,
        )
        record_audit(
            db, voucher.get("user_id"), "voucher_purchased", "voucher", voucher["_id"],
            details={
                "reference": bill_ref,
                "transaction_id": trans_id,
                "amount": paid_amount,
                "commission": commission_amount,
                "phone_hash": phone_hash,
                "purchase_expires_at": purchase_expires_at.isoformat() if purchase_expires_at else None,
                "processing_time_ms": _elapsed_ms(started),
            },
            now=now,
        )

        logger.info("[C2B] Voucher %s paid. Reference: %s, Commission: KES %.2f",
                    voucher["_id"], bill_ref, commission_amount)
        return self._c2b_result(payload, started, Outcome.SUCCESS, ACCEPT,
                                "Payment processed successfully",
                                metadata=dict(base_meta, transaction_id=trans_id, amount=paid_amount,
                                              commission=commission_amount),
                                voucher_id=voucher["_id"], transaction_id=trans_id)

    def _upsert_customer(self, voucher, raw_phone, phone_hash, amount, now):
        """The WiFi customer who bought the voucher, keyed by phone hash."""
        if not phone_hash:
            return None
        set_fields = {"last_purchase_date": now, "updated_at": now, "router_id": voucher.get("router_id")}
        on_insert = {"created_at": now, "name": None, "email": None}
        if raw_phone:
            set_fields["phone"] = raw_phone
        else:
            on_insert["phone"] = None

        customer = self.db.customers.find_one_and_update(
            {"phone_hash": phone_hash},
            {
                "$set": set_fields,
                "$setOnInsert": on_insert,
                "$inc": {"total_purchases": 1, "total_spent": amount},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return customer["_id"]

    # ================= SMS CREDIT TOP-UPS =================

    def _settle_sms_credits(self, payload, started, initiation, trans_id, bill_ref, paid_amount, msisdn):
        """Credit the account the top-up reference was issued to."""
        db = self.db
        now = self.clock()
        meta = {"TransID": trans_id, "BillRefNumber": bill_ref, "initiation_id": initiation["_id"]}

        account_id = initiation.get("user_id")
        if account_id is None:
            logger.error("[C2B] SMS top-up %s has no account", bill_ref)
            return self._c2b_result(payload, started, Outcome.FAILED, REJECT,
                                    f"No account found for reference: {bill_ref}",
                                    reason="account_not_found", metadata=meta)

        if not self._amounts_match(paid_amount, initiation["amount"]):
            return self._c2b_result(payload, started, Outcome.FAILED, REJECT,
                                    f"Amount mismatch. Expected {initiation['amount']:.2f}, received {paid_amount:.2f}",
                                    reason=AMOUNT_MISMATCH,
                                    metadata=dict(meta, expected_amount=initiation["amount"], paid_amount=paid_amount))

        credits = int(math.floor(paid_amount))
        result = db.users.update_one(
            {"_id": account_id, "sms_credits.transaction_ids": {"$ne": trans_id}},
            {
                "$inc": {"sms_credits.balance": credits, "sms_credits.total_purchased": credits},
                "$push": {"sms_credits.transaction_ids": trans_id},
                "$set": {"sms_credits.updated_at": now},
            },
        )
        if result.matched_count == 0:
            if db.users.find_one({"_id": account_id}, {"_id": 1}):
                return self._c2b_result(payload, started, Outcome.DUPLICATE, ACCEPT,
                                        "Duplicate transaction - already processed",
                                        reason="duplicate_transid", metadata=meta,
                                        transaction_id=trans_id)
            return self._c2b_result(payload, started, Outcome.FAILED, REJECT,
                                    f"No account found for reference: {bill_ref}",
                                    reason="account_not_found", metadata=meta)

        raw_phone, phone_hash = self._payer_identity(initiation, msisdn)
        payment_id = None
        if ledger.transition(db, initiation["_id"], StkStatus.COMPLETED,
                             extra={"transaction_id": trans_id, "completed_at": now}, now=now):
            payment_id = initiation.get("payment_id")
        # A second payment against a settled top-up gets its own payment row
        payment_id = ledger.complete_payment(db, payment_id, trans_id, paid_amount,
                                             initiation=initiation, phone_hash=phone_hash,
                                             purpose=Purpose.SMS_CREDITS, user_id=account_id,
                                             reference=bill_ref, now=now)

        record_transaction(
            db,
            user_id=account_id,
            payment_id=payment_id,
            type="sms_credits",
            amount=paid_amount,
            credits=credits,
            commission=0.0,
            transaction_id=trans_id,
            reference=bill_ref,
            phone_hash=phone_hash,
            created_at=now,
        )
        record_audit(
            db, account_id, "sms_credits_purchased", "user", account_id,
            details={"transaction_id": trans_id, "amount": paid_amount, "credits": credits,
                     "processing_time_ms": _elapsed_ms(started)},
            now=now,
        )
        logger.info("[C2B] Added %s SMS credits to account %s", credits, account_id)
        return self._c2b_result(payload, started, Outcome.SUCCESS, ACCEPT,
                                "Payment processed successfully",
                                metadata=dict(meta, credits=credits, amount=paid_amount),
                                transaction_id=trans_id)

    # ================= STK RESULT CALLBACK =================

    def process_stk_callback(self, payload):
        started = time.monotonic()
        try:
            return self._process_stk(payload, started)
        except Exception as e:
            logger.exception("[STK] Error processing callback")
            log_webhook(self.db, WebhookSource.STK, WebhookType.STK, Outcome.ERROR, payload,
                        reason=INTERNAL_ERROR, metadata={"error": str(e)},
                        processing_time_ms=_elapsed_ms(started))
            return WebhookResult(Outcome.ERROR, ACCEPT, "Accepted", reason=INTERNAL_ERROR)

    def _stk_result(self, payload, started, outcome, result_code=ACCEPT, result_desc="Accepted",
                    reason=None, metadata=None):
        log_webhook(self.db, WebhookSource.STK, WebhookType.STK, outcome, payload,
                    reason=reason, metadata=metadata, processing_time_ms=_elapsed_ms(started))
        return WebhookResult(outcome, result_code, result_desc, reason=reason)

    def _process_stk(self, payload, started):
        stk = ((payload or {}).get("Body") or {}).get("stkCallback") if isinstance(payload, dict) else None
        if not isinstance(stk, dict) or not stk.get("CheckoutRequestID") or stk.get("ResultCode") is None:
            logger.error("[STK] Invalid callback structure")
            return self._stk_result(payload, started, Outcome.FAILED, REJECT,
                                    "Invalid callback structure", reason=VALIDATION_ERROR)

        checkout_id = stk["CheckoutRequestID"]
        merchant_id = stk.get("MerchantRequestID")
        result_desc = stk.get("ResultDesc")
        try:
            result_code = int(stk["ResultCode"])
        except (TypeError, ValueError):
            return self._stk_result(payload, started, Outcome.FAILED, REJECT,
                                    "Invalid callback structure", reason=VALIDATION_ERROR)

        meta = {
            "CheckoutRequestID": checkout_id,
            "MerchantRequestID": merchant_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc,
        }
        logger.info("[STK] Callback %s: code=%s desc=%s", checkout_id, result_code, result_desc)

        initiation = ledger.find_by_checkout(self.db, checkout_id, merchant_id)
        if initiation is None:
            logger.warning("[STK] No initiation for CheckoutRequestID %s", checkout_id)
            return self._stk_result(payload, started, Outcome.PAYMENT_NOT_FOUND,
                                    reason=NOT_FOUND, metadata=meta)

        now = self.clock()
        meta["initiation_id"] = initiation["_id"]

        receipt = None
        if result_code == 0:
            parsed = parse_stk_metadata(stk)
            receipt = parsed["receipt"]
            target = StkStatus.PENDING_CONFIRMATION
            extra = {
                "stk_result_code": result_code,
                "stk_result_desc": result_desc,
                "mpesa_receipt_number": receipt,
                "stk_amount": parsed["amount"],
                "stk_transaction_date": parsed["transaction_date"],
            }
            meta["mpesa_receipt_number"] = receipt
            if parsed["amount"] is not None and not self._amounts_match(parsed["amount"], initiation["amount"]):
                # Recorded only; the confirmation handler rejects mismatched settlements
                logger.warning("[STK] Amount in callback (%.2f) differs from request (%.2f)",
                               parsed["amount"], initiation["amount"])
                meta["amount_mismatch"] = True
        else:
            target = StkStatus.FAILED
            extra = {"stk_result_code": result_code, "stk_result_desc": result_desc}

        if ledger.transition(self.db, initiation["_id"], target, extra=extra, now=now):
            if initiation.get("payment_id"):
                ledger.record_stk_result(self.db, initiation["payment_id"], result_code, result_desc,
                                         receipt=receipt, now=now)
            outcome = Outcome.SUCCESS if result_code == 0 else Outcome.FAILED
            reason = None if result_code == 0 else "stk_result_failed"
            return self._stk_result(payload, started, outcome, reason=reason, metadata=meta)

        current = self.db.stk_initiations.find_one({"_id": initiation["_id"]}, {"status": 1})
        current_status = current["status"] if current else None
        meta["current_status"] = current_status
        if current_status == target:
            return self._stk_result(payload, started, Outcome.DUPLICATE, reason="duplicate_callback",
                                    metadata=meta)
        # e.g. the confirmation already completed this purchase
        logger.info("[STK] Ignoring %s for initiation in status %s", target, current_status)
        return self._stk_result(payload, started, Outcome.SUCCESS, reason="transition_ignored",
                                metadata=meta)
