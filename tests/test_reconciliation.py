import datetime

import pytest

import ledger
import payments
import vouchers
from audit import Outcome
from captive import PollStatus, payment_status
from conftest import NOW, PHONE, checkout_id
from ledger import PaymentStatus, Purpose, StkStatus
from phone_utils import hash_phone
from reconciliation import ReconciliationEngine
from simulate_callback import build_c2b_confirmation, build_stk_callback

OTHER_PHONE = "254798765432"


def start_stk(db, voucher, n=1, phone=PHONE, now=NOW):
    initiation = ledger.create_initiation(db, voucher["reference"], phone, voucher["price"],
                                          Purpose.VOUCHER, voucher=voucher, now=now)
    payment = ledger.create_payment(db, initiation, now=now)
    ledger.attach_checkout(db, initiation["_id"], checkout_id(n), f"mr_{n}", now=now)
    ledger.attach_payment_checkout(db, payment["_id"], checkout_id(n), f"mr_{n}", now=now)
    return db.stk_initiations.find_one({"_id": initiation["_id"]})


def test_stk_then_confirmation_settles_voucher(db, engine, voucher):
    initiation = start_stk(db, voucher)

    stk = engine.process_stk_callback(build_stk_callback(checkout_id(1), amount=50, receipt="QK12345678"))
    assert stk.outcome == Outcome.SUCCESS
    assert db.stk_initiations.find_one({"_id": initiation["_id"]})["status"] == StkStatus.PENDING_CONFIRMATION
    assert db.vouchers.find_one({"_id": voucher["_id"]})["status"] == "active"

    result = engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK12345678"))

    assert result.outcome == Outcome.SUCCESS
    assert result.to_response() == {"ResultCode": 0, "ResultDesc": "Payment processed successfully"}

    stored = db.vouchers.find_one({"_id": voucher["_id"]})
    assert stored["status"] == "paid"
    assert stored["payment"]["transaction_id"] == "QK12345678"
    assert stored["payment"]["phone_number"] == PHONE
    assert stored["payment"]["phone_hash"] == hash_phone(PHONE)
    assert stored["payment"]["checkout_request_id"] == checkout_id(1)
    assert stored["usage"]["purchase_expires_at"] == NOW + datetime.timedelta(minutes=120)
    assert stored["customer_id"] is not None

    assert db.stk_initiations.find_one({"_id": initiation["_id"]})["status"] == StkStatus.COMPLETED
    payment = db.payments.find_one({"initiation_id": initiation["_id"]})
    assert payment["status"] == PaymentStatus.COMPLETED
    assert payment["transaction_id"] == "QK12345678"

    assert db.transactions.count_documents({}) == 1
    assert db.audit_logs.count_documents({"action": "voucher_purchased"}) == 1
    log = db.webhook_logs.find_one({"type": "c2b_confirmation"})
    assert log["status"] == Outcome.SUCCESS
    assert log["processing_time_ms"] is not None


@pytest.mark.parametrize("result_code", [0, 1032, 1037])
def test_stk_result_after_confirmation_changes_nothing(db, engine, voucher, result_code):
    initiation = start_stk(db, voucher)

    settled = engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000001"))
    assert settled.outcome == Outcome.SUCCESS

    late = engine.process_stk_callback(
        build_stk_callback(checkout_id(1), amount=50, result_code=result_code, receipt="QK00000001"))

    assert late.accepted
    assert late.reason == "transition_ignored"
    stored = db.vouchers.find_one({"_id": voucher["_id"]})
    assert stored["status"] == "paid"
    assert stored["payment"]["transaction_id"] == "QK00000001"
    assert db.transactions.count_documents({}) == 1
    assert db.stk_initiations.find_one({"_id": initiation["_id"]})["status"] == StkStatus.COMPLETED
    assert db.payments.find_one({"initiation_id": initiation["_id"]})["status"] == PaymentStatus.COMPLETED

    body, status = payment_status(db, checkout_id(1), now=NOW)
    assert status == 200
    assert body["status"] == PollStatus.COMPLETED
    assert body["voucher"]["code"] == voucher["code"]

    log = db.webhook_logs.find_one({"type": "stk_callback"})
    assert log["reason"] == "transition_ignored"
    assert log["metadata"]["current_status"] == StkStatus.COMPLETED


def test_confirmation_settles_the_payers_own_prompt(db, engine, voucher):
    payer = start_stk(db, voucher, n=1, phone=PHONE)
    other = start_stk(db, voucher, n=2, phone=OTHER_PHONE, now=NOW + datetime.timedelta(minutes=1))

    engine.process_stk_callback(build_stk_callback(checkout_id(2), phone=OTHER_PHONE, result_code=1032))
    engine.process_stk_callback(build_stk_callback(checkout_id(1), amount=50, receipt="QK00000040"))
    result = engine.process_c2b_confirmation(build_c2b_confirmation(
        voucher["reference"], amount=50, trans_id="QK00000040", msisdn=hash_phone(PHONE)))

    assert result.outcome == Outcome.SUCCESS
    stored = db.vouchers.find_one({"_id": voucher["_id"]})
    assert stored["payment"]["phone_number"] == PHONE
    assert stored["payment"]["checkout_request_id"] == checkout_id(1)
    assert db.stk_initiations.find_one({"_id": payer["_id"]})["status"] == StkStatus.COMPLETED
    assert db.stk_initiations.find_one({"_id": other["_id"]})["status"] == StkStatus.FAILED

    later = NOW + datetime.timedelta(minutes=2)
    paid, _ = payment_status(db, checkout_id(1), now=later)
    assert paid["status"] == PollStatus.COMPLETED
    assert paid["voucher"]["code"] == voucher["code"]

    cancelled, _ = payment_status(db, checkout_id(2), now=later)
    assert cancelled["status"] == PollStatus.CANCELLED
    assert "voucher" not in cancelled


def test_counter_payment_without_initiation(db, engine, voucher):
    result = engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000002", msisdn="0712345678"))

    assert result.outcome == Outcome.SUCCESS
    stored = db.vouchers.find_one({"_id": voucher["_id"]})
    assert stored["payment"]["phone_number"] is None
    assert stored["payment"]["phone_hash"] == hash_phone(PHONE)
    assert stored["payment"]["checkout_request_id"] is None

    payment = db.payments.find_one({"transaction_id": "QK00000002"})
    assert payment["source"] == "c2b"
    assert payment["status"] == PaymentStatus.COMPLETED
    assert payment["user_id"] == voucher["user_id"]

    customer = db.customers.find_one({"phone_hash": hash_phone(PHONE)})
    assert customer["phone"] is None
    assert customer["total_purchases"] == 1


def test_gateway_hashed_msisdn_is_passed_through(db, engine, voucher):
    hashed = hash_phone(PHONE).upper()
    engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000003", msisdn=hashed))

    stored = db.vouchers.find_one({"_id": voucher["_id"]})
    assert stored["payment"]["phone_hash"] == hash_phone(PHONE)


def test_initiation_phone_wins_over_msisdn(db, engine, voucher):
    start_stk(db, voucher, phone=OTHER_PHONE)
    engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000004", msisdn=hash_phone(PHONE)))

    stored = db.vouchers.find_one({"_id": voucher["_id"]})
    assert stored["payment"]["phone_number"] == OTHER_PHONE
    assert stored["payment"]["phone_hash"] == hash_phone(OTHER_PHONE)


def test_redelivered_confirmation_is_acknowledged_once(db, engine, voucher):
    payload = build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000005")
    engine.process_c2b_confirmation(payload)
    first = db.vouchers.find_one({"_id": voucher["_id"]})["payment"]

    again = engine.process_c2b_confirmation(dict(payload))

    assert again.outcome == Outcome.DUPLICATE
    assert again.result_code == 0
    assert db.vouchers.find_one({"_id": voucher["_id"]})["payment"] == first
    assert db.transactions.count_documents({}) == 1
    assert db.audit_logs.count_documents({}) == 1
    assert db.customers.find_one({})["total_purchases"] == 1
    assert db.webhook_logs.count_documents({"status": Outcome.DUPLICATE}) == 1


def test_second_payment_for_paid_voucher_is_duplicate(db, engine, voucher):
    start_stk(db, voucher)
    engine.process_c2b_confirmation(build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000006"))

    other = engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000007"))

    assert other.outcome == Outcome.DUPLICATE
    assert other.accepted
    assert db.vouchers.find_one({"_id": voucher["_id"]})["payment"]["transaction_id"] == "QK00000006"


@pytest.mark.parametrize("paid", [49.98, 50.02, 5, 500])
def test_amount_mismatch_leaves_voucher_untouched(db, engine, voucher, paid):
    result = engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=paid, trans_id="QK00000008"))

    assert result.reason == "amount_mismatch"
    assert result.result_code == 1
    stored = db.vouchers.find_one({"_id": voucher["_id"]})
    assert stored["status"] == "active"
    assert "payment" not in stored
    log = db.webhook_logs.find_one({"reason": "amount_mismatch"})
    assert log["metadata"]["expected_amount"] == 50.0
    assert log["metadata"]["paid_amount"] == float(paid)


def test_amount_within_epsilon_is_accepted(db, engine, voucher):
    result = engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50.01, trans_id="QK00000009"))
    assert result.outcome == Outcome.SUCCESS


@pytest.mark.parametrize("missing", ["TransID", "TransAmount", "BillRefNumber"])
def test_missing_required_field_is_rejected(db, engine, voucher, missing):
    payload = build_c2b_confirmation(voucher["reference"], amount=50)
    del payload[missing]

    result = engine.process_c2b_confirmation(payload)

    assert result.result_code == 1
    assert result.reason == "validation_error"
    assert "payment" not in db.vouchers.find_one({"_id": voucher["_id"]})


def test_unknown_reference(db, engine, voucher):
    result = engine.process_c2b_confirmation(build_c2b_confirmation("VCHDEADBEEF", amount=50))
    assert result.result_code == 1
    assert result.reason == "voucher_not_found"
    assert "VCHDEADBEEF" in result.result_desc


def test_login_code_is_not_a_billing_reference(db, engine, voucher):
    result = engine.process_c2b_confirmation(build_c2b_confirmation(voucher["code"], amount=50))
    assert result.reason == "voucher_not_found"
    assert db.vouchers.find_one({"_id": voucher["_id"]})["status"] == "active"


def test_lost_race_is_reported_as_duplicate(db, engine, voucher, monkeypatch):
    real_assign = vouchers.assign_payment

    def racing_assign(db_, voucher_id, payment, purchase_expires_at, now):
        # Another confirmation lands between the checks and the write
        db_.vouchers.update_one({"_id": voucher_id}, {"$set": {
            "payment": dict(payment, transaction_id="QKOTHER001"), "status": "paid"}})
        return real_assign(db_, voucher_id, payment, purchase_expires_at, now)

    monkeypatch.setattr(vouchers, "assign_payment", racing_assign)

    result = engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000010"))

    assert result.outcome == Outcome.DUPLICATE
    assert result.reason == "concurrent_confirmation"
    assert db.vouchers.find_one({"_id": voucher["_id"]})["payment"]["transaction_id"] == "QKOTHER001"
    assert db.transactions.count_documents({}) == 0
    assert db.customers.count_documents({}) == 0


def test_unexpected_error_is_logged_and_acknowledged(db, voucher):
    class BrokenRates:
        def commission_for(self, owner, amount):
            raise RuntimeError("rates unavailable")

    engine = ReconciliationEngine(db, commission_rates=BrokenRates(), clock=lambda: NOW)
    result = engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000011"))

    assert result.outcome == Outcome.ERROR
    assert result.to_response() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    log = db.webhook_logs.find_one({"status": Outcome.ERROR})
    assert log["metadata"]["error"] == "rates unavailable"
    assert "payment" not in db.vouchers.find_one({"_id": voucher["_id"]})


def test_commission_uses_owner_rate(db, engine, voucher, owner):
    db.users.update_one({"_id": owner["_id"]}, {"$set": {"payment_settings.commission_rate": 5}})

    engine.process_c2b_confirmation(build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000012"))

    payment = db.vouchers.find_one({"_id": voucher["_id"]})["payment"]
    assert payment["commission_rate"] == 5.0
    assert payment["commission"] == 2.5
    assert db.transactions.find_one({})["commission"] == 2.5


def test_commission_rates_loaded_from_system_config(db, voucher, owner):
    db.system_config.insert_one({"key": "commission_rates", "value": {"homeowner": 15}})
    engine = ReconciliationEngine(db, clock=lambda: NOW)

    engine.process_c2b_confirmation(build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000013"))

    assert db.vouchers.find_one({"_id": voucher["_id"]})["payment"]["commission"] == 7.5


def test_repeat_customer_accumulates(db, engine, router, owner):
    first = vouchers.create_voucher(db, router["_id"], owner["_id"], 20, "30min", 30)
    second = vouchers.create_voucher(db, router["_id"], owner["_id"], 30, "1hour", 60)

    engine.process_c2b_confirmation(build_c2b_confirmation(first["reference"], amount=20, trans_id="QK00000014"))
    engine.process_c2b_confirmation(build_c2b_confirmation(second["reference"], amount=30, trans_id="QK00000015"))

    customer = db.customers.find_one({"phone_hash": hash_phone(PHONE)})
    assert customer["total_purchases"] == 2
    assert customer["total_spent"] == 50


def test_failed_stk_can_still_be_settled(db, engine, voucher):
    initiation = start_stk(db, voucher)
    engine.process_stk_callback(build_stk_callback(checkout_id(1), result_code=1037))
    assert db.stk_initiations.find_one({"_id": initiation["_id"]})["status"] == StkStatus.FAILED

    result = engine.process_c2b_confirmation(
        build_c2b_confirmation(voucher["reference"], amount=50, trans_id="QK00000016"))

    assert result.outcome == Outcome.SUCCESS
    assert db.stk_initiations.find_one({"_id": initiation["_id"]})["status"] == StkStatus.COMPLETED


def test_voucher_without_purchase_window(db, engine, router, owner):
    plain = vouchers.create_voucher(db, router["_id"], owner["_id"], 10, "30min", 30)
    engine.process_c2b_confirmation(build_c2b_confirmation(plain["reference"], amount=10, trans_id="QK00000017"))
    assert db.vouchers.find_one({"_id": plain["_id"]})["usage"]["purchase_expires_at"] is None


# ================= SMS CREDITS =================

def start_top_up(db, owner, amount=100, reference="SMS1A2B3C4D"):
    initiation = ledger.create_initiation(db, reference, PHONE, amount, Purpose.SMS_CREDITS,
                                          user_id=owner["_id"], metadata={"credits": int(amount)}, now=NOW)
    ledger.create_payment(db, initiation, now=NOW)
    return db.stk_initiations.find_one({"_id": initiation["_id"]})


def test_sms_credit_top_up(db, engine, owner):
    initiation = start_top_up(db, owner)

    result = engine.process_c2b_confirmation(build_c2b_confirmation("SMS1A2B3C4D", amount=100, trans_id="QK00000020"))

    assert result.outcome == Outcome.SUCCESS
    account = db.users.find_one({"_id": owner["_id"]})
    assert account["sms_credits"]["balance"] == 100
    assert account["sms_credits"]["transaction_ids"] == ["QK00000020"]
    assert db.stk_initiations.find_one({"_id": initiation["_id"]})["status"] == StkStatus.COMPLETED
    payment = db.payments.find_one({"_id": initiation["payment_id"]})
    assert payment["status"] == PaymentStatus.COMPLETED
    assert payment["user_id"] == owner["_id"]
    assert db.transactions.find_one({"type": "sms_credits"})["credits"] == 100
    assert db.audit_logs.count_documents({"action": "sms_credits_purchased"}) == 1


def test_sms_top_up_from_purchase_to_credit(db, engine, owner):
    def push(phone, amount, reference, desc):
        return {"success": True, "checkout_request_id": checkout_id(9), "merchant_request_id": "mr_9"}

    issued = payments.initiate_sms_credit_purchase(db, owner["_id"], 250, PHONE, stk_push=push, now=NOW)
    assert len(issued["reference"]) <= 12

    result = engine.process_c2b_confirmation(
        build_c2b_confirmation(issued["reference"], amount=250, trans_id="QK00000025"))

    assert result.outcome == Outcome.SUCCESS
    assert db.users.find_one({"_id": owner["_id"]})["sms_credits"]["balance"] == 250
    body, _ = payment_status(db, checkout_id(9), now=NOW)
    assert body["status"] == PollStatus.COMPLETED
    assert body["credits"] == 250


def test_sms_credit_redelivery_is_duplicate(db, engine, owner):
    start_top_up(db, owner, amount=75)
    payload = build_c2b_confirmation("SMS1A2B3C4D", amount=75, trans_id="QK00000021")
    engine.process_c2b_confirmation(payload)
    again = engine.process_c2b_confirmation(dict(payload))

    assert again.outcome == Outcome.DUPLICATE
    assert again.accepted
    assert db.users.find_one({"_id": owner["_id"]})["sms_credits"]["balance"] == 75
    assert db.transactions.count_documents({}) == 1


def test_sms_credit_amount_must_match_request(db, engine, owner):
    start_top_up(db, owner, amount=100)

    result = engine.process_c2b_confirmation(build_c2b_confirmation("SMS1A2B3C4D", amount=90, trans_id="QK00000022"))

    assert result.reason == "amount_mismatch"
    assert "sms_credits" not in db.users.find_one({"_id": owner["_id"]})


def test_sms_credit_unknown_reference(db, engine):
    result = engine.process_c2b_confirmation(build_c2b_confirmation("SMS00000000", amount=50, trans_id="QK00000023"))
    assert result.result_code == 1
    assert result.reason == "account_not_found"


def test_sms_credit_for_removed_account(db, engine, owner):
    start_top_up(db, owner, amount=50)
    db.users.delete_one({"_id": owner["_id"]})

    result = engine.process_c2b_confirmation(build_c2b_confirmation("SMS1A2B3C4D", amount=50, trans_id="QK00000024"))

    assert result.result_code == 1
    assert result.reason == "account_not_found"
    assert db.transactions.count_documents({}) == 0
