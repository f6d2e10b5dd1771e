import argparse
import json
import uuid

import requests

from config import config
from mpesa_utils import compute_signature

# Usage:
#   python simulate_callback.py stk <CheckoutRequestID> [--amount 50] [--result-code 0]
#   python simulate_callback.py c2b <BillRefNumber> [--amount 50] [--trans-id QK12345678]
# Payloads are signed with MPESA_WEBHOOK_SECRET so the server accepts them.

STK_PATH = "/api/webhooks/mpesa/callback"
C2B_PATH = "/api/webhooks/mpesa/confirmation"


def new_transaction_id():
    return uuid.uuid4().hex[:10].upper()


def build_stk_callback(checkout_id, amount=50, phone="254712345678", result_code=0,
                       receipt=None, merchant_id=None, transaction_date=20250117130000):
    # Payload matching Safaricom's structure
    payload = {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": merchant_id or f"req_{uuid.uuid4().hex[:12]}",
                "CheckoutRequestID": checkout_id,
                "ResultCode": result_code,
                "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": amount},
                        {"Name": "MpesaReceiptNumber", "Value": receipt or new_transaction_id()},
                        {"Name": "TransactionDate", "Value": transaction_date},
                        {"Name": "PhoneNumber", "Value": int(phone)}
                    ]
                }
            }
        }
    }

    if result_code != 0:
        del payload["Body"]["stkCallback"]["CallbackMetadata"]
    return payload


def build_c2b_confirmation(bill_ref, amount=50, trans_id=None, msisdn="254712345678",
                           trans_time="20250117130000", short_code="174379"):
    return {
        "TransactionType": "Pay Bill",
        "TransID": trans_id or new_transaction_id(),
        "TransTime": trans_time,
        "TransAmount": str(amount),
        "BusinessShortCode": short_code,
        "BillRefNumber": bill_ref,
        "InvoiceNumber": "",
        "OrgAccountBalance": "10000.00",
        "ThirdPartyTransID": "",
        "MSISDN": msisdn,
        "FirstName": "John",
    }


def sign_payload(payload, secret):
    """Serialize once and sign those exact bytes. Returns (body, headers)."""
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Mpesa-Signature": compute_signature(body, secret),
    }
    return body, headers


def send(base_url, path, payload, secret):
    body, headers = sign_payload(payload, secret)
    res = requests.post(base_url.rstrip("/") + path, data=body, headers=headers, timeout=10)
    print(f"Status: {res.status_code}")
    print(f"Response: {res.text}")
    return res


def main(argv=None):
    parser = argparse.ArgumentParser(description="Send a signed M-Pesa webhook to a running server")
    parser.add_argument("kind", choices=["stk", "c2b"])
    parser.add_argument("target", help="CheckoutRequestID (stk) or BillRefNumber (c2b)")
    parser.add_argument("--amount", type=float, default=50)
    parser.add_argument("--phone", default="254712345678")
    parser.add_argument("--result-code", type=int, default=0)
    parser.add_argument("--trans-id")
    parser.add_argument("--url", default="http://localhost:5000")
    parser.add_argument("--secret", default=config.MPESA_WEBHOOK_SECRET)
    args = parser.parse_args(argv)

    if not args.secret:
        parser.error("MPESA_WEBHOOK_SECRET is not set; pass --secret")

    if args.kind == "stk":
        payload = build_stk_callback(args.target, args.amount, args.phone, args.result_code, receipt=args.trans_id)
        path = STK_PATH
    else:
        payload = build_c2b_confirmation(args.target, args.amount, args.trans_id, args.phone)
        path = C2B_PATH

    print(f"Sending {args.kind} webhook for {args.target}...")
    try:
        send(args.url, path, payload, args.secret)
    except requests.RequestException as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
