import base64
import binascii
import datetime
import hashlib
import hmac
import logging
import time

import requests

from config import config
from phone_utils import mask_phone, normalize_phone

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("X-Mpesa-Signature", "X-Safaricom-Signature")
MAX_ACCOUNT_REFERENCE_LENGTH = 12  # Daraja rejects longer AccountReference values

# Token cache to avoid regenerating on every request
_token_cache = {"token": None, "expires_at": None}


def get_mpesa_password(shortcode, passkey, timestamp=None):
    """Generates the password for STK Push"""
    timestamp = timestamp or datetime.datetime.now().strftime('%Y%m%d%H%M%S')
    data_to_encode = f"{shortcode}{passkey}{timestamp}"
    encoded_string = base64.b64encode(data_to_encode.encode()).decode('utf-8')
    return encoded_string, timestamp


def parse_mpesa_timestamp(value):
    """20191219102115 -> datetime(2019, 12, 19, 10, 21, 15); None if malformed."""
    if value is None:
        return None
    try:
        return datetime.datetime.strptime(str(value), '%Y%m%d%H%M%S')
    except ValueError:
        return None


def get_access_token(consumer_key=None, consumer_secret=None, force_refresh=False):
    """Generates OAuth access token from Daraja API with caching"""
    consumer_key = consumer_key or config.MPESA_CONSUMER_KEY
    consumer_secret = consumer_secret or config.MPESA_CONSUMER_SECRET

    # Check cache first (tokens valid for ~1 hour, we cache for 50 min)
    if not force_refresh and _token_cache["token"] and _token_cache["expires_at"]:
        if datetime.datetime.now() < _token_cache["expires_at"]:
            logger.debug("[M-PESA] Using cached access token")
            return _token_cache["token"]

    api_url = f"{config.MPESA_BASE_URL}/oauth/v1/generate?grant_type=client_credentials"

    try:
        logger.debug("[M-PESA] Generating new access token...")
        response = requests.get(api_url, auth=(consumer_key, consumer_secret), timeout=(5, 10))
        response.raise_for_status()
        token = response.json()['access_token']

        _token_cache["token"] = token
        _token_cache["expires_at"] = datetime.datetime.now() + datetime.timedelta(minutes=50)
        logger.debug("[M-PESA] Token generated and cached successfully")
        return token
    except requests.Timeout:
        logger.warning("[M-PESA] Timeout while generating access token")
        return None
    except (requests.RequestException, KeyError, ValueError) as e:
        logger.warning("[M-PESA] Error generating access token: %s", e)
        return None


def clear_token_cache():
    _token_cache["token"] = None
    _token_cache["expires_at"] = None


def initiate_stk_push(phone_number, amount, account_reference, transaction_desc="WiFi Voucher",
                      max_retries=3):
    """Initiates an STK Push to the customer's phone with retry logic"""
    shortcode = config.MPESA_SHORTCODE
    passkey = config.MPESA_PASSKEY
    callback_url = config.MPESA_CALLBACK_URL

    if not all([config.MPESA_CONSUMER_KEY, config.MPESA_CONSUMER_SECRET, shortcode, passkey]):
        return {"success": False, "error": "M-Pesa credentials missing in config"}

    phone = normalize_phone(phone_number)
    if not phone:
        return {"success": False, "error": f"Invalid phone number format. Expected 254XXXXXXXXX, got {phone_number}"}

    if not account_reference or len(account_reference) > MAX_ACCOUNT_REFERENCE_LENGTH:
        error = f"AccountReference must be 1-{MAX_ACCOUNT_REFERENCE_LENGTH} characters, got {account_reference!r}"
        return {"success": False, "error": error}

    try:
        amount = float(amount)
    except (TypeError, ValueError):
        amount = None
    if amount is None or amount <= 0 or not amount.is_integer():
        return {"success": False, "error": f"Amount must be a whole number of KES, got {amount}"}

    access_token = get_access_token()
    if not access_token:
        return {"success": False, "error": "Failed to generate access token - check M-Pesa credentials"}

    password, timestamp = get_mpesa_password(shortcode, passkey)

    headers = {
        'Authorization': f'Bearer {access_token}',
        'Content-Type': 'application/json'
    }

    payload = {
        "BusinessShortCode": shortcode,
        "Password": password,
        "Timestamp": timestamp,
        "TransactionType": "CustomerPayBillOnline",
        "Amount": int(amount),
        "PartyA": phone,
        "PartyB": shortcode,
        "PhoneNumber": phone,
        "CallBackURL": callback_url,
        "AccountReference": account_reference,
        "TransactionDesc": transaction_desc
    }

    api_url = f"{config.MPESA_BASE_URL}/mpesa/stkpush/v1/processrequest"

    for attempt in range(max_retries):
        try:
            logger.info("[M-PESA] STK Push attempt %s/%s to %s for %s (ref %s)",
                        attempt + 1, max_retries, mask_phone(phone), payload["Amount"], account_reference)

            response = requests.post(api_url, json=payload, headers=headers, timeout=(5, 15))
            response_data = response.json()

            if response.status_code == 200 and str(response_data.get('ResponseCode')) == '0':
                logger.info("[M-PESA] STK Push accepted: %s", response_data.get('CheckoutRequestID'))
                return {
                    "success": True,
                    "message": "STK Push initiated successfully",
                    "checkout_request_id": response_data.get('CheckoutRequestID'),
                    "merchant_request_id": response_data.get('MerchantRequestID'),
                    "customer_message": response_data.get('CustomerMessage'),
                }

            error_msg = response_data.get('errorMessage') or response_data.get('ResponseDescription', 'STK Push failed')
            logger.warning("[M-PESA] STK Push failed: %s", error_msg)
            return {"success": False, "error": error_msg}

        except requests.Timeout:
            logger.warning("[M-PESA] Timeout on attempt %s", attempt + 1)
            if attempt < max_retries - 1:
                time.sleep(0.5 * (attempt + 1))
                continue
            return {"success": False, "error": "Request timeout - Safaricom API is slow. Please try again."}

        except (requests.RequestException, ValueError) as e:
            logger.warning("[M-PESA] Network error on attempt %s: %s", attempt + 1, e)
            if attempt < max_retries - 1:
                time.sleep(0.5 * (attempt + 1))
                continue
            return {"success": False, "error": f"Network error: {str(e)}"}

    return {"success": False, "error": "Maximum retries exceeded"}


def query_stk_status(checkout_request_id):
    """Ask the gateway for the outcome of an STK Push it never called back about."""
    access_token = get_access_token()
    if not access_token:
        return {"success": False, "error": "Failed to generate access token - check M-Pesa credentials"}

    password, timestamp = get_mpesa_password(config.MPESA_SHORTCODE, config.MPESA_PASSKEY)
    payload = {
        "BusinessShortCode": config.MPESA_SHORTCODE,
        "Password": password,
        "Timestamp": timestamp,
        "CheckoutRequestID": checkout_request_id,
    }
    headers = {'Authorization': f'Bearer {access_token}', 'Content-Type': 'application/json'}

    try:
        response = requests.post(f"{config.MPESA_BASE_URL}/mpesa/stkpushquery/v1/query",
                                 json=payload, headers=headers, timeout=(5, 15))
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("[M-PESA] STK query failed for %s: %s", checkout_request_id, e)
        return {"success": False, "error": str(e)}

    result_code = data.get('ResultCode')
    return {
        "success": True,
        "result_code": int(result_code) if result_code is not None and str(result_code).isdigit() else result_code,
        "result_desc": data.get('ResultDesc'),
        "raw": data,
    }


def compute_signature(raw_body, secret):
    if isinstance(raw_body, str):
        raw_body = raw_body.encode('utf-8')
    digest = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('utf-8')


def verify_webhook_signature(raw_body, signature, secret):
    """HMAC-SHA256 over the raw body; base64 or hex, optionally prefixed 'sha256='."""
    if not secret or not signature:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode('utf-8')

    signature = signature.strip()
    if signature.lower().startswith('sha256='):
        signature = signature[len('sha256='):]

    expected = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).digest()

    try:
        if len(signature) == 64 and all(c in '0123456789abcdefABCDEF' for c in signature):
            provided = bytes.fromhex(signature)
        else:
            provided = base64.b64decode(signature, validate=True)
    except (ValueError, binascii.Error):
        return False

    return hmac.compare_digest(provided, expected)


def signature_from_headers(headers):
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None
