import logging

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman

import captive
import database
import payments
from audit import Outcome, WebhookSource, WebhookType, log_webhook
from config import config
from errors import BillingError
from mpesa_utils import signature_from_headers, verify_webhook_signature
from reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

# ============== RATE LIMITING ==============
# Only purchaser-facing endpoints are limited; the gateway must never be throttled
limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

api = Blueprint("api", __name__)


def _engine():
    return ReconciliationEngine(
        database.get_db(),
        commission_rates=current_app.extensions.get("commission_rates"),
        amount_epsilon=current_app.config["AMOUNT_EPSILON"],
    )


def _rejected_signature(source, type_):
    """Log and answer a webhook whose signature does not verify."""
    raw = request.get_data()
    payload = request.get_json(silent=True)
    if payload is None:
        payload = raw.decode("utf-8", errors="replace")
    logger.warning("[M-PESA] Rejected %s from %s: invalid signature", type_, request.remote_addr)
    log_webhook(database.get_db(), source, type_, Outcome.FAILED, payload,
                reason="invalid_signature", metadata={"remote_addr": request.remote_addr})
    return jsonify({"ResultCode": 1, "ResultDesc": "Invalid signature"}), 401


def _signature_ok():
    return verify_webhook_signature(
        request.get_data(),
        signature_from_headers(request.headers),
        current_app.config.get("MPESA_WEBHOOK_SECRET"),
    )


# ============== WEBHOOKS ==============

@api.route("/api/webhooks/mpesa/confirmation", methods=["POST"])
def mpesa_confirmation():
    """C2B confirmation: the only delivery that settles a voucher."""
    if not _signature_ok():
        return _rejected_signature(WebhookSource.C2B, WebhookType.C2B)

    result = _engine().process_c2b_confirmation(request.get_json(silent=True))
    return jsonify(result.to_response()), 200


@api.route("/api/webhooks/mpesa/callback", methods=["POST"])
def mpesa_stk_callback():
    """STK result callback: status bookkeeping only."""
    if not _signature_ok():
        return _rejected_signature(WebhookSource.STK, WebhookType.STK)

    result = _engine().process_stk_callback(request.get_json(silent=True))
    return jsonify(result.to_response()), 200


# ============== CAPTIVE PORTAL ==============

@api.route("/api/captive/purchase", methods=["POST"])
@limiter.limit(lambda: current_app.config["PURCHASE_RATE_LIMIT"])
def captive_purchase():
    data = request.get_json(silent=True) or {}
    result = payments.initiate_voucher_purchase(
        database.get_db(),
        data.get("voucher_id"),
        data.get("phone_number") or data.get("phone"),
        mac_address=data.get("mac_address"),
        router_id=data.get("router_id"),
        timeout_seconds=current_app.config["PAYMENT_TIMEOUT_SECONDS"],
        duplicate_window_seconds=current_app.config["DUPLICATE_PURCHASE_WINDOW_SECONDS"],
    )
    return jsonify(result), 200


@api.route("/api/captive/sms-credits/purchase", methods=["POST"])
@limiter.limit(lambda: current_app.config["PURCHASE_RATE_LIMIT"])
def captive_sms_credits_purchase():
    data = request.get_json(silent=True) or {}
    result = payments.initiate_sms_credit_purchase(
        database.get_db(),
        data.get("user_id"),
        data.get("credits"),
        data.get("phone_number") or data.get("phone"),
    )
    return jsonify(result), 200


@api.route("/api/captive/payment-status", methods=["GET"])
@limiter.limit(lambda: current_app.config["POLL_RATE_LIMIT"])
def captive_payment_status():
    body, status = captive.payment_status(
        database.get_db(),
        request.args.get("checkout_id"),
        router_id=request.args.get("router_id"),
        timeout_seconds=current_app.config["PAYMENT_TIMEOUT_SECONDS"],
    )
    return jsonify(body), status


@api.route("/api/captive/verify-mpesa", methods=["POST"])
@limiter.limit(lambda: current_app.config["VERIFY_RATE_LIMIT"])
def captive_verify_mpesa():
    data = request.get_json(silent=True) or {}
    body, status = captive.verify_transaction_code(
        database.get_db(),
        data.get("transaction_code"),
        data.get("router_id"),
        data.get("mac_address"),
        ip_address=request.remote_addr,
    )
    return jsonify(body), status


@api.route("/health", methods=["GET"])
def health():
    healthy = database.ping(database.get_db())
    return jsonify({
        "status": "ok" if healthy else "degraded",
        "database": "connected" if healthy else "unavailable",
        "mpesa_env": current_app.config["MPESA_ENV"],
    }), 200 if healthy else 503


# ============== APP FACTORY ==============

def _handle_billing_error(e):
    if e.status_code >= 500:
        logger.error("[API] %s: %s", e.code, e.message)
    return jsonify(e.to_dict()), e.status_code


def _no_store(response):
    if request.path.startswith("/api/captive/"):
        response.headers["Cache-Control"] = "no-store"
    return response


def create_app(db=None, overrides=None):
    app = Flask(__name__)
    app.config.from_object(config)
    app.config.update(overrides or {})

    logging.basicConfig(
        level=logging.DEBUG if app.config.get("DEBUG") else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Security Headers (Talisman); this is a JSON API, no pages to protect with a CSP
    Talisman(app, content_security_policy=None, force_https=app.config["FORCE_HTTPS"])

    # Captive pages are served from router-local origins
    CORS(app, resources={r"/api/captive/*": {"origins": app.config["CORS_ORIGINS"]}})

    limiter.init_app(app)

    if db is None:
        db = database.connect_db()
    database.init_db_indexes(db)
    app.extensions["mongo_db"] = db

    app.register_blueprint(api)
    app.register_error_handler(BillingError, _handle_billing_error)
    app.after_request(_no_store)

    if not app.config.get("MPESA_WEBHOOK_SECRET"):
        logger.warning("[M-PESA] MPESA_WEBHOOK_SECRET is not set; every webhook will be rejected")
    return app


if __name__ == "__main__":
    # Only enable debug in development, NEVER in production
    create_app().run(host="0.0.0.0", port=5000, debug=config.DEBUG)
