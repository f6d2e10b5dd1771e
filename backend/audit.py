"""
Append-only records: webhook log, transactions and audit log.
Nothing in this service updates or deletes these rows after insert.
"""
import datetime
import logging

logger = logging.getLogger(__name__)


class WebhookSource:
    C2B = "mpesa_confirmation"
    STK = "mpesa_stk_callback"


class WebhookType:
    C2B = "c2b_confirmation"
    STK = "stk_callback"


class Outcome:
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    ERROR = "error"
    PAYMENT_NOT_FOUND = "payment_not_found"


def log_webhook(db, source, type_, status, payload, reason=None, metadata=None,
                processing_time_ms=None, now=None):
    doc = {
        "source": source,
        "type": type_,
        "status": status,
        "reason": reason,
        "payload": payload if isinstance(payload, dict) else {"raw": payload},
        "metadata": metadata or {},
        "timestamp": now or datetime.datetime.now(),
        "processing_time_ms": processing_time_ms,
    }
    try:
        db.webhook_logs.insert_one(doc)
    except Exception as e:
        # The gateway still gets its acknowledgement
        logger.error("[WEBHOOK] Failed to write webhook log (%s/%s): %s", type_, status, e)
        return None
    return doc


def record_transaction(db, **fields):
    doc = {
        "payment_method": "mpesa",
        "currency": "KES",
        "status": "completed",
        "created_at": datetime.datetime.now(),
    }
    doc.update(fields)
    doc["_id"] = db.transactions.insert_one(doc).inserted_id
    return doc


def record_audit(db, user_id, action, resource_type, resource_id, details,
                 ip_address="mpesa-webhook", user_agent="Safaricom M-Pesa", now=None):
    doc = {
        "user_id": user_id,
        "action": action,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "details": details,
        "ip_address": ip_address,
        "user_agent": user_agent,
        "timestamp": now or datetime.datetime.now(),
    }
    doc["_id"] = db.audit_logs.insert_one(doc).inserted_id
    return doc
