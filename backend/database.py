import logging

import certifi
from flask import current_app
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import config

logger = logging.getLogger(__name__)

_client = None


def get_client():
    """Lazily create the shared MongoClient."""
    global _client
    if _client is None:
        uri = config.MONGODB_URI
        kwargs = {"serverSelectionTimeoutMS": 5000}
        if uri.startswith("mongodb+srv://"):
            kwargs["tlsCAFile"] = certifi.where()
        _client = MongoClient(uri, **kwargs)
    return _client


def connect_db():
    return get_client()[config.MONGODB_DB_NAME]


def get_db():
    """Database bound to the running Flask app."""
    return current_app.extensions["mongo_db"]


def ping(db):
    try:
        db.command("ping")
        return True
    except Exception as e:
        logger.warning("[DB] Ping failed: %s", e)
        return False


def init_db_indexes(db):
    """Ensure indexes. The sparse unique index on the voucher's transaction id
    makes a second settlement of the same M-Pesa receipt fail in storage."""
    try:
        db.vouchers.create_index("reference", unique=True)
        db.vouchers.create_index("payment.transaction_id", unique=True, sparse=True)
        db.vouchers.create_index([("router_id", ASCENDING), ("status", ASCENDING)])

        db.stk_initiations.create_index("checkout_request_id", unique=True, sparse=True)
        db.stk_initiations.create_index([("account_reference", ASCENDING), ("created_at", DESCENDING)])
        db.stk_initiations.create_index("merchant_request_id", sparse=True)

        db.payments.create_index("checkout_request_id", sparse=True)
        db.payments.create_index([("transaction_id", ASCENDING), ("user_id", ASCENDING)])

        db.customers.create_index("phone_hash", unique=True)
        db.webhook_logs.create_index([("source", ASCENDING), ("timestamp", DESCENDING)])
        db.transactions.create_index("transaction_id")
        logger.debug("[DB] Indexes ensured")
    except Exception as e:
        logger.warning("[DB] Index warning: %s", e)
