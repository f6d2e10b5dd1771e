import datetime

import mongomock
import pytest
from bson import ObjectId

import mpesa_utils
import vouchers
from commission import CommissionRates
from main import create_app
from reconciliation import ReconciliationEngine
from simulate_callback import sign_payload

WEBHOOK_SECRET = "test-secret"
NOW = datetime.datetime(2025, 1, 17, 13, 0, 0)
PHONE = "254712345678"


def checkout_id(n=1):
    return f"ws_CO_17012025130000{n:07d}"


@pytest.fixture
def db():
    return mongomock.MongoClient()["billing_test"]


@pytest.fixture
def app(db):
    return create_app(db=db, overrides={
        "TESTING": True,
        "MPESA_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "RATELIMIT_ENABLED": False,
        "FORCE_HTTPS": False,
    })


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def post_webhook(client):
    def post(path, payload, secret=WEBHOOK_SECRET):
        body, headers = sign_payload(payload, secret)
        return client.post(path, data=body, headers=headers)
    return post


@pytest.fixture(autouse=True)
def _reset_token_cache():
    mpesa_utils.clear_token_cache()
    yield
    mpesa_utils.clear_token_cache()


@pytest.fixture
def owner(db):
    user = {
        "_id": ObjectId(),
        "email": "owner@example.com",
        "business_info": {"type": "homeowner"},
        "payment_settings": {},
    }
    db.users.insert_one(user)
    return user


@pytest.fixture
def router(db, owner):
    doc = {"_id": ObjectId(), "name": "Home Router", "user_id": owner["_id"]}
    db.routers.insert_one(doc)
    return doc


@pytest.fixture
def voucher(db, router, owner):
    return vouchers.create_voucher(
        db, router["_id"], owner["_id"], price=50, package_type="1hour",
        duration_minutes=60, package_name="1 Hour", timed_on_purchase=True,
        max_duration_minutes=120,
    )


@pytest.fixture
def engine(db):
    return ReconciliationEngine(db, commission_rates=CommissionRates(), clock=lambda: NOW)
