import json
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_ENV"] = "development"
os.environ["MPESA_CONSUMER_KEY"] = ""
os.environ["CRON_SECRET"] = ""
os.environ["ROLLOVER_SCHEDULE_ENABLED"] = "0"

from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import models  # noqa: F401
from config import Settings, get_settings
from db import get_session
from deps import get_gateway
from errors import GatewayUnavailableError
from main import app
from models import Membership, Payment
from mpesa import StkPushAck, StkQueryResult

MEMBER = "member-1"


class FakeGateway:
  def __init__(self):
    self.pushes = []
    self.reject_with = None
    self.fail = False
    self._n = 0

  async def initiate_push(self, phone, amount, account_reference, description):
    self.pushes.append({
      "phone": phone,
      "amount": amount,
      "account_reference": account_reference,
      "description": description,
    })
    if self.fail:
      raise GatewayUnavailableError("M-Pesa is unreachable, please try again")
    if self.reject_with:
      return StkPushAck(ResponseCode="1", ResponseDescription=self.reject_with)
    self._n += 1
    return StkPushAck(
      ResponseCode="0",
      ResponseDescription="Success. Request accepted for processing",
      CheckoutRequestID=f"ws_CO_{self._n}",
      MerchantRequestID=f"mr-{self._n}",
    )

  async def query_status(self, checkout_request_id):
    return StkQueryResult(
      ResponseCode="0",
      CheckoutRequestID=checkout_request_id,
      ResultCode="1032",
      ResultDesc="Request cancelled by user",
    )


@pytest.fixture
def engine():
  eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
  SQLModel.metadata.create_all(eng)
  yield eng
  eng.dispose()


@pytest.fixture
def session(engine):
  with Session(engine) as s:
    yield s


@pytest.fixture
def settings():
  return Settings()


@pytest.fixture
def gateway():
  return FakeGateway()


@pytest.fixture
def client(engine, settings, gateway):
  def _session():
    with Session(engine) as s:
      yield s

  app.dependency_overrides[get_session] = _session
  app.dependency_overrides[get_settings] = lambda: settings
  app.dependency_overrides[get_gateway] = lambda: gateway
  yield TestClient(app)
  app.dependency_overrides.clear()


def headers(user_id=MEMBER, user_type="member"):
  return {"X-User-Id": user_id, "X-User-Type": user_type}


@pytest.fixture
def member_headers():
  return headers()


@pytest.fixture
def staff_headers():
  return headers("staff-1", "staff")


@pytest.fixture
def add_payment(session):
  def _add(**kw):
    values = {
      "member_id": MEMBER,
      "amount": 5500,
      "plan_type": "month",
      "phone_number": "254712345678",
      "status": "pending",
      "checkout_request_id": "ws_CO_test",
    }
    values.update(kw)
    p = Payment(**values)
    session.add(p)
    session.commit()
    session.refresh(p)
    return p
  return _add


@pytest.fixture
def add_membership(session):
  def _add(**kw):
    values = {
      "member_id": MEMBER,
      "plan_type": "month",
      "start_date": date(2024, 1, 1),
      "expiry_date": date(2024, 1, 31),
      "status": "active",
    }
    values.update(kw)
    m = Membership(**values)
    session.add(m)
    session.commit()
    session.refresh(m)
    return m
  return _add


def callback_body(checkout_id="ws_CO_test", result_code=0, amount=5500, receipt="QKJ4ABC123", desc=None, items=None):
  cb = {
    "MerchantRequestID": "mr-1",
    "CheckoutRequestID": checkout_id,
    "ResultCode": result_code,
    "ResultDesc": desc or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
  }
  if result_code == 0:
    if items is None:
      # deliberately not in Safaricom's usual order
      items = [
        {"Name": "PhoneNumber", "Value": 254712345678},
        {"Name": "TransactionDate", "Value": 20240101101530},
        {"Name": "MpesaReceiptNumber", "Value": receipt},
        {"Name": "Amount", "Value": amount},
      ]
    cb["CallbackMetadata"] = {"Item": items}
  return json.dumps({"Body": {"stkCallback": cb}}).encode()


@pytest.fixture
def body():
  return callback_body
