import base64
import json

import httpx
import pytest

from config import Settings
from errors import GatewayAuthError, GatewayUnavailableError
from mpesa import MpesaClient, stk_password


def make_settings(**kw):
  values = dict(
    mpesa_consumer_key="key",
    mpesa_consumer_secret="secret",
    mpesa_passkey="passkey",
    mpesa_shortcode="174379",
    mpesa_callback_url="https://example.com/api/payments/callback",
  )
  values.update(kw)
  return Settings(**values)


def test_password_is_base64_of_shortcode_passkey_timestamp():
  pw = stk_password("174379", "pk", "20240101120000")
  assert base64.b64decode(pw).decode() == "174379pk20240101120000"


async def test_initiate_push_signs_payload_and_parses_ack():
  seen = {}

  def handler(request: httpx.Request):
    if request.url.path == "/oauth/v1/generate":
      expected = "Basic " + base64.b64encode(b"key:secret").decode()
      assert request.headers["authorization"] == expected
      return httpx.Response(200, json={"access_token": "tok", "expires_in": "3599"})
    seen["auth"] = request.headers["authorization"]
    seen["body"] = json.loads(request.content)
    return httpx.Response(200, json={
      "MerchantRequestID": "29115-34620561-1",
      "CheckoutRequestID": "ws_CO_191220191020363925",
      "ResponseCode": "0",
      "ResponseDescription": "Success. Request accepted for processing",
      "CustomerMessage": "Success. Request accepted for processing",
    })

  client = MpesaClient(make_settings(), transport=httpx.MockTransport(handler))
  ack = await client.initiate_push("254712345678", 5500, "F16-42", "Fitness16 month membership")

  assert ack.accepted
  assert ack.checkout_request_id == "ws_CO_191220191020363925"
  assert seen["auth"] == "Bearer tok"
  body = seen["body"]
  assert body["Amount"] == 5500
  assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
  assert body["PartyB"] == body["BusinessShortCode"] == "174379"
  assert body["TransactionType"] == "CustomerPayBillOnline"
  assert body["CallBackURL"] == "https://example.com/api/payments/callback"
  decoded = base64.b64decode(body["Password"]).decode()
  assert decoded == "174379passkey" + body["Timestamp"]


def test_sandbox_and_production_base_urls():
  assert make_settings().mpesa_base_url == "https://sandbox.safaricom.co.ke"
  assert make_settings(mpesa_env="production").mpesa_base_url == "https://api.safaricom.co.ke"


async def test_token_rejection_is_auth_error():
  transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"errorMessage": "Invalid credentials"}))
  client = MpesaClient(make_settings(), transport=transport)
  with pytest.raises(GatewayAuthError):
    await client.acquire_access_token()


async def test_network_failure_is_unavailable():
  def handler(request):
    raise httpx.ConnectError("boom", request=request)

  client = MpesaClient(make_settings(), transport=httpx.MockTransport(handler))
  with pytest.raises(GatewayUnavailableError):
    await client.initiate_push("254712345678", 500, "F16-1", "day")


async def test_push_non_2xx_is_unavailable():
  def handler(request):
    if request.url.path == "/oauth/v1/generate":
      return httpx.Response(200, json={"access_token": "tok"})
    return httpx.Response(500, text="upstream error")

  client = MpesaClient(make_settings(), transport=httpx.MockTransport(handler))
  with pytest.raises(GatewayUnavailableError):
    await client.initiate_push("254712345678", 500, "F16-1", "day")


async def test_query_status_reads_numeric_result_code():
  def handler(request):
    if request.url.path == "/oauth/v1/generate":
      return httpx.Response(200, json={"access_token": "tok"})
    assert json.loads(request.content)["CheckoutRequestID"] == "ws_CO_1"
    return httpx.Response(200, json={
      "ResponseCode": "0",
      "ResponseDescription": "The service request has been accepted successsfully",
      "CheckoutRequestID": "ws_CO_1",
      "ResultCode": 1032,
      "ResultDesc": "Request cancelled by user",
    })

  client = MpesaClient(make_settings(), transport=httpx.MockTransport(handler))
  res = await client.query_status("ws_CO_1")
  assert res.result_code == "1032"
