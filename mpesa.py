# mpesa.py
"""Thin async client for the Safaricom Daraja STK push API. No business logic here."""
import base64
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from config import Settings
from errors import GatewayAuthError, GatewayUnavailableError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"


class StkPushAck(BaseModel):
  model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

  response_code: str = Field(default="", alias="ResponseCode")
  response_description: str = Field(default="", alias="ResponseDescription")
  checkout_request_id: Optional[str] = Field(default=None, alias="CheckoutRequestID")
  merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
  customer_message: Optional[str] = Field(default=None, alias="CustomerMessage")

  @property
  def accepted(self) -> bool:
    return self.response_code == "0" and bool(self.checkout_request_id)


class StkQueryResult(BaseModel):
  model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

  response_code: str = Field(default="", alias="ResponseCode")
  response_description: str = Field(default="", alias="ResponseDescription")
  checkout_request_id: Optional[str] = Field(default=None, alias="CheckoutRequestID")
  result_code: Optional[str] = Field(default=None, alias="ResultCode")
  result_desc: Optional[str] = Field(default=None, alias="ResultDesc")


def timestamp_now() -> str:
  return datetime.now().strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
  return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class MpesaClient:
  def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
    self.settings = settings
    self._transport = transport

  def _client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(
      base_url=self.settings.mpesa_base_url,
      timeout=self.settings.mpesa_timeout_seconds,
      transport=self._transport,
    )

  async def acquire_access_token(self) -> str:
    auth = (self.settings.mpesa_consumer_key or "", self.settings.mpesa_consumer_secret or "")
    try:
      async with self._client() as client:
        r = await client.get(TOKEN_PATH, auth=auth)
    except httpx.HTTPError as exc:
      logger.warning("M-Pesa token request failed: %s", exc)
      raise GatewayUnavailableError("M-Pesa is unreachable, please try again") from exc

    if not r.is_success:
      logger.error("M-Pesa token rejected: %s %s", r.status_code, r.text)
      raise GatewayAuthError(f"Failed to get M-Pesa token ({r.status_code})")
    token = r.json().get("access_token")
    if not token:
      raise GatewayAuthError("M-Pesa token response had no access_token")
    return token

  async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    token = await self.acquire_access_token()
    headers = {
      "Authorization": f"Bearer {token}",
      "Content-Type": "application/json",
    }
    try:
      async with self._client() as client:
        r = await client.post(path, headers=headers, json=payload)
    except httpx.HTTPError as exc:
      logger.warning("M-Pesa %s failed: %s", path, exc)
      raise GatewayUnavailableError("M-Pesa is unreachable, please try again") from exc

    if not r.is_success:
      logger.error("M-Pesa %s error: %s %s", path, r.status_code, r.text)
      raise GatewayUnavailableError(f"M-Pesa error: {r.status_code}")
    return r.json()

  def _signed(self) -> Dict[str, str]:
    ts = timestamp_now()
    shortcode = self.settings.mpesa_shortcode
    return {
      "BusinessShortCode": shortcode,
      "Password": stk_password(shortcode, self.settings.mpesa_passkey, ts),
      "Timestamp": ts,
    }

  async def initiate_push(self, phone: str, amount: int, account_reference: str, description: str) -> StkPushAck:
    payload = {
      **self._signed(),
      "TransactionType": "CustomerPayBillOnline",
      "Amount": amount,
      "PartyA": phone,
      "PartyB": self.settings.mpesa_shortcode,
      "PhoneNumber": phone,
      "CallBackURL": self.settings.mpesa_callback_url,
      "AccountReference": account_reference[:12],
      "TransactionDesc": description[:100],
    }
    data = await self._post(STK_PUSH_PATH, payload)
    ack = StkPushAck.model_validate(data)
    logger.info("STK push for %s KES: code=%s checkout=%s", amount, ack.response_code, ack.checkout_request_id)
    return ack

  async def query_status(self, checkout_request_id: str) -> StkQueryResult:
    payload = {**self._signed(), "CheckoutRequestID": checkout_request_id}
    data = await self._post(STK_QUERY_PATH, payload)
    return StkQueryResult.model_validate(data)
