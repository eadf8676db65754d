# payment_service.py
import logging
import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

import payment_store
from errors import GatewayError, GatewayRejectedError, NotFoundError, ValidationError
from models import Payment
from mpesa import MpesaClient, StkPushAck
from plans import plan_price, validate_plan_type

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^254[17]\d{8}$")
GYM_NAME = "Fitness16"

DEV_MODE_MESSAGE = "DEV MODE: M-Pesa not configured. Payment created as pending."


class InitiatePaymentRequest(BaseModel):
  # any "amount" sent by a client is dropped here; price comes from the catalog
  member_id: Optional[str] = None
  phone: str
  plan_type: str
  is_walkin: bool = False
  walkin_name: Optional[str] = Field(default=None, max_length=100)

  model_config = {
    "json_schema_extra": {
      "examples": [
        {"member_id": "b6f1c9e2", "phone": "254712345678", "plan_type": "month", "is_walkin": False}
      ]
    }
  }


class InitiationResult(BaseModel):
  payment_id: int
  amount: int
  checkout_request_id: Optional[str] = None
  message: str
  dev_mode: bool = False


class PaymentView(BaseModel):
  id: int
  status: str
  amount: int
  plan_type: str
  mpesa_receipt: Optional[str] = None
  failure_reason: Optional[str] = None
  created_at: datetime
  updated_at: datetime

  @classmethod
  def of(cls, p: Payment) -> "PaymentView":
    return cls(
      id=p.id,
      status=p.status,
      amount=p.amount,
      plan_type=p.plan_type,
      mpesa_receipt=p.receipt_number,
      failure_reason=p.failure_reason,
      created_at=p.created_at,
      updated_at=p.updated_at,
    )


def normalize_phone(phone: str) -> str:
  """Bring local Kenyan formats (07.., 01.., +254.., 7..) to 2547XXXXXXXX and validate."""
  digits = re.sub(r"\D", "", phone or "")
  if digits.startswith("0") and len(digits) == 10:
    digits = "254" + digits[1:]
  elif len(digits) == 9 and digits[0] in "17":
    digits = "254" + digits
  if not PHONE_RE.match(digits):
    raise ValidationError("Phone must be a Safaricom number like 2547XXXXXXXX")
  return digits


async def send_push(
  session: Session,
  gateway: MpesaClient,
  payment_id: int,
  phone: str,
  amount: int,
  account_reference: str,
  description: str,
) -> StkPushAck:
  """
  Call the gateway for an already-recorded pending payment.

  Any gateway failure marks the payment failed before the error goes up;
  the raw provider exception never leaves this function. Database writes
  run in the threadpool so the event loop is not blocked on them.
  """
  try:
    ack = await gateway.initiate_push(
      phone=phone,
      amount=amount,
      account_reference=account_reference,
      description=description,
    )
  except GatewayError as exc:
    await run_in_threadpool(payment_store.mark_failed, session, payment_id, exc.message)
    raise

  if not ack.accepted:
    reason = ack.response_description or "STK Push failed"
    logger.warning("STK push rejected for payment %s: %s", payment_id, reason)
    await run_in_threadpool(payment_store.mark_failed, session, payment_id, reason)
    raise GatewayRejectedError(reason, details={"payment_id": payment_id})

  attached = await run_in_threadpool(
    payment_store.attach_checkout, session, payment_id, ack.checkout_request_id, ack.merchant_request_id
  )
  if not attached:
    logger.warning("payment %s left pending before checkout %s was stored", payment_id, ack.checkout_request_id)
  return ack


async def initiate(session: Session, gateway: Optional[MpesaClient], req: InitiatePaymentRequest) -> InitiationResult:
  phone = normalize_phone(req.phone)
  plan_type = validate_plan_type(req.plan_type)
  if req.is_walkin and req.member_id:
    raise ValidationError("A walk-in payment cannot belong to a member")
  amount = plan_price(plan_type)

  # recorded before any external call
  payment = await run_in_threadpool(
    payment_store.create_pending,
    session,
    member_id=req.member_id,
    amount=amount,
    plan_type=plan_type,
    phone_number=phone,
    is_walkin=req.is_walkin,
    walkin_name=(req.walkin_name or "").strip() or None,
  )
  payment_id = payment.id

  if gateway is None:
    return InitiationResult(payment_id=payment_id, amount=amount, message=DEV_MODE_MESSAGE, dev_mode=True)

  ack = await send_push(
    session,
    gateway,
    payment_id,
    phone,
    amount,
    account_reference=f"F16-{payment_id}",
    description=f"{GYM_NAME} {plan_type} membership",
  )
  return InitiationResult(
    payment_id=payment_id,
    amount=amount,
    checkout_request_id=ack.checkout_request_id,
    message="STK Push sent. Check your phone.",
  )

def get_status(session: Session, payment_id: int) -> Payment:
  payment = payment_store.get(session, payment_id)
  if not payment:
    raise NotFoundError("Payment")
  return payment


def history(session: Session, member_id: str) -> List[PaymentView]:
  return [PaymentView.of(p) for p in payment_store.history(session, member_id)]
