# callback_handler.py
"""
STK push callback reconciliation.

Safaricom posts the final outcome of a push here, possibly more than once
and possibly long after the member's UI stopped polling. The handler
matches the callback to a Payment by checkout id, moves it out of
`pending` with a conditional update, and on success either creates the
member's Membership or marks a queued next plan as paid.

`handle_callback` never raises: the provider only sees the ResultCode in
the acknowledgment body, and anything odd goes to the security log.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import update
from sqlmodel import Session, select

import audit
import payment_store
from config import Settings
from errors import CallbackMalformedError
from models import (
  Membership,
  Payment,
  MEMBERSHIP_ACTIVE,
  MEMBERSHIP_EXPIRED,
  PAYMENT_COMPLETED,
  PAYMENT_TERMINAL,
)
from plans import expiry_for

logger = logging.getLogger(__name__)

# Safaricom callback egress addresses
SAFARICOM_IPS = frozenset([
  "196.201.214.200",
  "196.201.214.206",
  "196.201.213.114",
  "196.201.214.207",
  "196.201.214.208",
  "196.201.213.44",
  "196.201.212.127",
  "196.201.212.138",
  "196.201.212.129",
  "196.201.212.136",
  "196.201.212.74",
  "196.201.212.69",
])


class CallbackAck(BaseModel):
  ResultCode: int
  ResultDesc: str


def _ack(code: int, desc: str) -> CallbackAck:
  return CallbackAck(ResultCode=code, ResultDesc=desc)


@dataclass
class StkCallback:
  checkout_request_id: str
  result_code: int
  result_desc: str
  merchant_request_id: Optional[str] = None
  items: List[Dict[str, Any]] = field(default_factory=list)

  @property
  def succeeded(self) -> bool:
    return self.result_code == 0


def find_metadata_value(items: List[Dict[str, Any]], name: str) -> Any:
  """Look up a CallbackMetadata item by Name. Order is not guaranteed and items may be missing."""
  for item in items:
    if isinstance(item, dict) and item.get("Name") == name:
      return item.get("Value")
  return None


def _result_code(value: Any) -> int:
  if isinstance(value, bool):
    raise CallbackMalformedError("ResultCode must be numeric")
  if isinstance(value, int):
    return value
  if isinstance(value, str) and value.strip().lstrip("-").isdigit():
    return int(value.strip())
  raise CallbackMalformedError("ResultCode must be numeric")


def parse_callback(raw_body: bytes) -> StkCallback:
  try:
    body = json.loads(raw_body or b"")
  except (ValueError, UnicodeDecodeError) as exc:
    raise CallbackMalformedError("Callback body is not JSON") from exc

  outer = body.get("Body") if isinstance(body, dict) else None
  cb = outer.get("stkCallback") if isinstance(outer, dict) else None
  if not isinstance(cb, dict):
    raise CallbackMalformedError("Missing Body.stkCallback")

  checkout_id = cb.get("CheckoutRequestID")
  if not isinstance(checkout_id, str) or not checkout_id.strip():
    raise CallbackMalformedError("Missing CheckoutRequestID")
  if "ResultCode" not in cb:
    raise CallbackMalformedError("Missing ResultCode")
  result_desc = cb.get("ResultDesc")
  if not isinstance(result_desc, str):
    raise CallbackMalformedError("Missing ResultDesc")

  metadata = cb.get("CallbackMetadata")
  items = metadata.get("Item") if isinstance(metadata, dict) else None

  return StkCallback(
    checkout_request_id=checkout_id.strip(),
    result_code=_result_code(cb.get("ResultCode")),
    result_desc=result_desc,
    merchant_request_id=cb.get("MerchantRequestID"),
    items=items if isinstance(items, list) else [],
  )


def _amount(value: Any) -> Optional[Decimal]:
  if value is None or isinstance(value, bool):
    return None
  try:
    return Decimal(str(value))
  except InvalidOperation:
    return None


def handle_callback(
  session: Session,
  raw_body: bytes,
  source_ip: Optional[str],
  settings: Settings,
  today: Optional[date] = None,
) -> CallbackAck:
  try:
    return _process(session, raw_body, source_ip, settings, today or date.today())
  except Exception:
    # nothing half-applied survives; the payment is still pending and a
    # redelivery of this callback can complete it
    logger.exception("Callback processing error")
    session.rollback()
    return _ack(1, "Processing error")


def _process(session: Session, raw_body: bytes, source_ip: Optional[str], settings: Settings, today: date) -> CallbackAck:
  if settings.is_production and source_ip not in SAFARICOM_IPS:
    logger.error("Unauthorized callback IP: %s", source_ip)
    audit.log_security_event(
      session, audit.CALLBACK_BLOCKED, ip_address=source_ip, details={"reason": "Unauthorized IP"}
    )
    # non-zero on purpose: a real provider retry must not be swallowed
    return _ack(1, "Unauthorized")

  try:
    cb = parse_callback(raw_body)
  except CallbackMalformedError as exc:
    logger.warning("Rejected malformed callback from %s: %s", source_ip, exc.message)
    return _ack(1, "Invalid callback")

  payment = payment_store.get_by_checkout(session, cb.checkout_request_id)
  if not payment:
    logger.error("Payment not found for checkout: %s", cb.checkout_request_id)
    audit.log_security_event(
      session,
      audit.CALLBACK_UNMATCHED,
      ip_address=source_ip,
      details={"checkout_request_id": cb.checkout_request_id, "result_code": cb.result_code},
    )
    return _ack(0, "Accepted")

  if payment.status == PAYMENT_COMPLETED:
    return _ack(0, "Already processed")

  if payment.status in PAYMENT_TERMINAL:
    if cb.succeeded:
      # money moved for a payment we had given up on
      audit.log_security_event(
        session,
        audit.CALLBACK_AFTER_TERMINAL,
        member_id=payment.member_id,
        details={"payment_id": payment.id, "status": payment.status, "checkout_request_id": cb.checkout_request_id},
      )
    return _ack(0, "Already processed")

  if not cb.succeeded:
    payment_store.mark_failed(session, payment.id, cb.result_desc)
    return _ack(0, "Accepted")

  return _complete(session, payment, cb, today)


def _complete(session: Session, payment: Payment, cb: StkCallback, today: date) -> CallbackAck:
  """Payment completion and its membership effect commit as one transaction."""
  payment_id, member_id, plan_type, expected = payment.id, payment.member_id, payment.plan_type, payment.amount

  receipt = find_metadata_value(cb.items, "MpesaReceiptNumber")
  transaction_date = find_metadata_value(cb.items, "TransactionDate")
  received = _amount(find_metadata_value(cb.items, "Amount"))
  verified = received is not None and received == Decimal(expected)

  moved = payment_store.transition(
    session,
    payment_id,
    PAYMENT_COMPLETED,
    commit=False,
    receipt_number=str(receipt) if receipt is not None else None,
    transaction_date=str(transaction_date) if transaction_date is not None else None,
    confirmed_amount=int(received) if received is not None and received == received.to_integral_value() else None,
    amount_verified=verified,
    verified_at=datetime.utcnow(),
  )
  if not moved:
    # a concurrent duplicate got there first
    session.rollback()
    return _ack(0, "Already processed")

  if received is not None and not verified:
    # the payer was charged already; flag for review and honor it
    audit.log_security_event(
      session,
      audit.AMOUNT_MISMATCH,
      member_id=member_id,
      details={"expected": expected, "received": str(received), "payment_id": payment_id},
      commit=False,
    )

  if member_id:
    _apply_membership(session, payment_id, member_id, plan_type, receipt, today)
  else:
    logger.info("Walk-in payment %s completed, no membership created", payment_id)

  session.commit()
  return _ack(0, "Accepted")


def _apply_membership(
  session: Session,
  payment_id: int,
  member_id: str,
  plan_type: str,
  receipt: Any,
  today: date,
) -> None:
  # no commit in here; _complete owns the transaction
  queued = session.exec(
    select(Membership).where(Membership.next_plan_payment_id == payment_id)
  ).first()
  if queued:
    _mark_queued_paid(session, queued, payment_id, member_id, plan_type)
    return

  now = datetime.utcnow()
  carried: Dict[str, Any] = {}
  current = session.exec(
    select(Membership).where(Membership.member_id == member_id, Membership.status == MEMBERSHIP_ACTIVE)
  ).all()
  for m in current:
    # a queued plan survives on the new row
    if m.next_plan_type and not carried:
      carried = {
        "next_plan_type": m.next_plan_type,
        "next_plan_paid": m.next_plan_paid,
        "next_plan_payment_id": m.next_plan_payment_id,
      }
    m.status = MEMBERSHIP_EXPIRED
    m.next_plan_type = None
    m.next_plan_paid = False
    m.next_plan_payment_id = None
    m.updated_at = now
    session.add(m)
  superseded = [m.id for m in current]

  membership = Membership(
    member_id=member_id,
    plan_type=plan_type,
    start_date=today,
    expiry_date=expiry_for(today, plan_type),
    status=MEMBERSHIP_ACTIVE,
    payment_id=payment_id,
    **carried,
  )
  session.add(membership)
  session.flush()

  if superseded:
    audit.log_security_event(
      session,
      audit.MEMBERSHIP_SUPERSEDED,
      member_id=member_id,
      details={"payment_id": payment_id, "superseded": superseded, "membership_id": membership.id},
      commit=False,
    )
  audit.log_security_event(
    session,
    audit.MEMBERSHIP_ACTIVATED,
    member_id=member_id,
    details={"payment_id": payment_id, "plan_type": plan_type, "receipt": receipt},
    commit=False,
  )


def _mark_queued_paid(session: Session, queued: Membership, payment_id: int, member_id: str, plan_type: str) -> None:
  membership_id = queued.id
  if queued.next_plan_type != plan_type:
    logger.error(
      "Queued plan %s on membership %s does not match paid plan %s",
      queued.next_plan_type, membership_id, plan_type,
    )
  result = session.exec(
    update(Membership)
    .where(Membership.id == membership_id, Membership.next_plan_payment_id == payment_id)
    .values(next_plan_type=plan_type, next_plan_paid=True, updated_at=datetime.utcnow())
  )
  if result.rowcount == 1:
    audit.log_security_event(
      session,
      audit.QUEUED_PLAN_PAID,
      member_id=member_id,
      details={"payment_id": payment_id, "membership_id": membership_id, "plan_type": plan_type},
      commit=False,
    )
