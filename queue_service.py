# queue_service.py
"""Pay now for the plan that starts when the current membership runs out."""
import logging
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel
from sqlmodel import Session, select
from starlette.concurrency import run_in_threadpool

import payment_store
from errors import AlreadyPaidError, GatewayError, NoActiveMembershipError, PlanAlreadyQueuedError
from models import Membership, MEMBERSHIP_ACTIVE, PAYMENT_COMPLETED
from mpesa import MpesaClient
from payment_service import GYM_NAME, normalize_phone, send_push
from plans import plan_price, validate_plan_type

logger = logging.getLogger(__name__)


class QueuePlanRequest(BaseModel):
  member_id: str
  phone: str
  plan_type: str


class QueueResult(BaseModel):
  payment_id: int
  amount: int
  checkout_request_id: Optional[str] = None
  current_plan: str
  next_plan: str
  starts_on: date
  message: str
  dev_mode: bool = False


class QueuedPlanInfo(BaseModel):
  current_plan: Optional[str] = None
  expiry_date: Optional[date] = None
  queued_plan: Optional[str] = None
  queued_plan_paid: bool = False


def active_membership(session: Session, member_id: str) -> Optional[Membership]:
  return session.exec(
    select(Membership)
    .where(Membership.member_id == member_id, Membership.status == MEMBERSHIP_ACTIVE)
    .order_by(Membership.expiry_date.desc())
  ).first()


def _clear_queue(session: Session, membership_id: int) -> None:
  membership = session.get(Membership, membership_id)
  if not membership:
    return
  membership.next_plan_type = None
  membership.next_plan_paid = False
  membership.next_plan_payment_id = None
  membership.updated_at = datetime.utcnow()
  session.add(membership)
  session.commit()


class _QueueIntent(BaseModel):
  membership_id: int
  payment_id: int
  current_plan: str
  starts_on: date


def _record_queue_intent(session: Session, member_id: str, phone: str, plan_type: str, amount: int, today: date) -> _QueueIntent:
  membership = active_membership(session, member_id)
  if not membership:
    raise NoActiveMembershipError()
  if membership.expiry_date < today:
    raise NoActiveMembershipError("Current membership has already expired")
  if membership.next_plan_paid:
    raise PlanAlreadyQueuedError(f"Already have {membership.next_plan_type} plan queued")

  # an unpaid earlier attempt is replaced
  if membership.next_plan_payment_id:
    payment_store.mark_cancelled(session, membership.next_plan_payment_id)

  payment = payment_store.create_pending(
    session,
    member_id=member_id,
    amount=amount,
    plan_type=plan_type,
    phone_number=phone,
    is_walkin=False,
  )

  membership.next_plan_type = plan_type
  membership.next_plan_paid = False
  membership.next_plan_payment_id = payment.id
  membership.updated_at = datetime.utcnow()
  session.add(membership)
  session.commit()
  session.refresh(membership)

  return _QueueIntent(
    membership_id=membership.id,
    payment_id=payment.id,
    current_plan=membership.plan_type,
    starts_on=membership.expiry_date,
  )


async def queue_next_plan(
  session: Session,
  gateway: Optional[MpesaClient],
  req: QueuePlanRequest,
  today: Optional[date] = None,
) -> QueueResult:
  phone = normalize_phone(req.phone)
  plan_type = validate_plan_type(req.plan_type)
  amount = plan_price(plan_type)

  intent = await run_in_threadpool(
    _record_queue_intent, session, req.member_id, phone, plan_type, amount, today or date.today()
  )

  if gateway is None:
    return QueueResult(
      payment_id=intent.payment_id,
      amount=amount,
      current_plan=intent.current_plan,
      next_plan=plan_type,
      starts_on=intent.starts_on,
      message="DEV MODE: M-Pesa not configured. Plan queued as pending.",
      dev_mode=True,
    )

  try:
    ack = await send_push(
      session,
      gateway,
      intent.payment_id,
      phone,
      amount,
      account_reference=f"F16UP-{intent.payment_id}",
      description=f"{GYM_NAME} {plan_type} - starts after current plan",
    )
  except GatewayError:
    logger.warning("Queueing %s for member %s failed at the gateway, clearing queue", plan_type, req.member_id)
    await run_in_threadpool(_clear_queue, session, intent.membership_id)
    raise

  return QueueResult(
    payment_id=intent.payment_id,
    amount=amount,
    checkout_request_id=ack.checkout_request_id,
    current_plan=intent.current_plan,
    next_plan=plan_type,
    starts_on=intent.starts_on,
    message=f"STK Push sent. {plan_type} plan will start after current plan expires.",
  )

def get_queued_plan(session: Session, member_id: str) -> QueuedPlanInfo:
  membership = active_membership(session, member_id)
  if not membership:
    return QueuedPlanInfo()
  return QueuedPlanInfo(
    current_plan=membership.plan_type,
    expiry_date=membership.expiry_date,
    queued_plan=membership.next_plan_type,
    queued_plan_paid=membership.next_plan_paid,
  )


def cancel_queued_plan(session: Session, member_id: str) -> None:
  membership = active_membership(session, member_id)
  if not membership:
    raise NoActiveMembershipError()
  if membership.next_plan_paid:
    raise AlreadyPaidError()

  membership_id = membership.id
  payment_id = membership.next_plan_payment_id
  if payment_id and not payment_store.mark_cancelled(session, payment_id):
    payment = payment_store.get(session, payment_id)
    if payment and payment.status == PAYMENT_COMPLETED:
      # completed between our read and the cancel
      raise AlreadyPaidError()

  _clear_queue(session, membership_id)
  logger.info("Queued plan cancelled for member %s (payment %s)", member_id, payment_id)
