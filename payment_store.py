# payment_store.py
"""
Persistence and status transitions for Payment rows.

Every move out of `pending` goes through `transition`, which is a single
conditional UPDATE guarded by `status = 'pending'`. The affected row count
tells the caller whether it won; a payment in a terminal state is never
touched again.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from errors import InvalidTransitionError
from models import Payment, PAYMENT_CANCELLED, PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_TERMINAL

logger = logging.getLogger(__name__)


def create_pending(
  session: Session,
  *,
  member_id: Optional[str],
  amount: int,
  plan_type: str,
  phone_number: str,
  is_walkin: bool = False,
  walkin_name: Optional[str] = None,
) -> Payment:
  if amount <= 0:
    raise ValueError("payment amount must be positive")
  payment = Payment(
    member_id=member_id,
    amount=amount,
    plan_type=plan_type,
    phone_number=phone_number,
    status=PAYMENT_PENDING,
    is_walkin=is_walkin,
    walkin_name=walkin_name,
  )
  session.add(payment)
  session.commit()
  session.refresh(payment)
  logger.info("payment %s created pending (%s, %s KES)", payment.id, plan_type, amount)
  return payment


def get(session: Session, payment_id: int) -> Optional[Payment]:
  return session.get(Payment, payment_id)


def get_by_checkout(session: Session, checkout_request_id: str) -> Optional[Payment]:
  return session.exec(
    select(Payment).where(Payment.checkout_request_id == checkout_request_id)
  ).first()


def history(session: Session, member_id: str) -> List[Payment]:
  return list(session.exec(
    select(Payment)
    .where(Payment.member_id == member_id)
    .order_by(Payment.created_at.desc(), Payment.id.desc())
  ).all())


def attach_checkout(
  session: Session,
  payment_id: int,
  checkout_request_id: str,
  merchant_request_id: Optional[str] = None,
) -> bool:
  """Record the provider's checkout handle. Only a pending payment without one accepts it."""
  result = session.exec(
    update(Payment)
    .where(
      Payment.id == payment_id,
      Payment.status == PAYMENT_PENDING,
      Payment.checkout_request_id.is_(None),
    )
    .values(
      checkout_request_id=checkout_request_id,
      merchant_request_id=merchant_request_id,
      updated_at=datetime.utcnow(),
    )
  )
  session.commit()
  return result.rowcount == 1


def transition(session: Session, payment_id: int, new_status: str, commit: bool = True, **values) -> bool:
  """
  Atomically move a pending payment to `new_status`.

  Returns False when the payment is missing or no longer pending.
  Raises InvalidTransitionError for a target that is not terminal.
  With commit=False the UPDATE joins the caller's open transaction.
  """
  if new_status not in PAYMENT_TERMINAL:
    raise InvalidTransitionError(f"Cannot move a payment to '{new_status}'")
  result = session.exec(
    update(Payment)
    .where(Payment.id == payment_id, Payment.status == PAYMENT_PENDING)
    .values(status=new_status, updated_at=datetime.utcnow(), **values)
  )
  if commit:
    session.commit()
  moved = result.rowcount == 1
  if moved:
    logger.info("payment %s -> %s", payment_id, new_status)
  else:
    logger.info("payment %s not pending, %s skipped", payment_id, new_status)
  return moved


def mark_failed(session: Session, payment_id: int, reason: Optional[str]) -> bool:
  return transition(session, payment_id, PAYMENT_FAILED, failure_reason=(reason or "Payment failed")[:255])


def mark_cancelled(session: Session, payment_id: int) -> bool:
  return transition(session, payment_id, PAYMENT_CANCELLED)
