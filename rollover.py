# rollover.py
"""
Daily membership rollover.

Two passes, each safe to re-run on the same day:
  1. activate paid queued plans on memberships that have run out
  2. expire whatever is past its expiry date and has nothing paid queued
"""
import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import or_, update
from sqlmodel import Session, select

from db import session_scope
from models import Membership, MEMBERSHIP_ACTIVE, MEMBERSHIP_EXPIRED
from plans import expiry_for

logger = logging.getLogger(__name__)


class RolloverResult(BaseModel):
  activated_count: int = 0
  expired_count: int = 0
  errors: List[str] = Field(default_factory=list)
  ran_for: date
  timestamp: datetime = Field(default_factory=datetime.utcnow)


def _activate(session: Session, membership: Membership) -> None:
  # the new period starts the day after the old one ended, however late we run
  start = membership.expiry_date + timedelta(days=1)
  membership.plan_type = membership.next_plan_type
  membership.start_date = start
  membership.expiry_date = expiry_for(start, membership.next_plan_type)
  membership.status = MEMBERSHIP_ACTIVE
  membership.next_plan_type = None
  membership.next_plan_paid = False
  membership.next_plan_payment_id = None
  membership.updated_at = datetime.utcnow()
  session.add(membership)
  session.commit()


def activate_queued(session: Session, today: date, result: RolloverResult) -> None:
  try:
    due = session.exec(
      select(Membership).where(
        Membership.expiry_date < today,
        Membership.next_plan_type.is_not(None),
        Membership.next_plan_paid == True,  # noqa: E712
      )
    ).all()
  except Exception as exc:
    logger.exception("[Cron] Fetch error")
    session.rollback()
    result.errors.append(f"Fetch error: {exc}")
    return

  for membership in due:
    member_id, plan = membership.member_id, membership.next_plan_type
    try:
      _activate(session, membership)
    except Exception as exc:
      session.rollback()
      msg = f"Failed to activate for {member_id}: {exc}"
      logger.error("[Cron] %s", msg)
      result.errors.append(msg)
      continue
    result.activated_count += 1
    logger.info("[Cron] Activated %s for member %s", plan, member_id)


def expire_lapsed(session: Session, today: date, result: RolloverResult) -> None:
  try:
    res = session.exec(
      update(Membership)
      .where(
        Membership.expiry_date < today,
        Membership.status == MEMBERSHIP_ACTIVE,
        or_(Membership.next_plan_type.is_(None), Membership.next_plan_paid == False),  # noqa: E712
      )
      # an unpaid queue dies with the membership; its payment stays pending
      .values(
        status=MEMBERSHIP_EXPIRED,
        next_plan_type=None,
        next_plan_paid=False,
        next_plan_payment_id=None,
        updated_at=datetime.utcnow(),
      )
    )
    session.commit()
  except Exception as exc:
    logger.exception("[Cron] Expire update error")
    session.rollback()
    result.errors.append(f"Expire update error: {exc}")
    return
  result.expired_count = res.rowcount


def run(session: Session, today: Optional[date] = None) -> RolloverResult:
  today = today or date.today()
  result = RolloverResult(ran_for=today)
  activate_queued(session, today, result)
  expire_lapsed(session, today, result)
  logger.info("[Cron] Completed: %s activated, %s expired", result.activated_count, result.expired_count)
  return result


def scheduled_run() -> None:
  """Entry point for the background scheduler; owns its own session."""
  with session_scope() as session:
    result = run(session)
  for err in result.errors:
    logger.error("[Cron] %s", err)
