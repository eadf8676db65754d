# audit.py
import logging
from typing import Any, Dict, Optional

from sqlmodel import Session

from models import SecurityLog

logger = logging.getLogger(__name__)

CALLBACK_BLOCKED = "MPESA_CALLBACK_BLOCKED"
CALLBACK_UNMATCHED = "MPESA_CALLBACK_UNMATCHED"
CALLBACK_AFTER_TERMINAL = "MPESA_CALLBACK_AFTER_TERMINAL"
AMOUNT_MISMATCH = "MPESA_AMOUNT_MISMATCH"
MEMBERSHIP_ACTIVATED = "MEMBERSHIP_ACTIVATED"
MEMBERSHIP_SUPERSEDED = "MEMBERSHIP_SUPERSEDED"
QUEUED_PLAN_PAID = "QUEUED_PLAN_PAID"


def log_security_event(
  session: Session,
  event_type: str,
  member_id: Optional[str] = None,
  ip_address: Optional[str] = None,
  details: Optional[Dict[str, Any]] = None,
  commit: bool = True,
) -> SecurityLog:
  """Persist an audit row and mirror it to the application log.

  With commit=False the row rides on the caller's transaction and is only
  written if that transaction commits.
  """
  entry = SecurityLog(
    event_type=event_type,
    member_id=member_id,
    ip_address=ip_address,
    details=details or {},
  )
  session.add(entry)
  if commit:
    session.commit()
  logger.warning("security event %s member=%s ip=%s details=%s", event_type, member_id, ip_address, details)
  return entry
