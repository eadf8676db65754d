# cron_route.py
import hmac
from typing import Annotated, Optional

from fastapi import APIRouter, Header

import rollover
from deps import SessionDep, SettingsDep
from errors import UnauthorizedError
from rollover import RolloverResult

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _check_secret(settings, authorization: Optional[str]) -> None:
  secret = settings.cron_secret
  if not secret:
    if settings.is_production:
      raise UnauthorizedError("CRON_SECRET is not configured")
    return
  if not hmac.compare_digest(authorization or "", f"Bearer {secret}"):
    raise UnauthorizedError()


@router.api_route("/activate-plans", methods=["GET", "POST"], response_model=RolloverResult)
def activate_plans(
  session: SessionDep,
  settings: SettingsDep,
  authorization: Annotated[Optional[str], Header()] = None,
):
  _check_secret(settings, authorization)
  return rollover.run(session)
