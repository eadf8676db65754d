# auth.py
# Sessions are issued by the OTP auth service in front of this API; it forwards
# the resolved identity as headers. This module only reads them.
from typing import Annotated, Literal, Optional

from fastapi import Depends, Header
from pydantic import BaseModel

from errors import ForbiddenError, UnauthorizedError


class Principal(BaseModel):
  user_id: str
  user_type: Literal["member", "staff"]

  @property
  def is_staff(self) -> bool:
    return self.user_type == "staff"


def current_principal(
  x_user_id: Annotated[Optional[str], Header()] = None,
  x_user_type: Annotated[Optional[str], Header()] = None,
) -> Optional[Principal]:
  if not x_user_id or x_user_type not in ("member", "staff"):
    return None
  return Principal(user_id=x_user_id, user_type=x_user_type)


def require_session(principal: Annotated[Optional[Principal], Depends(current_principal)]) -> Principal:
  if principal is None:
    raise UnauthorizedError()
  return principal


def require_staff(principal: Annotated[Principal, Depends(require_session)]) -> Principal:
  if not principal.is_staff:
    raise ForbiddenError("Staff only")
  return principal


def check_member_access(principal: Principal, member_id: Optional[str]) -> None:
  # members act only on themselves; staff on anyone
  if principal.is_staff:
    return
  if member_id and member_id != principal.user_id:
    raise ForbiddenError()
