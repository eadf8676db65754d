# deps.py
from typing import Annotated, Optional

from fastapi import Depends
from sqlmodel import Session

from config import Settings, get_settings
from db import get_session
from mpesa import MpesaClient

SessionDep = Annotated[Session, Depends(get_session)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


def get_gateway(settings: SettingsDep) -> Optional[MpesaClient]:
  # None means developer mode: payments are recorded but no push is sent
  if not settings.mpesa_configured:
    return None
  return MpesaClient(settings)


GatewayDep = Annotated[Optional[MpesaClient], Depends(get_gateway)]
