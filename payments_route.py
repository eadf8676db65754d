# payments_route.py
import ipaddress
from typing import Annotated, Any, Dict, List, Optional, Sequence

from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool

import payment_service
from auth import Principal, check_member_access, require_session
from callback_handler import CallbackAck, handle_callback
from deps import GatewayDep, SessionDep, SettingsDep
from errors import GatewayError
from models import PAYMENT_PENDING
from payment_service import InitiatePaymentRequest, InitiationResult, PaymentView
from plans import PLANS, Plan

router = APIRouter(prefix="/api", tags=["payments"])

PrincipalDep = Annotated[Principal, Depends(require_session)]


def _is_trusted(host: str, trusted: Sequence[str]) -> bool:
  for entry in trusted:
    if host == entry:
      return True
    try:
      if ipaddress.ip_address(host) in ipaddress.ip_network(entry, strict=False):
        return True
    except ValueError:
      continue
  return False


def client_ip(request: Request, trusted: Sequence[str] = ()) -> Optional[str]:
  """
  Address of the caller. X-Forwarded-For is only read when the direct peer
  is a trusted proxy, and then the right-most hop not added by one of our
  own proxies wins.
  """
  peer = request.client.host if request.client else None
  if not peer or not _is_trusted(peer, trusted):
    return peer
  hops = [h.strip() for h in request.headers.get("x-forwarded-for", "").split(",") if h.strip()]
  for hop in reversed(hops):
    if not _is_trusted(hop, trusted):
      return hop
  return hops[0] if hops else peer


@router.get("/plans", response_model=List[Plan])
def list_plans():
  return list(PLANS.values())


@router.post("/payments/initiate", response_model=InitiationResult)
async def initiate_payment(req: InitiatePaymentRequest, principal: PrincipalDep, session: SessionDep, gateway: GatewayDep):
  if not principal.is_staff:
    # members always pay for themselves
    req = req.model_copy(update={"member_id": principal.user_id, "is_walkin": False, "walkin_name": None})
  return await payment_service.initiate(session, gateway, req)


@router.get("/payments/status")
async def payment_status(
  principal: PrincipalDep,
  session: SessionDep,
  gateway: GatewayDep,
  payment_id: int = Query(gt=0),
  query: bool = False,
):
  payment = await run_in_threadpool(payment_service.get_status, session, payment_id)
  check_member_access(principal, payment.member_id)
  out: Dict[str, Any] = {"success": True, "payment": PaymentView.of(payment)}

  # read-only peek at the provider; the callback stays the only writer
  if query and gateway is not None and payment.status == PAYMENT_PENDING and payment.checkout_request_id:
    try:
      res = await gateway.query_status(payment.checkout_request_id)
      out["gateway"] = {"result_code": res.result_code, "result_desc": res.result_desc}
    except GatewayError as exc:
      out["gateway"] = {"error": exc.message}
  return out


@router.get("/payments/history")
def payment_history(principal: PrincipalDep, session: SessionDep, member_id: Optional[str] = None):
  target = member_id if principal.is_staff and member_id else principal.user_id
  return {"payments": payment_service.history(session, target)}


@router.post("/payments/callback", response_model=CallbackAck)
async def mpesa_callback(request: Request, session: SessionDep, settings: SettingsDep):
  raw = await request.body()
  return await run_in_threadpool(handle_callback, session, raw, client_ip(request, settings.trusted_proxies), settings)
