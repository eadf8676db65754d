# memberships_route.py
from typing import Annotated

from fastapi import APIRouter, Depends, Query

import queue_service
from auth import Principal, check_member_access, require_session, require_staff
from deps import GatewayDep, SessionDep
from queue_service import QueuedPlanInfo, QueuePlanRequest, QueueResult

router = APIRouter(prefix="/api/memberships", tags=["memberships"])


@router.post("/queue-plan", response_model=QueueResult)
async def queue_plan(
  req: QueuePlanRequest,
  staff: Annotated[Principal, Depends(require_staff)],
  session: SessionDep,
  gateway: GatewayDep,
):
  return await queue_service.queue_next_plan(session, gateway, req)


@router.get("/queue-plan", response_model=QueuedPlanInfo)
def queued_plan(
  principal: Annotated[Principal, Depends(require_session)],
  session: SessionDep,
  member_id: str = Query(min_length=1),
):
  check_member_access(principal, member_id)
  return queue_service.get_queued_plan(session, member_id)


@router.delete("/queue-plan")
def cancel_queued_plan(
  staff: Annotated[Principal, Depends(require_staff)],
  session: SessionDep,
  member_id: str = Query(min_length=1),
):
  queue_service.cancel_queued_plan(session, member_id)
  return {"success": True, "message": "Queued plan cancelled"}
