from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, FiniteFloat
import logging

from simleague.api.deps import get_admin_authorizer, get_current_identity, get_run_lifecycle
from simleague.services.admin import AdminAuthorizer
from simleague.services.identity import Identity
from simleague.services.runs import RunLifecycle

logger = logging.getLogger(__name__)
router = APIRouter()


class CreateRunRequest(BaseModel):
    eventCode: str = Field(min_length=1)


class SubmitRunRequest(BaseModel):
    runId: str = Field(min_length=1)
    score: FiniteFloat
    pnl: Optional[FiniteFloat] = None
    sharpe: Optional[FiniteFloat] = None
    max_drawdown: Optional[FiniteFloat] = None
    win_rate: Optional[FiniteFloat] = None
    extra: dict[str, Any] = {}


@router.post("/create", status_code=201)
async def create_run(
    body: CreateRunRequest,
    identity: Identity = Depends(get_current_identity),
    runs: RunLifecycle = Depends(get_run_lifecycle),
):
    result = await runs.create_run(body.eventCode, identity.id, email=identity.email)
    return {"runId": result["run_id"], "simUrl": result["sim_url"]}


@router.post("/submit")
async def submit_run(
    body: SubmitRunRequest,
    identity: Identity = Depends(get_current_identity),
    runs: RunLifecycle = Depends(get_run_lifecycle),
):
    fields = body.model_dump(exclude={"runId"})
    return await runs.submit_result(body.runId, fields, user_id=identity.id)


@router.get("/history")
async def run_history(
    identity: Identity = Depends(get_current_identity),
    runs: RunLifecycle = Depends(get_run_lifecycle),
):
    return {"runs": await runs.get_history(identity.id)}


@router.get("/{run_id}")
async def run_detail(
    run_id: str,
    identity: Identity = Depends(get_current_identity),
    runs: RunLifecycle = Depends(get_run_lifecycle),
    authorizer: AdminAuthorizer = Depends(get_admin_authorizer),
):
    is_admin = await authorizer.is_admin(identity)
    return {"run": await runs.get_run_detail(run_id, viewer_id=identity.id, viewer_is_admin=is_admin)}
