from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
import logging

from simleague.api.deps import (
    get_admin_authorizer,
    get_admin_link_service,
    get_current_identity,
    get_event_lifecycle,
    require_admin,
)
from simleague.services.admin import AdminAuthorizer
from simleague.services.admin_link import AdminLinkTokenService
from simleague.services.events import EventLifecycle, admin_view
from simleague.services.identity import Identity

logger = logging.getLogger(__name__)
router = APIRouter()


class CreateEventRequest(BaseModel):
    code: str
    name: str
    sim_type: str = "portfolio"
    sim_url: str
    scenario_id: str
    duration_minutes: Optional[int] = None


class TransitionRequest(BaseModel):
    action: str = Field(min_length=1)


class SimAdminLinkRequest(BaseModel):
    eventCode: str = Field(min_length=1)


@router.get("/me")
async def whoami(
    identity: Identity = Depends(get_current_identity),
    authorizer: AdminAuthorizer = Depends(get_admin_authorizer),
):
    return {
        "id": identity.id,
        "email": identity.email,
        "is_admin": await authorizer.is_admin(identity),
    }


@router.get("/events")
async def list_events(
    state: Optional[str] = Query(None, description="Filter by state (draft|active|live|paused|ended)"),
    admin: Identity = Depends(require_admin),
    lifecycle: EventLifecycle = Depends(get_event_lifecycle),
):
    events = await lifecycle.list_all(state)
    return {"events": [admin_view(e) for e in events]}


@router.post("/events", status_code=201)
async def create_event(
    body: CreateEventRequest,
    admin: Identity = Depends(require_admin),
    lifecycle: EventLifecycle = Depends(get_event_lifecycle),
):
    event = await lifecycle.create(body.model_dump())
    logger.info("admin_event_created", extra={"event_code": event.code, "user_id": admin.id})
    return {"ok": True, "event": admin_view(event)}


async def _transition(code: str, action: str, admin: Identity, lifecycle: EventLifecycle) -> dict:
    outcome = await lifecycle.transition(code, action)
    logger.info(
        "admin_event_transition",
        extra={"event_code": code, "action": action, "user_id": admin.id, "changed": outcome.changed},
    )
    return {"ok": True, "changed": outcome.changed, "event": admin_view(outcome.event)}


@router.post("/events/{code}/state")
async def transition_event(
    code: str,
    body: TransitionRequest,
    admin: Identity = Depends(require_admin),
    lifecycle: EventLifecycle = Depends(get_event_lifecycle),
):
    return await _transition(code, body.action, admin, lifecycle)


@router.post("/events/{code}/{action}")
async def transition_event_action(
    code: str,
    action: str,
    admin: Identity = Depends(require_admin),
    lifecycle: EventLifecycle = Depends(get_event_lifecycle),
):
    return await _transition(code, action, admin, lifecycle)


@router.post("/sim-admin-link")
async def create_sim_admin_link(
    body: SimAdminLinkRequest,
    admin: Identity = Depends(require_admin),
    links: AdminLinkTokenService = Depends(get_admin_link_service),
):
    return await links.issue(body.eventCode, admin.id)


@router.get("/events/{code}/sim-admin-link")
async def get_sim_admin_link(
    code: str,
    admin: Identity = Depends(require_admin),
    links: AdminLinkTokenService = Depends(get_admin_link_service),
):
    return await links.issue(code, admin.id)


@router.get("/validate-token")
async def validate_token(
    event_code: str = Query(..., min_length=1),
    admin_token: str = Query(..., min_length=1),
    links: AdminLinkTokenService = Depends(get_admin_link_service),
):
    """Called by the simulator's admin page to check the token it was handed."""
    result = links.verify(event_code, admin_token)
    return {"ok": True, **result}
