from fastapi import APIRouter, Depends, Query
import logging

from simleague.api.deps import get_event_lifecycle, get_leaderboard_ranker
from simleague.services.events import EventLifecycle, public_view
from simleague.services.leaderboard import LeaderboardRanker

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/public")
async def list_public_events(lifecycle: EventLifecycle = Depends(get_event_lifecycle)):
    """Events anonymous visitors may see: open (active/live/paused) and not ended."""
    events = await lifecycle.list_public()
    return {"events": [public_view(e) for e in events]}


@router.get("/{code}")
async def get_event(code: str, lifecycle: EventLifecycle = Depends(get_event_lifecycle)):
    event = await lifecycle.get_by_code(code)
    return {"event": public_view(event)}


@router.get("/{code}/leaderboard")
async def get_leaderboard(
    code: str,
    limit: int = Query(50, ge=1, description="Number of entries to return (server caps at 50)"),
    ranker: LeaderboardRanker = Depends(get_leaderboard_ranker),
):
    return await ranker.rank(code, limit)
