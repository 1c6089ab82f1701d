import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from simleague.core.config import settings
from simleague.core.errors import ValidationFailed, store_errors
from simleague.core.metrics import LEADERBOARD_QUERIES_TOTAL, LEADERBOARD_QUERY_DURATION_SECONDS, DurationTimer
from simleague.models import Profile, Run, RunResult
from simleague.services.events import get_event_by_code

logger = logging.getLogger(__name__)

ANONYMOUS_LABEL = "anonymous"


def mask_email(email: Optional[str]) -> Optional[str]:
    """Mask an email for public display: ``alice@example.com`` -> ``al***@example.com``.

    Keeps the first two characters of the local part (only the first one when
    the local part is two characters or shorter) and the full domain.
    """
    if not email or "@" not in email:
        return None
    local, _, domain = email.strip().rpartition("@")
    if not local or not domain:
        return None
    keep = max(1, min(2, len(local) - 1))
    return f"{local[:keep]}***@{domain}"


def participant_label(profile: Optional[Profile]) -> str:
    if profile is None:
        return ANONYMOUS_LABEL
    if profile.display_name and profile.display_name.strip():
        return profile.display_name.strip()
    return mask_email(profile.email) or ANONYMOUS_LABEL


def _sort_key(entry: dict[str, Any]):
    # score desc, pnl desc (missing pnl last), earliest submission, run id
    pnl = entry["pnl"]
    return (
        -entry["score"],
        0 if pnl is not None else 1,
        -(pnl if pnl is not None else 0.0),
        entry["created_at"] or datetime.min,
        entry["run_id"],
    )


class LeaderboardRanker:
    def __init__(self, db: AsyncSession, max_limit: Optional[int] = None):
        self.db = db
        self.max_limit = max_limit or settings.LEADERBOARD_MAX_LIMIT

    async def rank(self, event_code: str, limit: Optional[int] = None) -> dict[str, Any]:
        if limit is None:
            limit = self.max_limit
        if limit < 1:
            raise ValidationFailed("limit must be a positive integer")
        safe_limit = min(limit, self.max_limit)

        with DurationTimer() as timer:
            event = await get_event_by_code(self.db, event_code)
            with store_errors(logger, "rank_leaderboard", event_code=event_code):
                rows = (
                    await self.db.execute(
                        select(RunResult, Run.user_id)
                        .join(Run, Run.id == RunResult.run_id)
                        .where(Run.event_id == event.id)
                    )
                ).all()

            entries = [
                {
                    "run_id": result.run_id,
                    "user_id": user_id,
                    "score": float(result.score),
                    "pnl": result.pnl,
                    "sharpe": result.sharpe,
                    "max_drawdown": result.max_drawdown,
                    "win_rate": result.win_rate,
                    "created_at": result.created_at,
                }
                for result, user_id in rows
            ]
            entries.sort(key=_sort_key)
            pruned = entries[:safe_limit]

            # One batched lookup for the labels of everyone on the board.
            user_ids = sorted({e["user_id"] for e in pruned if e["user_id"]})
            profiles: dict[str, Profile] = {}
            if user_ids:
                with store_errors(logger, "load_leaderboard_profiles", event_code=event_code):
                    found = await self.db.execute(select(Profile).where(Profile.id.in_(user_ids)))
                    profiles = {p.id: p for p in found.scalars().all()}

        LEADERBOARD_QUERIES_TOTAL.inc()
        LEADERBOARD_QUERY_DURATION_SECONDS.observe(timer.seconds)
        logger.info("leaderboard_query", extra={"event_code": event.code, "entries": len(pruned)})

        leaderboard = []
        for i, e in enumerate(pruned):
            leaderboard.append({
                "rank": i + 1,
                "run_id": e["run_id"],
                "user_id": e["user_id"],
                "label": participant_label(profiles.get(e["user_id"])),
                "score": e["score"],
                "pnl": e["pnl"],
                "sharpe": e["sharpe"],
                "max_drawdown": e["max_drawdown"],
                "win_rate": e["win_rate"],
                "created_at": e["created_at"].isoformat() if e["created_at"] else None,
            })
        return {"event_code": event.code, "leaderboard": leaderboard}
