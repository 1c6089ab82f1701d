"""Run lifecycle: joining an event, exactly-once result submission, run reads."""
import logging
import uuid
from typing import Any, Optional

from pydantic import BaseModel, FiniteFloat, ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from simleague.core.config import settings
from simleague.core.errors import Conflict, Forbidden, NotFound, ValidationFailed, store_errors
from simleague.core.metrics import RESULTS_SUBMITTED_TOTAL, RESULT_SUBMISSION_REJECTED_TOTAL, RUNS_CREATED_TOTAL
from simleague.db.base import utcnow
from simleague.models import Event, EventState, Profile, Run, RunResult
from simleague.services.events import get_event_by_code

logger = logging.getLogger(__name__)

# Runs may be created while the event is open for joining.
JOINABLE_STATES = frozenset({EventState.ACTIVE, EventState.LIVE})
# Results are accepted once the event has gone live, including after it ended.
RESULT_ACCEPTING_STATES = frozenset({EventState.LIVE, EventState.ENDED})


class ResultFields(BaseModel):
    score: FiniteFloat
    pnl: Optional[FiniteFloat] = None
    sharpe: Optional[FiniteFloat] = None
    max_drawdown: Optional[FiniteFloat] = None
    win_rate: Optional[FiniteFloat] = None
    extra: dict[str, Any] = {}


def build_sim_url(sim_url: str, run_id: str) -> str:
    separator = "&" if "?" in sim_url else "?"
    return f"{sim_url}{separator}run_id={run_id}"


def result_view(result: Optional[RunResult]) -> Optional[dict[str, Any]]:
    if result is None:
        return None
    return {
        "score": result.score,
        "pnl": result.pnl,
        "sharpe": result.sharpe,
        "max_drawdown": result.max_drawdown,
        "win_rate": result.win_rate,
        "extra": result.extra or {},
        "created_at": result.created_at.isoformat() if result.created_at else None,
    }


def run_view(run: Run, event: Optional[Event], result: Optional[RunResult]) -> dict[str, Any]:
    return {
        "run_id": run.id,
        "user_id": run.user_id,
        "event_code": run.event_code,
        "event_name": event.name if event is not None else None,
        "event_state": event.state if event is not None else None,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "result": result_view(result),
    }


class RunLifecycle:
    def __init__(self, db: AsyncSession, one_open_run_per_user: Optional[bool] = None):
        self.db = db
        self.one_open_run_per_user = (
            settings.ONE_OPEN_RUN_PER_USER if one_open_run_per_user is None else one_open_run_per_user
        )

    async def _load_run(self, run_id: str) -> Run:
        with store_errors(logger, "load_run", run_id=run_id):
            result = await self.db.execute(
                select(Run).where(Run.id == run_id).execution_options(populate_existing=True)
            )
            run = result.scalar_one_or_none()
        if run is None:
            raise NotFound("Run not found")
        return run

    async def _remember_email(self, user_id: str, email: str) -> None:
        """Record the participant's email on first sight, in its own transaction.

        A concurrent first run by the same user may insert the profile first;
        that insert wins and this one is dropped.
        """
        with store_errors(logger, "remember_email", user_id=user_id):
            profile = await self.db.get(Profile, user_id)
            if profile is None:
                self.db.add(Profile(id=user_id, email=email))
            elif not profile.email:
                profile.email = email
            else:
                return
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                logger.info("profile_insert_raced", extra={"user_id": user_id})

    async def create_run(self, event_code: str, user_id: str, email: Optional[str] = None) -> dict[str, str]:
        if not user_id:
            raise ValidationFailed("user id is required")
        event = await get_event_by_code(self.db, event_code)
        state = EventState.parse(event.state)
        if state not in JOINABLE_STATES:
            raise Conflict(f"Event is not open for new runs (current: {state.value})")

        with store_errors(logger, "create_run", event_code=event_code, user_id=user_id):
            if self.one_open_run_per_user:
                open_run = await self.db.execute(
                    select(Run.id)
                    .where(Run.event_id == event.id)
                    .where(Run.user_id == user_id)
                    .where(Run.finished_at.is_(None))
                    .limit(1)
                )
                if open_run.scalar_one_or_none() is not None:
                    raise Conflict("You already have an open run in this event")

            run_id = str(uuid.uuid4())
            code = event.code
            sim_url = build_sim_url(event.sim_url, run_id)
            self.db.add(Run(id=run_id, event_id=event.id, event_code=code, user_id=user_id))
            await self.db.commit()

        # Instances may be expired by a rollback below; only locals are used from here on.
        if email:
            await self._remember_email(user_id, email)

        RUNS_CREATED_TOTAL.inc()
        logger.info("run_created", extra={"event_code": code, "run_id": run_id, "user_id": user_id})
        return {"run_id": run_id, "sim_url": sim_url}

    async def submit_result(self, run_id: str, fields: dict[str, Any], user_id: Optional[str] = None) -> dict[str, Any]:
        try:
            data = ResultFields(**fields)
        except ValidationError as e:
            raise ValidationFailed(
                "Invalid result payload",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )

        run = await self._load_run(run_id)
        if user_id is not None and run.user_id != user_id:
            RESULT_SUBMISSION_REJECTED_TOTAL.labels(reason="forbidden").inc()
            raise Forbidden("Run belongs to another user")

        with store_errors(logger, "load_run_event", run_id=run_id):
            event = await self.db.get(Event, run.event_id, populate_existing=True)
        if event is None:
            raise NotFound("Event for run not found")

        state = EventState.parse(event.state)
        if state not in RESULT_ACCEPTING_STATES:
            RESULT_SUBMISSION_REJECTED_TOTAL.labels(reason="event_state").inc()
            raise Conflict(f"Event is not accepting results (current: {state.value})")

        if run.finished_at is not None:
            RESULT_SUBMISSION_REJECTED_TOTAL.labels(reason="duplicate").inc()
            raise Conflict("Run results already submitted")

        # A rollback expires every loaded instance; read what the logs need now.
        event_code = event.code
        owner_id = run.user_id

        # Result insert and run close share one transaction; the run_id primary
        # key turns a racing second submission into an IntegrityError.
        with store_errors(logger, "submit_result", run_id=run_id, event_code=event_code):
            try:
                self.db.add(
                    RunResult(
                        run_id=run_id,
                        score=data.score,
                        pnl=data.pnl,
                        sharpe=data.sharpe,
                        max_drawdown=data.max_drawdown,
                        win_rate=data.win_rate,
                        extra=data.extra,
                    )
                )
                await self.db.flush()
                closed = await self.db.execute(
                    update(Run)
                    .where(Run.id == run_id)
                    .where(Run.finished_at.is_(None))
                    .values(finished_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if closed.rowcount != 1:
                    await self.db.rollback()
                    RESULT_SUBMISSION_REJECTED_TOTAL.labels(reason="duplicate").inc()
                    raise Conflict("Run results already submitted")
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                RESULT_SUBMISSION_REJECTED_TOTAL.labels(reason="duplicate").inc()
                logger.info("duplicate_result_rejected", extra={"run_id": run_id, "event_code": event_code})
                raise Conflict("Run results already submitted")

        RESULTS_SUBMITTED_TOTAL.inc()
        logger.info(
            "result_submitted",
            extra={"run_id": run_id, "event_code": event_code, "user_id": owner_id, "score": data.score},
        )
        return {"success": True, "run_id": run_id}

    async def get_run_detail(self, run_id: str, viewer_id: Optional[str] = None, viewer_is_admin: bool = False) -> dict[str, Any]:
        with store_errors(logger, "get_run_detail", run_id=run_id):
            row = (
                await self.db.execute(
                    select(Run, Event, RunResult)
                    .join(Event, Event.id == Run.event_id, isouter=True)
                    .join(RunResult, RunResult.run_id == Run.id, isouter=True)
                    .where(Run.id == run_id)
                    .execution_options(populate_existing=True)
                )
            ).first()
        if row is None:
            raise NotFound("Run not found")
        run, event, result = row
        if viewer_id is not None and run.user_id != viewer_id and not viewer_is_admin:
            raise Forbidden("Run belongs to another user")
        return run_view(run, event, result)

    async def get_history(self, user_id: str) -> list[dict[str, Any]]:
        with store_errors(logger, "get_history", user_id=user_id):
            rows = (
                await self.db.execute(
                    select(Run, Event, RunResult)
                    .join(Event, Event.id == Run.event_id, isouter=True)
                    .join(RunResult, RunResult.run_id == Run.id, isouter=True)
                    .where(Run.user_id == user_id)
                    .order_by(Run.created_at.desc(), Run.id.asc())
                    .execution_options(populate_existing=True)
                )
            ).all()
        return [run_view(run, event, result) for run, event, result in rows]
