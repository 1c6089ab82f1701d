"""Event lifecycle: creation, listing and the start/pause/resume/end state machine."""
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from simleague.core.config import settings
from simleague.core.errors import Conflict, InvalidTransition, NotFound, ValidationFailed, store_errors
from simleague.core.metrics import EVENTS_CREATED_TOTAL, EVENT_TRANSITIONS_TOTAL
from simleague.db.base import utcnow
from simleague.models import Event, EventState

logger = logging.getLogger(__name__)

PUBLIC_STATES = (EventState.ACTIVE, EventState.LIVE, EventState.PAUSED)

# Conditional writes lost to a concurrent transition are re-evaluated this many times.
MAX_TRANSITION_ATTEMPTS = 3


class EventAction(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    END = "end"


# None means the action is rejected from that state; mapping to the current
# state itself is an idempotent no-op.
TRANSITIONS: dict[EventState, dict[EventAction, Optional[EventState]]] = {
    EventState.DRAFT: {
        EventAction.START: EventState.LIVE,
        EventAction.PAUSE: None,
        EventAction.RESUME: EventState.LIVE,
        EventAction.END: EventState.ENDED,
    },
    EventState.ACTIVE: {
        EventAction.START: EventState.LIVE,
        EventAction.PAUSE: None,
        EventAction.RESUME: EventState.LIVE,
        EventAction.END: EventState.ENDED,
    },
    EventState.LIVE: {
        EventAction.START: EventState.LIVE,
        EventAction.PAUSE: EventState.PAUSED,
        EventAction.RESUME: EventState.LIVE,
        EventAction.END: EventState.ENDED,
    },
    EventState.PAUSED: {
        EventAction.START: EventState.LIVE,
        EventAction.PAUSE: EventState.PAUSED,
        EventAction.RESUME: EventState.LIVE,
        EventAction.END: EventState.ENDED,
    },
    EventState.ENDED: {
        EventAction.START: None,
        EventAction.PAUSE: None,
        EventAction.RESUME: None,
        EventAction.END: EventState.ENDED,
    },
}


def next_state(current: EventState, action: EventAction) -> EventState:
    target = TRANSITIONS[current][action]
    if target is None:
        raise InvalidTransition(f"Cannot {action.value} an event that is {current.value}")
    return target


def parse_action(value: str) -> EventAction:
    try:
        return EventAction((value or "").strip().lower())
    except ValueError:
        raise ValidationFailed(f"Unknown event action: {value!r}")


def parse_state(value: str) -> EventState:
    try:
        return EventState.parse(value)
    except ValueError:
        raise ValidationFailed("Invalid event state filter")


class CreateEventInput(BaseModel):
    code: str = Field(min_length=1, pattern=r"^[A-Z0-9_-]+$")
    name: str = Field(min_length=1)
    sim_type: str = Field(default="portfolio", pattern=r"^portfolio$")
    sim_url: str = Field(min_length=1, pattern=r"^https?://\S+$")
    scenario_id: str = Field(min_length=1)
    duration_minutes: Optional[int] = Field(default=None, gt=0)


@dataclass
class TransitionOutcome:
    event: Event
    changed: bool


def public_view(event: Event) -> dict[str, Any]:
    return {
        "code": event.code,
        "name": event.name,
        "scenario_id": event.scenario_id,
        "sim_type": event.sim_type,
        "duration_minutes": event.duration_minutes,
        "state": event.state,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


def admin_view(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "code": event.code,
        "name": event.name,
        "sim_type": event.sim_type,
        "sim_url": event.sim_url,
        "scenario_id": event.scenario_id,
        "duration_minutes": event.duration_minutes,
        "state": event.state,
        "started_at": event.started_at.isoformat() if event.started_at else None,
        "ended_at": event.ended_at.isoformat() if event.ended_at else None,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


async def get_event_by_code(db: AsyncSession, code: str) -> Event:
    with store_errors(logger, "load_event", event_code=code):
        result = await db.execute(
            select(Event).where(Event.code == code).execution_options(populate_existing=True)
        )
        event = result.scalar_one_or_none()
    if event is None:
        raise NotFound("Event not found")
    return event


class EventLifecycle:
    def __init__(
        self,
        db: AsyncSession,
        on_event_ended: Optional[Callable[[str], None]] = None,
        initial_state: Optional[str] = None,
    ):
        self.db = db
        self.on_event_ended = on_event_ended
        self.initial_state = EventState.parse(initial_state or settings.EVENT_INITIAL_STATE)
        if self.initial_state not in (EventState.ACTIVE, EventState.DRAFT):
            raise ValueError(f"Events can only start as active or draft, not {self.initial_state.value}")

    async def create(self, payload: dict[str, Any]) -> Event:
        try:
            data = CreateEventInput(**payload)
        except ValidationError as e:
            raise ValidationFailed("Invalid event payload", details={"errors": e.errors(include_url=False, include_context=False)})

        with store_errors(logger, "create_event", event_code=data.code):
            existing = await self.db.execute(select(Event.id).where(Event.code == data.code))
            if existing.scalar_one_or_none() is not None:
                raise Conflict("Event code already exists")

            event = Event(
                id=str(uuid.uuid4()),
                code=data.code,
                name=data.name,
                sim_type=data.sim_type,
                sim_url=data.sim_url,
                scenario_id=data.scenario_id,
                duration_minutes=data.duration_minutes or settings.DEFAULT_EVENT_DURATION_MINUTES,
                state=self.initial_state.value,
                started_at=None,
                ended_at=None,
            )
            self.db.add(event)
            try:
                await self.db.commit()
            except IntegrityError:
                # A concurrent create won the unique index on code.
                await self.db.rollback()
                raise Conflict("Event code already exists")
            await self.db.refresh(event)

        EVENTS_CREATED_TOTAL.inc()
        logger.info(
            "event_created",
            extra={
                "event_code": event.code,
                "scenario_id": event.scenario_id,
                "duration_minutes": event.duration_minutes,
                "state": event.state,
            },
        )
        return event

    async def list_public(self) -> list[Event]:
        with store_errors(logger, "list_public_events"):
            result = await self.db.execute(
                select(Event)
                .where(Event.state.in_([name for s in PUBLIC_STATES for name in s.stored_names()]))
                .where(Event.ended_at.is_(None))
                .order_by(Event.created_at.desc(), Event.code.asc())
                .execution_options(populate_existing=True)
            )
            return list(result.scalars().all())

    async def list_all(self, state: Optional[str] = None) -> list[Event]:
        query = (
            select(Event)
            .order_by(Event.created_at.desc(), Event.code.asc())
            .execution_options(populate_existing=True)
        )
        if state:
            query = query.where(Event.state.in_(parse_state(state).stored_names()))
        with store_errors(logger, "list_events"):
            result = await self.db.execute(query)
            return list(result.scalars().all())

    async def get_by_code(self, code: str) -> Event:
        return await get_event_by_code(self.db, code)

    async def transition(self, code: str, action: str) -> TransitionOutcome:
        act = parse_action(action)

        for attempt in range(MAX_TRANSITION_ATTEMPTS):
            event = await get_event_by_code(self.db, code)
            current = EventState.parse(event.state)
            try:
                target = next_state(current, act)
            except InvalidTransition:
                EVENT_TRANSITIONS_TOTAL.labels(action=act.value, outcome="rejected").inc()
                logger.info(
                    "event_transition_rejected",
                    extra={"event_code": code, "action": act.value, "state": current.value},
                )
                raise

            if target == current:
                EVENT_TRANSITIONS_TOTAL.labels(action=act.value, outcome="noop").inc()
                return TransitionOutcome(event=event, changed=False)

            now = utcnow()
            values: dict[str, Any] = {"state": target.value}
            # Timestamps are written once; COALESCE keeps the first value under races.
            if target == EventState.LIVE:
                values["started_at"] = func.coalesce(Event.started_at, now)
            if target == EventState.ENDED:
                values["ended_at"] = func.coalesce(Event.ended_at, now)

            with store_errors(logger, "transition_event", event_code=code, action=act.value):
                result = await self.db.execute(
                    update(Event)
                    .where(Event.id == event.id)
                    .where(Event.state == event.state)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await self.db.rollback()
                    logger.info(
                        "event_transition_raced",
                        extra={"event_code": code, "action": act.value, "attempt": attempt + 1},
                    )
                    continue
                await self.db.commit()
                await self.db.refresh(event)

            EVENT_TRANSITIONS_TOTAL.labels(action=act.value, outcome="changed").inc()
            logger.info(
                "event_transitioned",
                extra={
                    "event_code": code,
                    "action": act.value,
                    "from_state": current.value,
                    "to_state": target.value,
                },
            )
            if target == EventState.ENDED:
                self._notify_ended(event.code)
            return TransitionOutcome(event=event, changed=True)

        raise Conflict("Event was modified concurrently, please retry")

    def _notify_ended(self, code: str) -> None:
        if self.on_event_ended is None:
            return
        try:
            self.on_event_ended(code)
        except Exception as e:
            logger.warning("event_end_notification_failed", extra={"event_code": code, "error": str(e)})
