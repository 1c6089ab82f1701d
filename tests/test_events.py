import pytest

from simleague.core.errors import Conflict, InvalidTransition, NotFound, ValidationFailed
from simleague.models import EventState
from simleague.services.events import EventLifecycle, next_state, EventAction

from conftest import event_payload, make_event


@pytest.mark.parametrize(
    "current,action,expected",
    [
        (EventState.ACTIVE, EventAction.START, EventState.LIVE),
        (EventState.DRAFT, EventAction.START, EventState.LIVE),
        (EventState.LIVE, EventAction.PAUSE, EventState.PAUSED),
        (EventState.PAUSED, EventAction.RESUME, EventState.LIVE),
        (EventState.PAUSED, EventAction.START, EventState.LIVE),
        (EventState.LIVE, EventAction.END, EventState.ENDED),
        (EventState.ENDED, EventAction.END, EventState.ENDED),
    ],
)
def test_transition_table(current, action, expected):
    assert next_state(current, action) == expected


@pytest.mark.parametrize(
    "current,action",
    [
        (EventState.ENDED, EventAction.START),
        (EventState.ENDED, EventAction.RESUME),
        (EventState.ENDED, EventAction.PAUSE),
        (EventState.ACTIVE, EventAction.PAUSE),
        (EventState.DRAFT, EventAction.PAUSE),
    ],
)
def test_rejected_transitions(current, action):
    with pytest.raises(InvalidTransition):
        next_state(current, action)


def test_running_is_legacy_alias_for_live():
    assert EventState.parse("running") == EventState.LIVE
    assert EventState.parse(" LIVE ") == EventState.LIVE
    assert set(EventState.LIVE.stored_names()) == {"live", "running"}
    with pytest.raises(ValueError):
        EventState.parse("archived")


async def test_create_defaults_and_duplicate_code(lifecycle):
    event = await lifecycle.create(event_payload("SPRING", duration_minutes=None))
    assert event.state == "active"
    assert event.duration_minutes == 60
    assert event.started_at is None and event.ended_at is None

    with pytest.raises(Conflict):
        await lifecycle.create(event_payload("SPRING"))


async def test_create_initial_state_draft(db):
    event = await EventLifecycle(db, initial_state="draft").create(event_payload("DRAFTY"))
    assert event.state == "draft"


@pytest.mark.parametrize(
    "overrides",
    [
        {"code": "lower"},
        {"sim_type": "futures"},
        {"sim_url": "ftp://sim.example.com"},
        {"duration_minutes": 0},
        {"name": ""},
    ],
)
async def test_create_rejects_bad_payload(lifecycle, overrides):
    with pytest.raises(ValidationFailed):
        await lifecycle.create(event_payload("BAD", **overrides))


async def test_start_sets_started_at_once(lifecycle):
    await lifecycle.create(event_payload("SPRING"))

    outcome = await lifecycle.transition("SPRING", "start")
    assert outcome.changed is True
    assert outcome.event.state == "live"
    first_start = outcome.event.started_at
    assert first_start is not None

    await lifecycle.transition("SPRING", "pause")
    resumed = await lifecycle.transition("SPRING", "resume")
    assert resumed.event.state == "live"
    assert resumed.event.started_at == first_start


async def test_end_is_idempotent_and_notifies_once(lifecycle, ended_events):
    await lifecycle.create(event_payload("SPRING"))
    await lifecycle.transition("SPRING", "start")

    ended = await lifecycle.transition("SPRING", "end")
    assert ended.changed is True
    ended_at = ended.event.ended_at
    assert ended_at is not None

    again = await lifecycle.transition("SPRING", "end")
    assert again.changed is False
    assert again.event.state == "ended"
    assert again.event.ended_at == ended_at
    assert ended_events == ["SPRING"]


async def test_ended_rejects_restart(lifecycle):
    await lifecycle.create(event_payload("SPRING"))
    await lifecycle.transition("SPRING", "end")
    with pytest.raises(InvalidTransition):
        await lifecycle.transition("SPRING", "start")
    event = await lifecycle.get_by_code("SPRING")
    assert event.state == "ended"


async def test_pause_from_active_rejected(lifecycle):
    await lifecycle.create(event_payload("SPRING"))
    with pytest.raises(InvalidTransition):
        await lifecycle.transition("SPRING", "pause")


async def test_transition_unknown_event_and_action(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.transition("UNKNOWN", "start")
    await lifecycle.create(event_payload("SPRING"))
    with pytest.raises(ValidationFailed):
        await lifecycle.transition("SPRING", "explode")


async def test_notifier_failure_does_not_fail_transition(db):
    def boom(code):
        raise RuntimeError("broker down")

    lifecycle = EventLifecycle(db, on_event_ended=boom, initial_state="active")
    await lifecycle.create(event_payload("SPRING"))
    outcome = await lifecycle.transition("SPRING", "end")
    assert outcome.event.state == "ended"


async def test_legacy_running_row_accepts_pause(db, lifecycle):
    await make_event(db, "OLD", state="running")
    outcome = await lifecycle.transition("OLD", "pause")
    assert outcome.event.state == "paused"


async def test_list_public_filters_states(db, lifecycle):
    await make_event(db, "ACT", state="active")
    await make_event(db, "LIV", state="live")
    await make_event(db, "PAU", state="paused")
    await make_event(db, "RUN", state="running")
    await make_event(db, "DRA", state="draft")
    await make_event(db, "END", state="ended")

    codes = {e.code for e in await lifecycle.list_public()}
    assert codes == {"ACT", "LIV", "PAU", "RUN"}

    live = {e.code for e in await lifecycle.list_all("live")}
    assert live == {"LIV", "RUN"}
    assert len(await lifecycle.list_all()) == 6
    with pytest.raises(ValidationFailed):
        await lifecycle.list_all("bogus")


async def test_concurrent_transitions_settle_on_one_state(session_factory):
    import asyncio

    async with session_factory() as setup:
        await make_event(setup, "RACE")

    async def act(action):
        async with session_factory() as session:
            try:
                return await EventLifecycle(session, initial_state="active").transition("RACE", action)
            except (InvalidTransition, Conflict) as e:
                return e

    await asyncio.gather(act("start"), act("end"))

    async with session_factory() as check:
        event = await EventLifecycle(check).get_by_code("RACE")
        assert event.state in ("live", "ended")
        if event.state == "ended":
            assert event.ended_at is not None
