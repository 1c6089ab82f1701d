import time
from typing import Any, Optional

import jwt
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from simleague.core.config import settings
from simleague.db.session import init_db
from simleague.services.events import EventLifecycle

ADMIN_EMAIL = "admin@example.com"


@pytest.fixture
async def engine(tmp_path):
    # File database so separate sessions really run on separate connections.
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'simleague-test.db'}")
    await init_db(bind=eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def ended_events() -> list[str]:
    return []


@pytest.fixture
def lifecycle(db, ended_events):
    return EventLifecycle(db, on_event_ended=ended_events.append, initial_state="active")


def event_payload(code: str = "SPRING", /, **overrides: Any) -> dict[str, Any]:
    payload = {
        "code": code,
        "name": f"{code.title()} Cup",
        "sim_type": "portfolio",
        "sim_url": "https://sim.example.com/play",
        "scenario_id": "scn-1",
        "duration_minutes": 30,
    }
    payload.update(overrides)
    return payload


async def make_event(db, code: str = "SPRING", state: str = "active", **overrides: Any):
    lifecycle = EventLifecycle(db, initial_state="active")
    event = await lifecycle.create(event_payload(code, **overrides))
    if state != "active":
        event.state = state
        await db.commit()
        await db.refresh(event)
    return event


def mint_token(sub: str, email: Optional[str] = None, expires_in: int = 3600, secret: Optional[str] = None) -> str:
    claims: dict[str, Any] = {"sub": sub, "exp": int(time.time()) + expires_in}
    if email:
        claims["email"] = email
    return jwt.encode(claims, secret or settings.AUTH_JWT_SECRET, algorithm="HS256")


def auth_headers(sub: str, email: Optional[str] = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {mint_token(sub, email)}"}
