from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime

from simleague.db.base import Base, utcnow

# Names written by the older 3-state deployment (active/running/ended).
_LEGACY_ALIASES = {"running": "live"}


class EventState(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    LIVE = "live"
    PAUSED = "paused"
    ENDED = "ended"

    @classmethod
    def parse(cls, value: str) -> "EventState":
        """Parse a state name, folding the legacy ``running`` into ``live``."""
        normalized = (value or "").strip().lower()
        return cls(_LEGACY_ALIASES.get(normalized, normalized))

    def stored_names(self) -> list[str]:
        """Every value a row in this state may carry in the state column."""
        return [self.value] + [alias for alias, target in _LEGACY_ALIASES.items() if target == self.value]


class Event(Base):
    __tablename__ = "events"

    id = Column(String, primary_key=True, index=True)
    code = Column(String, unique=True, index=True, nullable=False)  # immutable after creation
    name = Column(String, nullable=False)
    sim_type = Column(String, nullable=False, default="portfolio")
    sim_url = Column(String, nullable=False)
    scenario_id = Column(String, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    state = Column(String, nullable=False, index=True, default=EventState.ACTIVE.value)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
