from simleague.models.event import Event, EventState
from simleague.models.run import Run, RunResult
from simleague.models.profile import Profile

__all__ = ["Event", "EventState", "Run", "RunResult", "Profile"]
