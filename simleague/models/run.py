from sqlalchemy import Column, String, Float, DateTime, ForeignKey, JSON

from simleague.db.base import Base, utcnow


class Run(Base):
    __tablename__ = "runs"

    id = Column(String, primary_key=True, index=True)
    event_id = Column(String, ForeignKey("events.id"), index=True, nullable=False)
    event_code = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)  # null while the run is open


class RunResult(Base):
    __tablename__ = "run_results"

    # Primary key on run_id: the database rejects a second result for a run.
    run_id = Column(String, ForeignKey("runs.id"), primary_key=True)
    score = Column(Float, nullable=False)
    pnl = Column(Float, nullable=True)
    sharpe = Column(Float, nullable=True)
    max_drawdown = Column(Float, nullable=True)
    win_rate = Column(Float, nullable=True)
    extra = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
