import asyncio
import logging

from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure

from simleague.core.config import settings
from simleague.core.logging_config import setup_logging

# Ensure structured JSON logging for the worker process
setup_logging()

logger = logging.getLogger(__name__)

celery_app = Celery(
    "simleague",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_time_limit=120,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    task_routes={
        "simleague.core.celery.finalize_event_task": {"queue": "celery"},
    },
)


# ---- Celery task lifecycle structured logs ----

def _event_code_from(args, kwargs):
    if isinstance(kwargs, dict) and kwargs.get("event_code"):
        return kwargs.get("event_code")
    if isinstance(args, (list, tuple)) and len(args) > 0 and isinstance(args[0], str):
        return args[0]
    return None


@task_prerun.connect
def _on_task_start(task_id=None, task=None, args=None, kwargs=None, **extra_kwargs):
    logging.getLogger("celery.task").info(
        "task_started",
        extra={
            "task_name": getattr(task, "name", None),
            "task_id": task_id,
            "event_code": _event_code_from(args, kwargs),
        },
    )


@task_postrun.connect
def _on_task_success(task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **extra_kwargs):
    logging.getLogger("celery.task").info(
        "task_finished",
        extra={
            "task_name": getattr(task, "name", None),
            "task_id": task_id,
            "event_code": _event_code_from(args, kwargs),
            "state": state,
        },
    )


@task_failure.connect
def _on_task_failure(task_id=None, exception=None, args=None, kwargs=None, sender=None, **extra_kwargs):
    logging.getLogger("celery.task").error(
        f"task_failed: {str(exception)}",
        extra={
            "task_name": getattr(sender, "name", None),
            "task_id": task_id,
            "event_code": _event_code_from(args, kwargs),
        },
    )


async def _finalize(event_code: str) -> dict:
    from simleague.db.session import AsyncSessionLocal, engine
    from simleague.services.leaderboard import LeaderboardRanker

    # Each task runs on a fresh event loop; pooled connections must not outlive it.
    try:
        async with AsyncSessionLocal() as db:
            board = await LeaderboardRanker(db).rank(event_code)
    finally:
        await engine.dispose()
    entries = board["leaderboard"]
    winner = entries[0] if entries else None
    summary = {
        "event_code": event_code,
        "entries": len(entries),
        "winner_run_id": winner["run_id"] if winner else None,
        "winner_score": winner["score"] if winner else None,
    }
    logger.info("event_finalized", extra=summary)
    return summary


@celery_app.task(name="simleague.core.celery.finalize_event_task")
def finalize_event_task(event_code: str) -> dict:
    """Aggregate the final standings of an ended event."""
    return asyncio.run(_finalize(event_code))


def notify_event_ended(event_code: str) -> None:
    """Fire-and-forget the finalize task; broker trouble is logged, never raised."""
    try:
        finalize_event_task.apply_async(args=[event_code], retry=False)
        logger.info("event_finalize_enqueued", extra={"event_code": event_code})
    except Exception as e:
        logger.warning("event_finalize_enqueue_failed", extra={"event_code": event_code, "error": str(e)})
