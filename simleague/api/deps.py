from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from simleague.core.celery import notify_event_ended
from simleague.core.config import settings
from simleague.db.session import get_db
from simleague.services.admin import AdminAuthorizer
from simleague.services.admin_link import AdminLinkTokenService
from simleague.services.events import EventLifecycle
from simleague.services.identity import Identity, IdentityResolver, sources_from_headers
from simleague.services.leaderboard import LeaderboardRanker
from simleague.services.runs import RunLifecycle


@lru_cache
def get_admin_allowlist() -> frozenset[str]:
    # Parsed once per process; never mutated afterwards.
    return settings.admin_allowlist()


def get_identity_resolver() -> IdentityResolver:
    return IdentityResolver(
        secret=settings.AUTH_JWT_SECRET,
        audience=settings.AUTH_JWT_AUDIENCE or None,
        allow_legacy_header=settings.ALLOW_LEGACY_USER_HEADER,
    )


def get_event_end_notifier() -> Callable[[str], None]:
    return notify_event_ended


async def get_current_identity(
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> Identity:
    return resolver.resolve(sources_from_headers(authorization, x_user_id))


def get_admin_authorizer(
    db: AsyncSession = Depends(get_db),
    allowlist: frozenset[str] = Depends(get_admin_allowlist),
) -> AdminAuthorizer:
    return AdminAuthorizer(db, allowlist)


async def require_admin(
    identity: Identity = Depends(get_current_identity),
    authorizer: AdminAuthorizer = Depends(get_admin_authorizer),
) -> Identity:
    return await authorizer.require_admin(identity)


def get_event_lifecycle(
    db: AsyncSession = Depends(get_db),
    notifier: Callable[[str], None] = Depends(get_event_end_notifier),
) -> EventLifecycle:
    return EventLifecycle(db, on_event_ended=notifier)


def get_run_lifecycle(db: AsyncSession = Depends(get_db)) -> RunLifecycle:
    return RunLifecycle(db)


def get_leaderboard_ranker(db: AsyncSession = Depends(get_db)) -> LeaderboardRanker:
    return LeaderboardRanker(db)


def get_admin_link_service(db: AsyncSession = Depends(get_db)) -> AdminLinkTokenService:
    return AdminLinkTokenService(db)
