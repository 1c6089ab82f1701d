import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from simleague.core.errors import Forbidden, store_errors
from simleague.models import Profile
from simleague.services.identity import Identity

logger = logging.getLogger(__name__)


class AdminAuthorizer:
    """Decide whether an identity may perform administrative actions.

    An identity is an admin when its profile carries ``is_admin`` or when its
    email (from the verified token, else from the profile) is on the
    allowlist. The allowlist is read-only configuration shared by reference.
    """

    def __init__(self, db: AsyncSession, allowlist: frozenset[str]):
        self.db = db
        self.allowlist = allowlist

    async def _load_profile(self, user_id: str) -> Optional[Profile]:
        with store_errors(logger, "load_profile", user_id=user_id):
            result = await self.db.execute(select(Profile).where(Profile.id == user_id))
            return result.scalar_one_or_none()

    async def is_admin(self, identity: Identity) -> bool:
        profile = await self._load_profile(identity.id)
        if profile is not None and profile.is_admin:
            return True

        email = identity.email or (profile.email if profile is not None else None)
        if not email:
            return False
        return email.strip().lower() in self.allowlist

    async def require_admin(self, identity: Identity) -> Identity:
        if not await self.is_admin(identity):
            logger.info("admin_access_denied", extra={"user_id": identity.id})
            raise Forbidden("Admin access required")
        return identity
