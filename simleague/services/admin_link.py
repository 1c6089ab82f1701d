"""Short-lived signed tokens granting simulator-side admin access for one event.

The token is a compact HS256 JWS (``header.payload.signature``) carrying
``eventCode``, ``adminUserId`` and ``exp``. It is handed to the external
simulator inside the admin URL and checked back through ``verify``; nothing
is persisted, so expiry is the only revocation.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import jwt
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from simleague.core.config import settings
from simleague.core.errors import Conflict, TokenEventMismatch, TokenExpired, TokenInvalid
from simleague.core.metrics import ADMIN_LINKS_ISSUED_TOTAL, ADMIN_LINK_VERIFICATIONS_TOTAL
from simleague.models import EventState
from simleague.services.events import get_event_by_code

logger = logging.getLogger(__name__)

ADMIN_LINK_STATES = frozenset({EventState.ACTIVE, EventState.LIVE})


class AdminTokenPayload(BaseModel):
    eventCode: str = Field(min_length=1)
    adminUserId: str = Field(min_length=1)
    exp: int = Field(gt=0, strict=True)


def build_admin_url(sim_url: str, event_code: str, token: str) -> str:
    base_admin_url = f"{sim_url.rstrip('/')}/admin.html"
    separator = "&" if "?" in base_admin_url else "?"
    return f"{base_admin_url}{separator}{urlencode({'event_code': event_code, 'admin_token': token})}"


class AdminLinkTokenService:
    def __init__(
        self,
        db: Optional[AsyncSession] = None,
        secret: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.secret = secret or settings.ADMIN_JWT_SECRET
        self.ttl_seconds = ttl_seconds or settings.ADMIN_LINK_TTL_SECONDS
        self.clock = clock

    def sign(self, event_code: str, admin_user_id: str) -> tuple[str, int]:
        exp = int(self.clock()) + self.ttl_seconds
        payload = {"eventCode": event_code, "adminUserId": admin_user_id, "exp": exp}
        return jwt.encode(payload, self.secret, algorithm="HS256", headers={"typ": "JWT"}), exp

    async def issue(self, event_code: str, admin_user_id: str) -> dict[str, Any]:
        if self.db is None:
            raise RuntimeError("AdminLinkTokenService.issue needs a database session")
        event = await get_event_by_code(self.db, event_code)
        state = EventState.parse(event.state)
        if state not in ADMIN_LINK_STATES:
            raise Conflict(f"Admin link is only available while event is active/live (current: {state.value})")

        token, exp = self.sign(event.code, admin_user_id)
        ADMIN_LINKS_ISSUED_TOTAL.inc()
        logger.info("admin_link_issued", extra={"event_code": event.code, "user_id": admin_user_id})
        return {
            "adminUrl": build_admin_url(event.sim_url, event.code, token),
            "token": token,
            "expiresAt": datetime.fromtimestamp(exp, tz=timezone.utc).isoformat(),
        }

    def verify(self, event_code: str, token: str) -> dict[str, str]:
        try:
            payload = self._decode(token)
        except TokenExpired:
            ADMIN_LINK_VERIFICATIONS_TOTAL.labels(outcome="expired").inc()
            raise
        except TokenInvalid:
            ADMIN_LINK_VERIFICATIONS_TOTAL.labels(outcome="invalid").inc()
            raise

        if payload.eventCode != event_code:
            ADMIN_LINK_VERIFICATIONS_TOTAL.labels(outcome="event_mismatch").inc()
            logger.warning("admin_token_event_mismatch", extra={"event_code": event_code})
            raise TokenEventMismatch("Admin token does not match event code")

        ADMIN_LINK_VERIFICATIONS_TOTAL.labels(outcome="ok").inc()
        return {"eventCode": payload.eventCode, "adminUserId": payload.adminUserId}

    def _decode(self, token: str) -> AdminTokenPayload:
        if not token or token.count(".") != 2:
            raise TokenInvalid("Invalid admin token")
        try:
            # Signature is checked here with a constant-time compare; expiry is
            # checked below against the injectable clock.
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=["HS256"],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except jwt.InvalidTokenError:
            raise TokenInvalid("Invalid admin token")

        try:
            payload = AdminTokenPayload(**claims)
        except ValidationError:
            raise TokenInvalid("Invalid admin token")

        if payload.exp <= int(self.clock()):
            raise TokenExpired("Admin token expired")
        return payload
