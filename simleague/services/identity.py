"""Resolve the caller's identity from request credentials.

Two sources exist: a bearer JWT issued by the identity provider (verified
locally with the shared HS256 secret) and, in legacy compatibility mode, a
bare ``x-user-id`` header. A verified credential always wins; a legacy header
that disagrees with it is an error rather than a fallback.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import jwt

from simleague.core.errors import IdentityMismatch, InvalidCredential, Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedCredential:
    token: str


@dataclass(frozen=True)
class LegacyHeader:
    raw_id: str


IdentitySource = Union[VerifiedCredential, LegacyHeader]


@dataclass(frozen=True)
class Identity:
    id: str
    email: Optional[str] = None
    verified: bool = True


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidCredential("Invalid Authorization header")
    return token.strip()


def sources_from_headers(authorization: Optional[str], x_user_id: Optional[str]) -> list[IdentitySource]:
    sources: list[IdentitySource] = []
    token = parse_bearer(authorization)
    if token:
        sources.append(VerifiedCredential(token))
    if x_user_id and x_user_id.strip():
        sources.append(LegacyHeader(x_user_id.strip()))
    return sources


class IdentityResolver:
    def __init__(self, secret: str, audience: Optional[str] = None, allow_legacy_header: bool = False):
        self.secret = secret
        self.audience = audience or None
        self.allow_legacy_header = allow_legacy_header

    def _verify(self, token: str) -> Identity:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=["HS256"],
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidCredential("JWT expired")
        except jwt.InvalidTokenError as e:
            logger.debug("identity_token_rejected", extra={"error": str(e)})
            raise InvalidCredential("Invalid access token")

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidCredential("Invalid access token")
        email = claims.get("email")
        return Identity(id=subject, email=email if isinstance(email, str) else None, verified=True)

    def resolve(self, sources: Sequence[IdentitySource]) -> Identity:
        verified = next((s for s in sources if isinstance(s, VerifiedCredential)), None)
        legacy = next((s for s in sources if isinstance(s, LegacyHeader)), None)

        if verified is not None:
            identity = self._verify(verified.token)
            if legacy is not None and legacy.raw_id != identity.id:
                logger.warning(
                    "identity_mismatch",
                    extra={"user_id": identity.id},
                )
                raise IdentityMismatch("x-user-id does not match token subject")
            return identity

        if legacy is not None and self.allow_legacy_header:
            return Identity(id=legacy.raw_id, email=None, verified=False)

        if legacy is not None:
            raise Unauthenticated("Missing access token (legacy x-user-id header is disabled)")
        raise Unauthenticated("Missing access token")
