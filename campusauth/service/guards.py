"""Request authorization checks layered on top of token validity.

Guards only see a :class:`TokenValidator` (or, for ownership, the stateless
codec), never the full auth engine. Compose them with :class:`GuardChain`::

    chain = GuardChain(TokenGuard(auth), RoleGuard(Role.ADMIN))
    principal = await chain.check(GuardContext(authorization=header))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

from campusauth.logging import get_logger
from campusauth.service.errors import AuthenticationError, ForbiddenError
from campusauth.service.ports import AuthContext, TokenValidator
from campusauth.service.tokens import TokenCodec, TokenError, TokenType
from campusauth.storage.models import Role

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


@dataclass
class GuardContext:
    authorization: Optional[str] = None
    path_params: Mapping[str, Any] = field(default_factory=dict)
    principal: Optional[AuthContext] = None

    @classmethod
    def from_request(cls, request: Any) -> "GuardContext":
        return cls(
            authorization=request.headers.get("authorization"),
            path_params=dict(request.path_params),
        )

    @property
    def bearer_token(self) -> Optional[str]:
        return extract_bearer(self.authorization)


class Guard(Protocol):
    async def check(self, ctx: GuardContext) -> None: ...


class TokenGuard:
    """Requires a live access token and attaches its principal."""

    def __init__(self, validator: TokenValidator) -> None:
        self.validator = validator

    async def check(self, ctx: GuardContext) -> None:
        token = ctx.bearer_token
        if token is None:
            raise AuthenticationError("missing bearer token")
        principal = await self.validator.resolve_token(token)
        if principal is None:
            raise AuthenticationError("invalid or expired token")
        ctx.principal = principal


class RoleGuard:
    """Allows principals whose role is in ``roles``; no roles means no restriction."""

    def __init__(self, *roles: Role) -> None:
        self.roles = frozenset(Role.parse(role) for role in roles)

    async def check(self, ctx: GuardContext) -> None:
        if not self.roles:
            return
        if ctx.principal is None:
            raise AuthenticationError("authentication required")
        if ctx.principal.role not in self.roles:
            logger.info(
                "role_denied",
                user_id=ctx.principal.user_id,
                role=ctx.principal.role.value,
                required=sorted(role.value for role in self.roles),
            )
            raise ForbiddenError("insufficient role")


class OwnershipGuard:
    """Admins, or the user whose id is in the ``param`` path parameter.

    Verifies the bearer signature itself so it can run without a
    :class:`TokenGuard` in front of it.
    """

    def __init__(self, codec: TokenCodec, param: str = "id") -> None:
        self.codec = codec
        self.param = param

    async def check(self, ctx: GuardContext) -> None:
        token = ctx.bearer_token
        if token is None:
            raise AuthenticationError("missing bearer token")
        try:
            claims = self.codec.verify(token)
        except TokenError as exc:
            raise AuthenticationError("invalid token") from exc
        if claims.token_type is not TokenType.ACCESS:
            raise AuthenticationError("invalid token")

        if claims.role is Role.ADMIN:
            return
        target = ctx.path_params.get(self.param)
        if target is None or str(target) != claims.sub:
            logger.info("ownership_denied", user_id=claims.sub, target=target)
            raise ForbiddenError("not the resource owner")


class GuardChain:
    """Runs guards in order; the first failure stops the chain."""

    def __init__(self, *guards: Guard) -> None:
        self.guards = guards

    async def check(self, ctx: GuardContext) -> Optional[AuthContext]:
        for guard in self.guards:
            await guard.check(ctx)
        return ctx.principal
