"""Dashboard session tokens and the authenticated-user lookup collaborator.

Session tokens have the form ``bsdev.<payload>.<signature>`` where
*payload* is URL-safe base64 of a JSON object (``email``, ``iat``, ``exp``)
and *signature* is the hex HMAC-SHA256 of the JSON text under
``API_SESSION_SECRET``.  Login itself is out of scope: whatever issues the
token only has to call :meth:`SessionTokenManager.issue`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Protocol

from billing_engine.state.repository import UserRepository
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "bsdev."

OWNER = "OWNER"
ACCOUNTANT = "ACCOUNTANT"


@dataclass(frozen=True)
class SessionUser:
    """An authenticated dashboard user and the organizations they belong to."""

    id: str
    email: str
    name: str | None = None
    memberships: dict[str, str] = field(default_factory=dict)

    def role_in(self, org_id: str) -> str | None:
        return self.memberships.get(org_id)

    def default_org(self) -> str | None:
        """The organization used when a request names none (lowest id first)."""
        return min(self.memberships) if self.memberships else None


class SessionTokenManager:
    """Issue and verify HMAC-signed session tokens.

    Parameters
    ----------
    secret:
        Signing key.
    ttl_seconds:
        Lifetime of newly issued tokens.
    """

    def __init__(self, secret: str, ttl_seconds: int = 86400) -> None:
        if not secret:
            raise ValueError("Session token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._ttl = ttl_seconds

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, email: str, *, now: float | None = None) -> str:
        issued = time.time() if now is None else now
        payload_json = json.dumps({"email": email.strip().lower(), "iat": issued, "exp": issued + self._ttl})
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}{encoded}.{self._sign(payload_json)}"

    def verify(self, token: str, *, now: float | None = None) -> str:
        """Return the e-mail a valid token was issued for.

        Raises
        ------
        PermissionError
            If the token is malformed, carries a bad signature, or has expired.
        """
        if not token.startswith(TOKEN_PREFIX):
            raise PermissionError("Unrecognized token format")
        try:
            encoded, signature = token[len(TOKEN_PREFIX) :].rsplit(".", 1)
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
            claims = json.loads(payload_json)
        except (ValueError, binascii.Error, UnicodeDecodeError) as exc:
            raise PermissionError("Malformed token") from exc

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("Invalid token signature")
        if not isinstance(claims, dict) or not isinstance(claims.get("email"), str):
            raise PermissionError("Malformed token claims")
        current = time.time() if now is None else now
        if float(claims.get("exp", 0)) < current:
            raise PermissionError("Token has expired")
        return claims["email"]


class SessionUserLookup(Protocol):
    """Resolve a bearer token to the user behind it, or ``None``."""

    async def lookup(self, token: str | None) -> SessionUser | None: ...


class DatabaseUserLookup:
    """Default :class:`SessionUserLookup`: verify the token, then load user and memberships."""

    def __init__(self, session: AsyncSession, tokens: SessionTokenManager) -> None:
        self._users = UserRepository(session)
        self._tokens = tokens

    async def lookup(self, token: str | None) -> SessionUser | None:
        if not token:
            return None
        try:
            email = self._tokens.verify(token)
        except PermissionError as exc:
            logger.info("Rejected session token: %s", exc)
            return None

        user = await self._users.get_by_email(email)
        if user is None:
            logger.info("Session token for unknown user %s", email)
            return None
        return SessionUser(
            id=user.id,
            email=user.email,
            name=user.name,
            memberships=await self._users.memberships(user.id),
        )
