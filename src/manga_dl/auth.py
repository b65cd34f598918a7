"""Requester identity.

Token verification is delegated to an external identity provider: the bearer
token is presented to the provider's userinfo endpoint and a successful JSON
response carrying ``sub`` is treated as a verified identity. Anything else
(no header, no provider configured, provider rejects the token) leaves the
request anonymous, keyed by its client address.
"""

import logging
from dataclasses import dataclass
from typing import Self

import httpx
from starlette.requests import Request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Anonymous:
    """A requester without a verified token."""

    client_address: str


@dataclass(frozen=True)
class Authenticated:
    """A requester with a verified token; identity_id keys the account row."""

    identity_id: str


Identity = Anonymous | Authenticated


@dataclass
class VerifiedToken:
    """Claims returned by the identity provider."""

    subject: str
    email: str | None = None
    name: str | None = None


class AuthError(Exception):
    """Token could not be verified."""


def normalize_address(forwarded: str) -> str:
    """Return the first address of a comma-separated forwarded-for list."""
    return forwarded.split(",")[0].strip()


def client_address(request: Request) -> str:
    """Extract the client address, respecting X-Forwarded-For."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and (address := normalize_address(forwarded)):
        return address
    if request.client:
        return request.client.host
    return "unknown"


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    return None


class TokenVerifier:
    """Verifies bearer tokens against an OpenID Connect style userinfo endpoint."""

    def __init__(self, http: httpx.AsyncClient, userinfo_url: str):
        self._http = http
        self._userinfo_url = userinfo_url

    @classmethod
    def create(cls, userinfo_url: str, timeout: float = 10.0) -> Self:
        """Create a verifier with a new HTTP client."""
        http = httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        return cls(http, userinfo_url)

    async def verify(self, token: str) -> VerifiedToken:
        try:
            response = await self._http.get(
                self._userinfo_url, headers={"Authorization": f"Bearer {token}"}
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AuthError(str(exc) or type(exc).__name__) from exc

        subject = data.get("sub") if isinstance(data, dict) else None
        if not subject:
            raise AuthError("Identity provider response has no subject")

        return VerifiedToken(
            subject=str(subject),
            email=data.get("email"),
            name=data.get("name"),
        )

    async def close(self):
        """Close the HTTP client."""
        await self._http.aclose()


async def resolve_identity(request: Request, verifier, accounts) -> Identity:
    """Resolve the requester, creating the account row on first sight.

    ``verifier`` may be None (every request is anonymous). ``accounts`` must
    provide ``upsert_account``.
    """
    token = bearer_token(request)
    if token and verifier is not None:
        try:
            claims = await verifier.verify(token)
            await accounts.upsert_account(claims.subject, claims.email, claims.name)
            return Authenticated(claims.subject)
        except AuthError as exc:
            logger.debug("Token rejected, treating request as guest: %s", exc)
        except Exception:
            logger.exception("Identity lookup failed, treating request as guest")

    return Anonymous(client_address(request))
