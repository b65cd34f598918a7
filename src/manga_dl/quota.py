"""Download quota classification.

Every download request falls into exactly one bucket: premium (unlimited),
registered (daily limit) or guest (limit per client address). Classification
only reads the usage ledger; usage is recorded later, once the PDF has been
fully delivered.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from .auth import Anonymous, Authenticated, Identity
from .ledger import UsageLedger

logger = logging.getLogger(__name__)

UNLIMITED = "∞"


class Bucket(str, Enum):
    """Quota accounting bucket."""

    PREMIUM = "premium"
    REGISTERED = "registered"
    GUEST = "guest"


@dataclass(frozen=True)
class QuotaPolicy:
    """Numeric limits; premium accounts are never limited."""

    registered_daily_limit: int = 50
    guest_limit: int = 10


@dataclass(frozen=True)
class Allowed:
    """Request admitted; carries what the commit step needs later."""

    bucket: Bucket
    identity_id: str | None = None  # registered only
    client_address: str | None = None  # guest only


@dataclass(frozen=True)
class Denied:
    """Request rejected before any work starts."""

    reason: str
    status_code: int


Admission = Allowed | Denied


async def classify(identity: Identity, ledger: UsageLedger, policy: QuotaPolicy) -> Admission:
    """Decide the bucket for a request and whether it may proceed."""
    if isinstance(identity, Authenticated):
        account = await ledger.account(identity.identity_id)
        if account is None:
            return Denied("Account not found", 404)
        if account.is_premium:
            return Allowed(Bucket.PREMIUM)
        if account.daily_download_count >= policy.registered_daily_limit:
            return Denied(
                f"Daily limit ({policy.registered_daily_limit}) reached. Upgrade to Premium!",
                403,
            )
        return Allowed(Bucket.REGISTERED, identity_id=account.identity_id)

    if isinstance(identity, Anonymous):
        usage = await ledger.guest_usage(identity.client_address)
        if usage >= policy.guest_limit:
            return Denied(f"Guest limit ({policy.guest_limit}) reached. Please log in!", 403)
        return Allowed(Bucket.GUEST, client_address=identity.client_address)

    raise TypeError(f"Unknown identity type: {type(identity).__name__}")


@dataclass
class UsageStats:
    """Usage summary for the /stats endpoint."""

    type: str  # "guest", "user" or "premium"
    usage: int
    limit: int | str


async def usage_stats(identity: Identity, ledger: UsageLedger, policy: QuotaPolicy) -> UsageStats:
    """Report the caller's bucket and counter.

    Authenticated callers without an account row are reported as a fresh guest.
    """
    if isinstance(identity, Authenticated):
        account = await ledger.account(identity.identity_id)
        if account is None:
            return UsageStats("guest", 0, policy.guest_limit)
        if account.is_premium:
            return UsageStats("premium", account.daily_download_count, UNLIMITED)
        return UsageStats("user", account.daily_download_count, policy.registered_daily_limit)

    usage = await ledger.guest_usage(identity.client_address)
    return UsageStats("guest", usage, policy.guest_limit)
