"""Usage ledger: per-identity download counts.

Registered accounts are counted durably in the accounts table. Guests are
counted by network address in a pluggable counter store. The default
``MemoryGuestCounter`` lives in process memory only: counts are lost on
restart and are not shared between server instances. Deployments running more
than one instance should use ``DatabaseGuestCounter`` instead.
"""

import logging
from collections import Counter
from typing import Protocol

from .db import Account

logger = logging.getLogger(__name__)


class GuestCounter(Protocol):
    """Counter store for anonymous clients, keyed by normalized address."""

    async def get(self, address: str) -> int: ...

    async def increment(self, address: str) -> int: ...


class AccountStore(Protocol):
    async def get_account(self, identity_id: str) -> Account | None: ...

    async def increment_daily_downloads(self, identity_id: str) -> None: ...


class MemoryGuestCounter:
    """Process-local guest counter.

    Increments happen without an intervening await, so within one event loop
    each update is atomic and concurrent downloads from the same address
    cannot lose counts.
    """

    def __init__(self):
        self._counts: Counter[str] = Counter()

    async def get(self, address: str) -> int:
        return self._counts[address]

    async def increment(self, address: str) -> int:
        self._counts[address] += 1
        return self._counts[address]

    def __len__(self) -> int:
        return len(self._counts)


class DatabaseGuestCounter:
    """Guest counter shared through the ``guest_usage`` table."""

    def __init__(self, db):
        self._db = db

    async def get(self, address: str) -> int:
        return await self._db.get_guest_usage(address)

    async def increment(self, address: str) -> int:
        return await self._db.increment_guest_usage(address)


class UsageLedger:
    """Reads and records download usage for both kinds of requester."""

    def __init__(self, accounts: AccountStore, guests: GuestCounter):
        self._accounts = accounts
        self._guests = guests

    async def account(self, identity_id: str) -> Account | None:
        return await self._accounts.get_account(identity_id)

    async def guest_usage(self, address: str) -> int:
        return await self._guests.get(address)

    async def record_registered(self, identity_id: str) -> None:
        await self._accounts.increment_daily_downloads(identity_id)
        logger.debug("Recorded download for account %s", identity_id)

    async def record_guest(self, address: str) -> None:
        count = await self._guests.increment(address)
        logger.debug("Recorded guest download for %s (now %d)", address, count)
