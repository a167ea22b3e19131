"""Background renewal of execution leases."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .contracts import Lease
from .errors import LeaseLost
from .persistence import ExecutionRepository

logger = logging.getLogger(__name__)


class LeaseKeeper:
    """Keeps a lease alive while its holder works on the execution.

    Renews every ``ttl / 3`` seconds. When a renewal fails the keeper stops,
    sets ``lost`` and every later :meth:`check` raises ``LeaseLost``.

    Usage::

        async with LeaseKeeper(repo, lease, ttl) as keeper:
            ...
            keeper.check()
    """

    def __init__(self, repository: ExecutionRepository, lease: Lease, ttl: float) -> None:
        self._repository = repository
        self._ttl = ttl
        self.lease = lease
        self.lost = False
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "LeaseKeeper":
        self._task = asyncio.create_task(self._renew_forever())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if not self.lost:
            await self._repository.release_lease(self.lease)

    def check(self) -> None:
        if self.lost:
            raise LeaseLost(
                f"Lease on execution {self.lease.execution_id} was lost",
                {"execution_id": self.lease.execution_id, "owner": self.lease.owner},
            )

    async def _renew_forever(self) -> None:
        interval = self._ttl / 3
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self._repository.renew_lease(self.lease, self._ttl)
            except Exception as exc:
                logger.error(f"Renewing lease on {self.lease.execution_id} failed: {exc}")
                renewed = None
            if renewed is None:
                self.lost = True
                logger.warning(
                    f"Lost lease on execution {self.lease.execution_id} (owner {self.lease.owner})"
                )
                return
            self.lease = renewed
