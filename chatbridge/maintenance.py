import asyncio
import logging
from typing import Callable

from .database.repository import Repository
from .sync.normalize import now_ms


logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Periodically purges messages older than the retention window."""

    def __init__(
        self,
        repository: Repository,
        retention_ms: int,
        interval_seconds: float,
        clock: Callable[[], int] = now_ms,
    ):
        self.repo = repository
        self.retention_ms = retention_ms
        self.interval_seconds = interval_seconds
        self.clock = clock

    async def sweep(self) -> int:
        horizon = self.clock() - self.retention_ms
        try:
            deleted = await self.repo.cleanup(horizon)
        except Exception as e:
            logger.error("Retention sweep failed, will retry next interval: %s", e)
            return 0
        logger.info("Retention sweep removed %d messages older than %d", deleted, horizon)
        return deleted

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.sweep()
