import structlog
import time
from datetime import datetime, timezone
from typing import Callable

from services.store import StoreGateway, StoreError

logger = structlog.get_logger("maintenance")

DEFAULT_SWEEP_INTERVAL = 60


class MaintenanceService:
    """Periodic housekeeping driven from the runtime tick."""

    def __init__(
        self,
        store: StoreGateway,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.interval = interval
        self.clock = clock
        self.last_run = None

    async def run_qr_sweep(self) -> int:
        """
        Clear expired QR tokens so status readers never show a dead code.

        Called on every tick; only does work once per interval.
        """
        now = self.clock()
        if self.last_run is not None and now - self.last_run < self.interval:
            return 0

        self.last_run = now
        try:
            cleared = await self.store.clear_expired_qr_tokens(datetime.now(timezone.utc))
        except StoreError as e:
            logger.error("QR sweep failed", error=str(e))
            return 0

        if cleared:
            logger.info("Cleared expired QR tokens", count=cleared)
        return cleared
