"""Threshold monitor: auto-push once enough items are waiting.

State Machine:
    IDLE ──(enabled and unpushed >= threshold)──> TRIGGERING
    TRIGGERING ──(composition finished, any outcome)──> IDLE

Ticks that arrive while TRIGGERING are suppressed instead of queueing
behind the composition lock. The auto-push configuration is reloaded on
every tick, so operator changes apply without a restart.
"""

import asyncio
import logging
from enum import Enum

from catalog import resolve_channel, resolve_template
from composer import BatchComposer, BatchResult
from database import Database

logger = logging.getLogger(__name__)

TRIGGER = "auto-push"


class MonitorState(str, Enum):
    IDLE = "idle"
    TRIGGERING = "triggering"


class ThresholdMonitor:
    """Watches the unpushed count and triggers a batch at the threshold.

    Example:
        >>> monitor = ThresholdMonitor(db, composer, interval=60)
        >>> await monitor.tick()        # one evaluation
        >>> await monitor.run()         # evaluate forever
    """

    def __init__(self, db: Database, composer: BatchComposer, interval: float = 60):
        self.db = db
        self.composer = composer
        self.interval = interval
        self.state = MonitorState.IDLE
        self.suppressed = 0
        self.last_result: BatchResult | None = None
        self.last_error: str | None = None
        self._pending: set[asyncio.Task] = set()

    async def tick(self) -> BatchResult | None:
        """Evaluate the threshold once.

        Never raises: composition failures are logged here and leave the
        monitor IDLE for the next evaluation.

        Returns:
            The composition result when a batch was attempted and sent
        """
        if self.state is MonitorState.TRIGGERING:
            self.suppressed += 1
            logger.debug("Auto-push tick suppressed | state=%s", self.state.value)
            return None

        config = self.db.load_auto_push()
        if not config.enabled or not config.channel_id:
            return None

        pending = self.db.count_unpushed()
        if pending < config.threshold:
            logger.debug("Auto-push waiting | pending=%d threshold=%d", pending, config.threshold)
            return None

        # No await between the check above and this transition
        self.state = MonitorState.TRIGGERING
        logger.info("Auto-push threshold reached | pending=%d threshold=%d", pending, config.threshold)
        try:
            channel = resolve_channel(self.db, config.channel_id)
            template = resolve_template(self.db, config.template_id)
            result = await self.composer.compose_and_send(channel, template, None, trigger=TRIGGER)
            self.last_result = result
            self.last_error = None
            return result
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(
                "Auto-push failed | trigger=%s filter=* channel=%s error=%s",
                TRIGGER, config.channel_id, self.last_error,
            )
            return None
        finally:
            self.state = MonitorState.IDLE

    def poke(self) -> None:
        """Schedule an out-of-band evaluation (after new items arrive)."""
        if self.state is MonitorState.TRIGGERING:
            return
        task = asyncio.get_running_loop().create_task(self.tick())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def run(self) -> None:
        """Evaluate every ``interval`` seconds until cancelled."""
        logger.info("Threshold monitor started | interval=%ss", self.interval)
        try:
            while True:
                try:
                    await self.tick()
                except Exception as e:
                    logger.error("Monitor tick failed | error=%s", e, exc_info=True)
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info("Threshold monitor stopped | suppressed=%d", self.suppressed)
            raise
