"""Batch composer: the single entry point that pushes the reading window.

Both triggers (threshold monitor, schedule runner) and manual runs call
``BatchComposer.compose_and_send``. One process-wide lock is held for the
whole select -> render -> dispatch -> mark sequence, so two triggers can
never select, send, or mark the same unpushed entries.

Batch Flow:
    1. Acquire the composition lock
    2. List unpushed entries (optionally filtered by category)
       - nothing selected: sent_count=0, no dispatch, no mutation
    3. Render the template           - RenderError, nothing marked
    4. Dispatch through the channel  - DeliveryError, nothing marked
    5. Mark exactly the selected entries pushed
       - StoreError here means the batch went out but is not marked:
         recorded as a reconciliation and raised as ReconciliationWarning
    6. Release the lock

Ordering is deliver-then-mark: a failed send always leaves the items
eligible for the next trigger. The only duplicate-send risk is a store
failure after a confirmed dispatch, which is surfaced, never swallowed.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Iterable, Protocol

from database import Database, StoreError
from models.channel import Channel
from observability import clear_context, set_batch_context, trace_operation
from rendering import CompiledTemplate, RenderedBatch, build_context, render

logger = logging.getLogger(__name__)

MAX_RECONCILIATIONS = 100


class Sender(Protocol):
    async def send(self, channel: Channel, message: RenderedBatch) -> None: ...


@dataclass
class BatchResult:
    """Outcome of one composition."""

    batch_id: str
    trigger: str
    channel_id: str
    sent_count: int = 0
    entry_ids: list[int] = field(default_factory=list)


@dataclass
class Reconciliation:
    """A batch that was delivered but could not be marked pushed.

    Its entries are still unpushed and will be sent again by the next
    trigger unless an operator removes or clears them.
    """

    batch_id: str
    trigger: str
    channel_id: str
    entry_ids: list[int]
    error: str
    occurred_at: datetime

    def to_dict(self) -> dict:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


class ReconciliationWarning(Exception):
    """Dispatch succeeded but marking the batch pushed failed."""

    def __init__(self, reconciliation: Reconciliation, result: BatchResult):
        self.reconciliation = reconciliation
        self.result = result
        super().__init__(
            f"batch {reconciliation.batch_id} delivered to {reconciliation.channel_id} "
            f"but not marked pushed: {reconciliation.error}"
        )


class BatchComposer:
    """Serializes every composition in the process.

    Example:
        >>> composer = BatchComposer(db, Dispatcher(timeout=30))
        >>> result = await composer.compose_and_send(channel, compiled, {"tech"}, trigger="task:daily")
        >>> result.sent_count
        4
    """

    def __init__(
        self,
        db: Database,
        dispatcher: Sender,
        max_items: int = 0,
        tz: tzinfo = timezone.utc,
    ):
        """
        Args:
            db: Item store
            dispatcher: Channel dispatcher
            max_items: Cap on entries per batch (0 = every unpushed entry)
            tz: Zone the batch date and generation time are shown in
        """
        self.db = db
        self.dispatcher = dispatcher
        self.max_items = max_items
        self.tz = tz
        self._lock = asyncio.Lock()
        self._reconciliations: deque[Reconciliation] = deque(maxlen=MAX_RECONCILIATIONS)
        self.batches_sent = 0

    @property
    def busy(self) -> bool:
        """True while a composition holds the lock."""
        return self._lock.locked()

    @property
    def reconciliations(self) -> list[Reconciliation]:
        """Delivered-but-unmarked batches, oldest first."""
        return list(self._reconciliations)

    def acknowledge_reconciliations(self) -> int:
        """Drop recorded reconciliations once an operator has handled them."""
        count = len(self._reconciliations)
        self._reconciliations.clear()
        return count

    async def compose_and_send(
        self,
        channel: Channel,
        template: CompiledTemplate,
        categories: Iterable[str] | None = None,
        *,
        trigger: str = "manual",
    ) -> BatchResult:
        """Select, render, deliver, and mark one batch.

        Args:
            channel: Destination channel
            template: Compiled template to render
            categories: Category filter; None or empty selects every category
            trigger: Trigger source for logs and traces ("auto-push", "task:<id>", ...)

        Returns:
            BatchResult (sent_count=0 when nothing was waiting)

        Raises:
            RenderError: Template failed for this batch; nothing marked
            DeliveryError: Channel send failed; nothing marked
            ReconciliationWarning: Delivered but not marked
        """
        cats = sorted(set(categories or ()))
        batch_id = uuid.uuid4().hex[:12]
        result = BatchResult(batch_id=batch_id, trigger=trigger, channel_id=channel.id)

        async with self._lock:
            set_batch_context(batch_id, trigger)
            try:
                with trace_operation(
                    "compose_batch",
                    {"trigger": trigger, "channel_id": channel.id, "categories": ",".join(cats)},
                ) as span:
                    entries = self.db.list_unpushed(cats, limit=self.max_items)
                    span["selected"] = len(entries)
                    if not entries:
                        logger.info(
                            "Nothing to push | channel=%s categories=%s",
                            channel.id, ",".join(cats) or "*",
                        )
                        return result

                    message = render(template, build_context(entries, datetime.now(self.tz)))

                    logger.info(
                        "Dispatching batch | channel=%s type=%s items=%d",
                        channel.id, channel.type, len(entries),
                    )
                    await self.dispatcher.send(channel, message)

                    result.entry_ids = [e.entry_id for e in entries]
                    result.sent_count = len(entries)
                    self.batches_sent += 1

                    try:
                        self.db.mark_pushed(result.entry_ids, datetime.now(timezone.utc))
                    except StoreError as e:
                        rec = Reconciliation(
                            batch_id=batch_id,
                            trigger=trigger,
                            channel_id=channel.id,
                            entry_ids=list(result.entry_ids),
                            error=str(e),
                            occurred_at=datetime.now(timezone.utc),
                        )
                        self._reconciliations.append(rec)
                        span["reconciliation"] = True
                        logger.error(
                            "Batch delivered but not marked | channel=%s entries=%s error=%s",
                            channel.id, result.entry_ids, e,
                        )
                        raise ReconciliationWarning(rec, result) from e

                    span["sent_count"] = result.sent_count
                    logger.info(
                        "Batch pushed | channel=%s items=%d", channel.id, result.sent_count
                    )
                    return result
            finally:
                clear_context()
