"""
Append-only log of accepted status transitions.
"""
import logging
from collections.abc import Awaitable, Callable

from lastmile.metrics import audit_sink_failures_total
from lastmile.models import TransitionLogEntry, utcnow

logger = logging.getLogger(__name__)

AuditSink = Callable[[TransitionLogEntry], Awaitable[None]]


class AuditRecorder:
    def __init__(self, clock: Callable = utcnow, sink: AuditSink | None = None):
        self._clock = clock
        self._sink = sink
        self._entries: list[TransitionLogEntry] = []

    @property
    def entries(self) -> tuple[TransitionLogEntry, ...]:
        return tuple(self._entries)

    def entries_for(self, order_id: int) -> list[TransitionLogEntry]:
        return [e for e in self._entries if e.order_id == order_id]

    async def record(
        self,
        order_id: int,
        old_status: str | None,
        new_status: str,
        actor_id: int | None = None,
    ) -> TransitionLogEntry:
        """Append one entry. Never rejects: a failing sink is logged, the entry is kept."""
        entry = TransitionLogEntry(
            order_id=order_id,
            old_status=old_status,
            new_status=new_status,
            timestamp=self._clock(),
            actor_id=actor_id,
        )
        self._entries.append(entry)
        logger.info(
            "Status change order_id=%s %s -> %s actor=%s",
            order_id, old_status, new_status, actor_id,
        )
        if self._sink is not None:
            try:
                await self._sink(entry)
            except Exception:
                audit_sink_failures_total.inc()
                logger.exception("Failed to persist status log entry %s", entry.entry_id)
        return entry
